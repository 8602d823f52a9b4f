"""Tests for the error alerting system used by request errors and SAP job mail"""

import smtplib
from unittest.mock import MagicMock, patch

import pytest
import requests
from flask import Flask

from amr_app.utils.error_handler import ErrorAlertingSystem, error_alerter, init_error_alerting


@pytest.fixture
def alert_app():
    app = Flask(__name__)
    app.config.update(
        APP_NAME="AMR Admin",
        MAIL_SERVER="smtp.example.com",
        MAIL_PORT=587,
        MAIL_USE_TLS=True,
        MAIL_USERNAME="mailer",
        MAIL_PASSWORD="secret",
        MAIL_FROM="amr@example.com",
        ADMIN_EMAILS=["admin@example.com"],
        SLACK_WEBHOOK_URL="https://hooks.slack.example/T000",
        WEBHOOK_URL="https://alerts.example/hook",
        EMAIL_ALERT_RATE_LIMIT=2,
    )
    bound_app = error_alerter.app
    yield app
    if bound_app is not None:
        error_alerter.init_app(bound_app)


class TestSendEmail:
    def test_sends_through_smtp(self, alert_app):
        alerter = ErrorAlertingSystem(alert_app)

        with patch("amr_app.utils.error_handler.smtplib.SMTP") as mock_smtp:
            server = MagicMock()
            mock_smtp.return_value = server
            sent = alerter.send_email("[SAP] meters failed", "body", ["ops@example.com", ""])

        assert sent is True
        mock_smtp.assert_called_once_with("smtp.example.com", 587, timeout=10)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "secret")
        args = server.sendmail.call_args[0]
        assert args[0] == "amr@example.com"
        assert args[1] == ["ops@example.com"]
        assert "Subject: [SAP] meters failed" in args[2]
        server.quit.assert_called_once()

    def test_missing_server_skips(self, alert_app):
        alert_app.config["MAIL_SERVER"] = None
        alerter = ErrorAlertingSystem(alert_app)

        with patch("amr_app.utils.error_handler.smtplib.SMTP") as mock_smtp:
            assert alerter.send_email("subject", "body", ["ops@example.com"]) is False
        mock_smtp.assert_not_called()

    def test_smtp_failure_returns_false(self, alert_app):
        alerter = ErrorAlertingSystem(alert_app)

        with patch("amr_app.utils.error_handler.smtplib.SMTP") as mock_smtp:
            mock_smtp.side_effect = smtplib.SMTPException("Connection refused")
            assert alerter.send_email("subject", "body", ["ops@example.com"]) is False

    def test_login_failure_still_quits(self, alert_app):
        alerter = ErrorAlertingSystem(alert_app)

        with patch("amr_app.utils.error_handler.smtplib.SMTP") as mock_smtp:
            server = MagicMock()
            mock_smtp.return_value = server
            server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"Authentication failed")
            assert alerter.send_email("subject", "body", ["ops@example.com"]) is False

        server.quit.assert_called_once()


class TestRateLimiting:
    def test_limit_per_key(self, alert_app):
        alerter = ErrorAlertingSystem(alert_app)

        assert alerter.should_send_alert("email", "ValueError_/sap/runs") is True
        assert alerter.should_send_alert("email", "ValueError_/sap/runs") is True
        assert alerter.should_send_alert("email", "ValueError_/sap/runs") is False
        assert alerter.should_send_alert("email", "KeyError_/sap/runs") is True

    def test_send_error_alert_respects_limit(self, alert_app):
        alert_app.config["ENABLE_EMAIL_ALERTS"] = True
        alerter = ErrorAlertingSystem(alert_app)

        with patch.object(alerter, "send_email", return_value=True) as send_email:
            for _ in range(3):
                alerter.send_error_alert(RuntimeError("boom"), {"endpoint": "/sap/runs"})

        assert send_email.call_count == 2
        subject = send_email.call_args[0][0]
        assert subject == "[AMR Admin] RuntimeError: boom"


class TestSlackAndWebhook:
    def test_slack_posts_message(self, alert_app):
        alert_app.config["ENABLE_SLACK_ALERTS"] = True
        alerter = ErrorAlertingSystem(alert_app)

        with patch("amr_app.utils.error_handler.requests.post") as mock_post:
            alerter.send_error_alert(ValueError("bad row"), {"endpoint": "/sap/exports"})

        url = mock_post.call_args[0][0]
        assert url == "https://hooks.slack.example/T000"
        assert "ValueError: bad row" in mock_post.call_args[1]["json"]["text"]

    def test_webhook_failure_is_logged_not_raised(self, alert_app):
        alerter = ErrorAlertingSystem(alert_app)

        with patch("amr_app.utils.error_handler.requests.post") as mock_post:
            mock_post.side_effect = requests.ConnectionError("unreachable")
            assert alerter._send_webhook(ValueError("x"), {"endpoint": "/"}) is False

    def test_webhook_payload(self, alert_app):
        alerter = ErrorAlertingSystem(alert_app)

        with patch("amr_app.utils.error_handler.requests.post") as mock_post:
            assert alerter._send_webhook(KeyError("meter"), {"endpoint": "/sap/runs", "user": 3}) is True

        payload = mock_post.call_args[1]["json"]
        assert payload["error_type"] == "KeyError"
        assert payload["context"] == {"endpoint": "/sap/runs", "user": 3}


class TestInitErrorAlerting:
    def test_registers_alerter(self, alert_app):
        init_error_alerting(alert_app)
        assert isinstance(alert_app.extensions["error_alerter"], ErrorAlertingSystem)

    def test_unhandled_request_error_sends_alert(self, alert_app):
        alert_app.config["ERROR_ALERTING_ENABLED"] = True

        @alert_app.route("/explode")
        def explode():
            raise RuntimeError("kaboom")

        init_error_alerting(alert_app)
        alerter = alert_app.extensions["error_alerter"]

        with patch.object(alerter, "send_error_alert") as send_error_alert:
            response = alert_app.test_client().get("/explode")

        assert response.status_code == 500
        error, context = send_error_alert.call_args[0]
        assert str(error) == "kaboom"
        assert context == {"endpoint": "/explode", "method": "GET"}
