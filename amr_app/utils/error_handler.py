# amr_app/utils/error_handler.py

"""
Error alerting over e-mail, Slack and generic webhooks.

Alert delivery failures are logged and never raised: alerting runs from
error paths (request teardown, batch jobs) that must keep going.
"""

import json
import smtplib
import traceback
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from email.mime.text import MIMEText

import requests
from flask import current_app

DEFAULT_RATE_LIMIT = 5
RATE_LIMIT_WINDOW = timedelta(hours=1)


class ErrorAlertingSystem:
    """Dispatch error alerts to the configured channels with per-key rate limiting"""

    def __init__(self, app=None):
        self.app = app
        self.error_counts = defaultdict(list)
        self.alert_methods = []
        self.rate_limits = {}
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        config = app.config
        self.alert_methods = []
        if config.get("ENABLE_EMAIL_ALERTS"):
            self.alert_methods.append("email")
        if config.get("ENABLE_SLACK_ALERTS"):
            self.alert_methods.append("slack")
        if config.get("ENABLE_WEBHOOK_ALERTS"):
            self.alert_methods.append("webhook")
        self.rate_limits = {
            "email": int(config.get("EMAIL_ALERT_RATE_LIMIT", DEFAULT_RATE_LIMIT)),
            "slack": int(config.get("SLACK_ALERT_RATE_LIMIT", DEFAULT_RATE_LIMIT)),
            "webhook": int(config.get("WEBHOOK_ALERT_RATE_LIMIT", DEFAULT_RATE_LIMIT)),
        }

    def should_send_alert(self, alert_type, error_key):
        """Return True when another alert for ``error_key`` fits the hourly budget"""
        now = datetime.now(timezone.utc)
        window_start = now - RATE_LIMIT_WINDOW
        recent = [sent_at for sent_at in self.error_counts[error_key] if sent_at > window_start]
        limit = self.rate_limits.get(alert_type, DEFAULT_RATE_LIMIT)
        if len(recent) >= limit:
            self.error_counts[error_key] = recent
            return False
        recent.append(now)
        self.error_counts[error_key] = recent
        return True

    def send_error_alert(self, error, context=None):
        context = dict(context or {})
        endpoint = context.get("endpoint") or "unknown"
        error_key = f"{type(error).__name__}_{endpoint}"
        subject = f"[{self._config('APP_NAME', 'AMR Admin')}] {type(error).__name__}: {error}"
        body = self._format_error_body(error, context)

        for method in self.alert_methods:
            if not self.should_send_alert(method, error_key):
                self._logger().info("Alert rate limit reached for %s via %s", error_key, method)
                continue
            if method == "email":
                self.send_email(subject, body, self._config("ADMIN_EMAILS", []))
            elif method == "slack":
                self._send_slack(subject, body)
            elif method == "webhook":
                self._send_webhook(error, context)

    def send_email(self, subject, body, recipients):
        """Send a plain-text e-mail; returns True when the SMTP server accepted it"""
        recipients = [address for address in (recipients or []) if address]
        server_name = self._config("MAIL_SERVER")
        if not server_name or not recipients:
            self._logger().warning("E-mail alert skipped: MAIL_SERVER or recipients not configured")
            return False

        message = MIMEText(body)
        message["Subject"] = subject
        message["From"] = self._config("MAIL_FROM", "noreply@example.com")
        message["To"] = ", ".join(recipients)

        try:
            server = smtplib.SMTP(server_name, int(self._config("MAIL_PORT", 587)), timeout=10)
            try:
                if self._config("MAIL_USE_TLS", True):
                    server.starttls()
                username = self._config("MAIL_USERNAME")
                if username:
                    server.login(username, self._config("MAIL_PASSWORD") or "")
                server.sendmail(message["From"], recipients, message.as_string())
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as exc:
            self._logger().error("Failed to send e-mail alert: %s", exc)
            return False
        return True

    def _send_slack(self, subject, body):
        webhook_url = self._config("SLACK_WEBHOOK_URL")
        if not webhook_url:
            self._logger().warning("Slack alert skipped: SLACK_WEBHOOK_URL not configured")
            return False
        try:
            response = requests.post(webhook_url, json={"text": f"*{subject}*\n```{body[:2500]}```"}, timeout=10)
            response.raise_for_status()
        except requests.RequestException as exc:
            self._logger().error("Failed to send Slack alert: %s", exc)
            return False
        return True

    def _send_webhook(self, error, context):
        webhook_url = self._config("WEBHOOK_URL")
        if not webhook_url:
            self._logger().warning("Webhook alert skipped: WEBHOOK_URL not configured")
            return False
        payload = {
            "error_type": type(error).__name__,
            "message": str(error),
            "context": json.loads(json.dumps(context, default=str)),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            response = requests.post(
                webhook_url, json=payload, headers=self._config("WEBHOOK_HEADERS", {}) or {}, timeout=10
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            self._logger().error("Failed to send webhook alert: %s", exc)
            return False
        return True

    def _format_error_body(self, error, context):
        lines = [f"Error: {type(error).__name__}: {error}", ""]
        for key, value in sorted(context.items()):
            lines.append(f"{key}: {value}")
        trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        if error.__traceback__ is not None:
            lines.extend(["", trace])
        return "\n".join(lines)

    def _config(self, key, default=None):
        app = self.app or current_app
        return app.config.get(key, default)

    def _logger(self):
        app = self.app or current_app
        return app.logger


error_alerter = ErrorAlertingSystem()


def init_error_alerting(app):
    """Bind the shared alerter and report unhandled request exceptions"""
    error_alerter.init_app(app)
    app.extensions["error_alerter"] = error_alerter

    if not app.config.get("ERROR_ALERTING_ENABLED"):
        return

    @app.teardown_request
    def _alert_on_unhandled_exception(exc):
        if exc is None:
            return
        from flask import request

        error_alerter.send_error_alert(exc, {"endpoint": request.path, "method": request.method})
