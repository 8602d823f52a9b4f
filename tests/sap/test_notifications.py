from dataclasses import replace
from datetime import datetime

import pytest

from amr_app.sap import notifications
from amr_app.sap.notifications import notify_job_result, send_daily_summary, should_notify
from amr_app.sap.results import JobResult, JobStatus
from amr_app.sap.state import get_sap_settings


@pytest.fixture
def sent_mail(monkeypatch):
    outbox = []

    def fake_send_email(subject, body, recipients):
        outbox.append({"subject": subject, "body": body, "recipients": recipients})
        return True

    monkeypatch.setattr(notifications.error_alerter, "send_email", fake_send_email)
    return outbox


@pytest.fixture
def notify_settings(app):
    return replace(get_sap_settings(app), notify_on_error=True, notification_emails=("ops@example.com",))


@pytest.mark.parametrize(
    "status, errors, expected",
    [
        (JobStatus.SUCCEEDED, [], False),
        (JobStatus.SUCCEEDED, ["meters.csv line 2: bad"], True),
        (JobStatus.PARTIALLY_FAILED, ["x"], True),
        (JobStatus.FAILED, [], True),
        (JobStatus.ALREADY_RUNNING, ["x"], False),
        (JobStatus.DISABLED, ["x"], False),
    ],
)
def test_should_notify(status, errors, expected):
    assert should_notify(JobResult(job="meters", status=status, errors=errors)) is expected


def test_error_mail_lists_errors(notify_settings, sent_mail):
    result = JobResult(
        job="meters",
        status=JobStatus.PARTIALLY_FAILED,
        source="SEP",
        run_id=7,
        files=["meters.csv"],
        counts={"created": 2, "row_errors": 1},
        errors=["meters.csv line 4: unmapped meter status value 'RETIRED'"],
    )

    assert notify_job_result(notify_settings, result) is True

    assert len(sent_mail) == 1
    mail = sent_mail[0]
    assert mail["subject"] == "[SAP] meters partially_failed"
    assert mail["recipients"] == ["ops@example.com"]
    assert "Source: SEP" in mail["body"]
    assert "Counts: created=2, row_errors=1" in mail["body"]
    assert "  - meters.csv line 4: unmapped meter status value 'RETIRED'" in mail["body"]


def test_long_error_lists_are_truncated(notify_settings, sent_mail):
    errors = [f"line {index}: bad" for index in range(60)]
    notify_job_result(notify_settings, JobResult(job="users", status=JobStatus.FAILED, errors=errors))

    assert "  ... 10 more" in sent_mail[0]["body"]
    assert "line 59: bad" not in sent_mail[0]["body"]


def test_no_mail_without_recipients_or_flag(notify_settings, sent_mail):
    failed = JobResult(job="sites", status=JobStatus.FAILED, errors=["boom"])

    assert notify_job_result(replace(notify_settings, notification_emails=()), failed) is False
    assert notify_job_result(replace(notify_settings, notify_on_error=False), failed) is False
    assert sent_mail == []


def test_daily_summary_mail(notify_settings, sent_mail):
    summary = {
        "day": "2025-03-09",
        "imports": {"meters": {"runs": 2, "succeeded": 2}, "sites": {}, "users": {}},
        "exports": {"files": 1, "exported_meters": 5, "skipped_meters": 2, "failed": 0},
    }

    assert send_daily_summary(notify_settings, summary) is False

    settings = replace(notify_settings, daily_summary=True)
    assert send_daily_summary(settings, summary, day=datetime(2025, 3, 9)) is True
    mail = sent_mail[0]
    assert mail["subject"] == "[SAP] Daily summary 2025-03-09"
    assert "meters: runs=2, succeeded=2" in mail["body"]
    assert "sites: no runs" in mail["body"]
    assert "export: files=1, exported=5, skipped=2, failed=0" in mail["body"]


def test_failed_import_sends_mail(configure_sap, make_runner, write_sap_file, sent_mail):
    configure_sap(SAP_NOTIFY_ON_ERROR=True, SAP_NOTIFICATION_EMAILS=("ops@example.com",))
    bad = write_sap_file("sites", "bad.csv", [])
    bad.write_bytes(b"COMPANY_CODE\x00\x00")

    result = make_runner().run_import("sites")

    assert result.status is JobStatus.FAILED
    assert [mail["subject"] for mail in sent_mail] == ["[SAP] sites failed"]


def test_already_running_job_is_not_mailed(configure_sap, make_runner, sent_mail):
    configure_sap(SAP_NOTIFY_ON_ERROR=True, SAP_NOTIFICATION_EMAILS=("ops@example.com",))
    runner = make_runner()
    runner.locks.acquire("exportmeterreadings")

    result = runner.export_readings()

    assert result.status is JobStatus.ALREADY_RUNNING
    assert sent_mail == []
