import json
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select

from amr_app.models import (
    Meter,
    MeterReading,
    SapExportLog,
    SapFileStatus,
    SapImportLog,
    SapImportRun,
    SapRunStatus,
    Site,
    User,
    db,
)
from amr_app.sap.archive import Archiver
from amr_app.sap.errors import ArchiveError
from amr_app.sap.jobs import _overall_status
from amr_app.sap.results import FileOutcome, JobStatus

from conftest import FIXED_NOW, meter_row, site_row, user_row


class FailingArchiver(Archiver):
    def archive(self, path, archive_dir):
        raise ArchiveError(path, "read-only filesystem")


def test_overall_status():
    def outcomes(*statuses):
        return [FileOutcome(name=str(index), path="", status=status) for index, status in enumerate(statuses)]

    assert _overall_status([]) is JobStatus.SUCCEEDED
    assert _overall_status(outcomes("success", "success")) is JobStatus.SUCCEEDED
    assert _overall_status(outcomes("success", "partial")) is JobStatus.PARTIALLY_FAILED
    assert _overall_status(outcomes("success", "failed")) is JobStatus.PARTIALLY_FAILED
    assert _overall_status(outcomes("failed", "failed")) is JobStatus.FAILED


class TestImportJobs:
    def test_meter_import_end_to_end(self, app, site, make_runner, write_sap_file, sap_base):
        path = write_sap_file("meters", "meters_20250310.csv", [meter_row("101"), meter_row("102")])

        result = make_runner().run_import("meters", trigger="manual")

        assert result.status is JobStatus.SUCCEEDED
        assert result.source == "SAP"
        assert result.files == ["meters_20250310.csv"]
        assert result.counts["created"] == 2
        assert result.counts["files"] == 1
        assert result.counts["files_failed"] == 0
        assert not path.exists()
        assert (sap_base / "DOWNLOAD" / "METER_LIST_OLD" / "meters_20250310.csv").exists()
        assert db.session.scalar(select(Meter).where(Meter.name == "102")).site_id == site.id

        run = db.session.get(SapImportRun, result.run_id)
        assert run.status is SapRunStatus.SUCCEEDED
        assert run.trigger == "manual"
        assert run.file_names == ["meters_20250310.csv"]
        assert run.counts_json["created"] == 2
        assert run.finished_at is not None
        (file_log,) = run.files
        assert file_log.status is SapFileStatus.SUCCESS
        assert file_log.inserted_rows == 2
        assert file_log.archived_to.endswith("meters_20250310.csv")

    def test_staging_tier_only_is_processed(self, app, site, make_runner, write_sap_file):
        staging = write_sap_file("meters", "a.csv", [meter_row("101")], tier="SEP")
        production = write_sap_file("meters", "b.csv", [meter_row("102")], tier="SAP")

        result = make_runner().run_import("meters")

        assert result.source == "SEP"
        assert result.files == ["a.csv"]
        assert not staging.exists()
        assert production.exists()
        assert db.session.scalar(select(Meter).where(Meter.name == "101")).sap_source == "SEP"

    def test_reimport_is_idempotent(self, app, site, make_runner, write_sap_file):
        rows = [meter_row("101"), meter_row("102"), meter_row("103")]
        write_sap_file("meters", "first.csv", rows)
        make_runner().run_import("meters")
        write_sap_file("meters", "second.csv", rows)

        result = make_runner().run_import("meters")

        assert result.counts["unchanged"] == 3
        assert result.counts["created"] == 0
        assert result.counts["updated"] == 0
        assert result.counts["deactivated"] == 0

    def test_split_feed_keeps_every_listed_meter_active(self, app, site, make_runner, write_sap_file):
        def drop_files():
            write_sap_file("meters", "METER_LIST_a.csv", [meter_row("101"), meter_row("102")])
            write_sap_file("meters", "METER_LIST_b.csv", [meter_row("103")])

        db.session.add(Meter(name="999", sap_business_entity="BE01", site=site, site_code=site.code, sap_source="SAP"))
        db.session.commit()
        drop_files()

        first = make_runner().run_import("meters")
        drop_files()
        second = make_runner().run_import("meters")

        assert (first.counts["created"], first.counts["deactivated"]) == (3, 1)
        assert (second.counts["unchanged"], second.counts["updated"], second.counts["deactivated"]) == (3, 0, 0)
        statuses = {meter.name: meter.status for meter in db.session.scalars(select(Meter))}
        assert statuses == {"101": "Active", "102": "Active", "103": "Active", "999": "Inactive"}
        run = db.session.get(SapImportRun, first.run_id)
        assert run.counts_json["deactivated"] == 1

    def test_malformed_meter_file_skips_deactivation(self, app, site, make_runner, write_sap_file):
        db.session.add(Meter(name="999", sap_business_entity="BE01", site=site, site_code=site.code, sap_source="SAP"))
        db.session.commit()
        write_sap_file("meters", "METER_LIST_a.csv", [meter_row("101")])
        bad = write_sap_file("meters", "METER_LIST_b.csv", [])
        bad.write_bytes(b"COMPANY_CODE\x00\x00")

        result = make_runner().run_import("meters")

        assert result.status is JobStatus.PARTIALLY_FAILED
        assert result.counts["deactivated"] == 0
        assert db.session.scalar(select(Meter).where(Meter.name == "999")).status == "Active"

    def test_staging_file_leaves_production_meters_active(self, app, site, make_runner, write_sap_file):
        write_sap_file("meters", "meters.csv", [meter_row("101"), meter_row("102"), meter_row("103")])
        make_runner().run_import("meters")
        write_sap_file("meters", "test.csv", [meter_row("101")], tier="SEP")

        result = make_runner().run_import("meters")

        assert result.source == "SEP"
        assert result.counts["deactivated"] == 0
        statuses = {meter.name: (meter.status, meter.sap_source) for meter in db.session.scalars(select(Meter))}
        assert statuses == {"101": ("Active", "SEP"), "102": ("Active", "SAP"), "103": ("Active", "SAP")}

    def test_row_errors_make_file_partial(self, app, site, make_runner, write_sap_file):
        write_sap_file("meters", "meters.csv", [meter_row("101"), meter_row("102", status="RETIRED")])

        result = make_runner().run_import("meters")

        assert result.status is JobStatus.PARTIALLY_FAILED
        assert result.success is True
        assert result.errors == ["meters.csv line 3: unmapped meter status value 'RETIRED'"]
        log = db.session.scalars(select(SapImportLog)).one()
        assert log.status is SapFileStatus.PARTIAL
        assert log.error_rows == 1
        assert log.archived_to is not None

    def test_malformed_file_fails_and_stays(self, app, make_runner, write_sap_file, sap_base):
        bad = write_sap_file("sites", "bad.csv", [])
        bad.write_bytes(b"COMPANY_CODE\x00\x00")
        good = write_sap_file("sites", "good.csv", [site_row("BE05")])

        result = make_runner().run_import("sites")

        assert result.status is JobStatus.PARTIALLY_FAILED
        assert bad.exists()
        assert not good.exists()
        assert result.counts["files_failed"] == 1
        assert any("NUL bytes" in error for error in result.errors)
        assert db.session.scalars(select(Site)).one().code == "BE05"
        statuses = {log.file_name: log.status for log in db.session.scalars(select(SapImportLog))}
        assert statuses == {"bad.csv": SapFileStatus.FAILED, "good.csv": SapFileStatus.SUCCESS}

    def test_archive_failure_keeps_changes_and_file(self, app, make_runner, write_sap_file):
        path = write_sap_file("sites", "sites.csv", [site_row("BE07")])

        result = make_runner(archiver=FailingArchiver()).run_import("sites")

        assert result.status is JobStatus.FAILED
        assert path.exists()
        assert result.counts["created"] == 1
        assert db.session.scalars(select(Site)).one().code == "BE07"
        assert "read-only filesystem" in result.errors[0]

    def test_no_files_succeeds_without_run_row(self, app, make_runner):
        result = make_runner().run_import("users")

        assert result.status is JobStatus.SUCCEEDED
        assert result.counts == {"files": 0, "created": 0, "updated": 0, "deactivated": 0}
        assert result.run_id is None
        assert result.message.startswith("No files found for users import")
        assert db.session.scalars(select(SapImportRun)).all() == []

    def test_held_lock_returns_already_running_without_touching_files(self, app, make_runner, write_sap_file):
        path = write_sap_file("users", "users.csv", [user_row("JDOE")])
        runner = make_runner()
        lock = runner.locks.acquire("importuserlist")
        lease_before = lock.path.read_text()

        result = runner.run_import("users")

        assert result.status is JobStatus.ALREADY_RUNNING
        assert result.success is True
        assert path.exists()
        assert lock.path.read_text() == lease_before
        assert json.loads(lease_before)["token"] == lock.token
        assert db.session.scalars(select(User)).all() == []
        assert db.session.scalars(select(SapImportRun)).all() == []

    def test_lock_released_after_run(self, app, make_runner, write_sap_file):
        write_sap_file("users", "users.csv", [user_row("JDOE")])
        runner = make_runner()

        runner.run_import("users")

        assert runner.locks.status("importuserlist").held is False

    def test_disabled_import_does_nothing(self, app, configure_sap, make_runner, write_sap_file):
        configure_sap(SAP_USERS_ENABLED=False)
        path = write_sap_file("users", "users.csv", [user_row("JDOE")])

        result = make_runner().run_import("users")

        assert result.status is JobStatus.DISABLED
        assert result.success is False
        assert result.errors == ["Import for users is disabled"]
        assert path.exists()

    def test_database_logging_can_be_disabled(self, app, configure_sap, make_runner, write_sap_file):
        configure_sap(SAP_LOG_TO_DATABASE=False)
        write_sap_file("users", "users.csv", [user_row("JDOE")])

        result = make_runner().run_import("users")

        assert result.status is JobStatus.SUCCEEDED
        assert result.run_id is None
        assert db.session.scalars(select(SapImportRun)).all() == []
        assert db.session.scalars(select(User)).one().email == "jdoe@example.com"


def _export_fixture(site, **meter_overrides):
    fields = dict(
        name="101",
        sap_business_entity="BE01",
        site=site,
        site_code=site.code,
        customer_name="Tenant A",
        sap_contract_number="C-100",
        sap_measuring_point="100000000001",
        sap_measuring_point_desc="101",
        sap_ro_valid_to=date(2030, 12, 31),
    )
    fields.update(meter_overrides)
    meter = Meter(**fields)
    db.session.add(meter)
    db.session.flush()
    return meter


class TestExportJob:
    def _seed(self, site):
        good = _export_fixture(site)
        low = _export_fixture(site, name="102", sap_measuring_point_desc="102", sap_measuring_point="100000000002")
        db.session.add_all(
            [
                MeterReading(meter_id=good.id, reading_at=datetime(2025, 3, 10, 0, 0), wh_total=5000.125),
                MeterReading(meter_id=low.id, reading_at=datetime(2025, 3, 10, 0, 0), wh_total=0.75),
            ]
        )
        db.session.commit()
        return good, low

    def test_export_end_to_end(self, app, site, make_runner, sap_base):
        good, low = self._seed(site)

        result = make_runner().export_readings(cutoff_date=date(2025, 3, 10), trigger="manual")

        assert result.status is JobStatus.SUCCEEDED
        assert result.files == ["BE01_1000_10_3_2025.csv"]
        assert result.counts == {"sites": 1, "groups": 1, "candidates": 2, "exported": 1, "skipped": 1}
        assert result.details["cutoff_at"] == "2025-03-10T00:14:59"
        assert result.details["validation_summary"] == {"reading_too_low": 1}
        exported = (sap_base / "UPLOAD" / "BE01_1000_10_3_2025.csv").read_bytes()
        assert exported == b"101,Tenant A,5000.13,10.03.2025,00:00:00,100000000001"

        log = db.session.scalars(select(SapExportLog)).one()
        assert log.status == "success"
        assert log.exported_meters == 1
        assert log.skipped_meters == 1
        assert log.exclusions == [{"meter_id": low.id, "meter": "102", "reason": "reading_too_low"}]

    def test_lower_threshold_includes_meter(self, app, site, configure_sap, make_runner, sap_base):
        self._seed(site)
        configure_sap(SAP_EXPORT_MIN_READING_VALUE=0.5)

        result = make_runner().export_readings(cutoff_date=date(2025, 3, 10))

        assert result.counts["exported"] == 2
        lines = (sap_base / "UPLOAD" / "BE01_1000_10_3_2025.csv").read_text().split("\n")
        assert [line.split(",")[0] for line in lines] == ["101", "102"]

    def test_readings_after_cutoff_are_ignored(self, app, site, make_runner, sap_base):
        meter = _export_fixture(site)
        db.session.add_all(
            [
                MeterReading(meter_id=meter.id, reading_at=datetime(2025, 3, 10, 0, 5), wh_total=10.0),
                MeterReading(meter_id=meter.id, reading_at=datetime(2025, 3, 10, 0, 30), wh_total=20.0),
            ]
        )
        db.session.commit()

        make_runner(clock=lambda: FIXED_NOW + timedelta(hours=6)).export_readings(cutoff_date=date(2025, 3, 10))

        content = (sap_base / "UPLOAD" / "BE01_1000_10_3_2025.csv").read_text()
        assert content.split(",")[2:5] == ["10.00", "10.03.2025", "00:05:00"]

    def test_existing_file_fails_group(self, app, site, make_runner, sap_base):
        self._seed(site)
        target = sap_base / "UPLOAD" / "BE01_1000_10_3_2025.csv"
        target.parent.mkdir(parents=True)
        target.write_text("sent earlier")

        result = make_runner().export_readings(cutoff_date=date(2025, 3, 10))

        assert result.status is JobStatus.FAILED
        assert target.read_text() == "sent earlier"
        assert "already exists" in result.errors[0]
        assert db.session.scalars(select(SapExportLog)).one().status == "failed"

    def test_unrenderable_value_fails_group_and_closes_log(self, app, site, configure_sap, make_runner, sap_base):
        configure_sap(SAP_CSV_ESCAPE="")
        meter = _export_fixture(site, customer_name="Acme, Inc")
        db.session.add(MeterReading(meter_id=meter.id, reading_at=datetime(2025, 3, 10, 0, 0), wh_total=10.0))
        db.session.commit()

        result = make_runner().export_readings(cutoff_date=date(2025, 3, 10))

        assert result.status is JobStatus.FAILED
        assert result.errors[0].startswith("Could not render BE01_1000_10_3_2025.csv")
        assert list((sap_base / "UPLOAD").iterdir()) == []
        log = db.session.scalars(select(SapExportLog)).one()
        assert log.status == "failed"
        assert log.completed_at is not None

    def test_no_due_sites(self, app, site, make_runner):
        result = make_runner().export_readings(cutoff_date=date(2025, 3, 11))

        assert result.status is JobStatus.SUCCEEDED
        assert result.message == "No sites with cut-off day 11"
        assert result.counts["groups"] == 0

    def test_cutoff_day_override(self, app, site, make_runner, sap_base):
        self._seed(site)

        result = make_runner().export_readings(cutoff_date=date(2025, 3, 12), cutoff_day=10)

        assert result.files == ["BE01_1000_12_3_2025.csv"]
        assert result.details["cutoff_days"] == [10]

    def test_default_cutoff_date_uses_local_timezone(self, app, make_runner):
        late_evening_utc = datetime(2025, 3, 9, 20, 0, tzinfo=timezone.utc)
        runner = make_runner(clock=lambda: late_evening_utc)
        assert runner.local_today() == date(2025, 3, 10)

    def test_disabled_export(self, app, site, configure_sap, make_runner):
        configure_sap(SAP_EXPORT_ENABLED=False)
        result = make_runner().export_readings(cutoff_date=date(2025, 3, 10))
        assert result.status is JobStatus.DISABLED

    def test_export_lock_held(self, app, site, make_runner, sap_base):
        runner = make_runner()
        runner.locks.acquire("exportmeterreadings")

        result = runner.export_readings(cutoff_date=date(2025, 3, 10))

        assert result.status is JobStatus.ALREADY_RUNNING
        assert not (sap_base / "UPLOAD").exists()


class TestHousekeeping:
    def test_archive_exports(self, app, make_runner, sap_base):
        upload = sap_base / "UPLOAD"
        upload.mkdir(parents=True)
        (upload / "BE01_1000_10_3_2025.csv").write_text("row")

        result = make_runner().archive_exports()

        assert result.counts == {"archived": 1}
        assert (upload / "ARCHIVE" / "BE01_1000_10_3_2025.csv").exists()

    def test_purge_logs(self, app, make_runner):
        old = FIXED_NOW - timedelta(days=120)
        recent = FIXED_NOW - timedelta(days=2)
        old_run = SapImportRun(job="meters", status=SapRunStatus.SUCCEEDED, started_at=old)
        recent_run = SapImportRun(job="meters", status=SapRunStatus.SUCCEEDED, started_at=recent)
        db.session.add_all([old_run, recent_run])
        db.session.flush()
        db.session.add_all(
            [
                SapImportLog(
                    run_id=old_run.id, import_type="meters", file_name="a.csv", file_path="/a.csv", source="SAP"
                ),
                SapExportLog(
                    business_entity="BE01",
                    company_code="1000",
                    cut_off_date=date(2024, 11, 10),
                    file_name="x.csv",
                    started_at=old,
                ),
            ]
        )
        db.session.commit()

        result = make_runner().purge_logs(retention_days=90)

        assert result.status is JobStatus.SUCCEEDED
        assert result.counts == {"runs": 1, "file_logs": 1, "export_logs": 1}
        assert [run.id for run in db.session.scalars(select(SapImportRun))] == [recent_run.id]

    def test_daily_summary_defaults_to_yesterday(self, app, make_runner):
        db.session.add(
            SapImportRun(
                job="sites",
                status=SapRunStatus.SUCCEEDED,
                started_at=datetime(2025, 3, 9, 8, 0, tzinfo=timezone.utc),
                counts_json={"created": 3},
            )
        )
        db.session.commit()

        result = make_runner().daily_summary()

        summary = result.details["summary"]
        assert summary["day"] == "2025-03-09"
        assert summary["imports"]["sites"] == {"runs": 1, "succeeded": 1, "created": 3}
        assert result.details["sent"] is False
