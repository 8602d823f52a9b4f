from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from amr_app.models import FinalizedRunError, Meter, SapImportRun, SapRunStatus, db


class TestSapImportRun:
    def _run(self, **fields):
        run = SapImportRun(
            job="meters",
            status=SapRunStatus.RUNNING,
            started_at=datetime(2025, 3, 10, 1, 0, tzinfo=timezone.utc),
            **fields,
        )
        db.session.add(run)
        db.session.commit()
        return run

    def test_running_run_can_be_updated(self, app):
        run = self._run()

        run.status = SapRunStatus.SUCCEEDED
        run.finished_at = datetime(2025, 3, 10, 1, 5, tzinfo=timezone.utc)
        db.session.commit()

        assert run.is_finalized is True
        assert run.to_dict()["status"] == "succeeded"

    def test_finalized_run_is_read_only(self, app):
        run = self._run(finished_at=datetime(2025, 3, 10, 1, 5, tzinfo=timezone.utc))

        run.counts_json = {"created": 99}
        with pytest.raises(FinalizedRunError):
            db.session.commit()
        db.session.rollback()

        assert db.session.get(SapImportRun, run.id).counts_json is None

    def test_to_dict_defaults(self, app):
        payload = self._run().to_dict()
        assert payload["file_names"] == []
        assert payload["counts"] == {}
        assert payload["finished_at"] is None


class TestMeter:
    def test_meter_is_active_follows_status(self, app, site):
        meter = Meter(name="101", site=site, site_code=site.code, sap_business_entity="BE01")
        db.session.add(meter)
        db.session.commit()

        assert meter.is_active is True
        assert meter.role == "Client Meter"
        meter.status = "Inactive"
        assert meter.is_active is False

    def test_meter_name_unique_per_entity(self, app):
        db.session.add_all(
            [
                Meter(name="101", sap_business_entity="BE01"),
                Meter(name="101", sap_business_entity="BE02"),
            ]
        )
        db.session.commit()

        db.session.add(Meter(name="101", sap_business_entity="BE01"))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()
