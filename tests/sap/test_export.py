from dataclasses import replace
from datetime import date, datetime, time

import pytest

from amr_app.models import Gateway, Meter, MeterReading, Site, db
from amr_app.sap.errors import ExportFileExists
from amr_app.sap.export import (
    ExportCandidate,
    ExportGroup,
    ExportValidator,
    ExportWriter,
    cutoff_timestamp,
    format_reading,
    group_sites,
    load_candidates,
    sites_due,
    target_cutoff_days,
)
from config.sap import ExportRuleSettings

CUTOFF_AT = datetime(2025, 3, 10, 0, 14, 59)


def _candidate(**overrides):
    values = dict(
        meter_id=1,
        meter_name="101",
        site_code="SITE-01",
        business_entity="BE01",
        company_code="1000",
        customer_name="Tenant A",
        contract_number="C-100",
        measuring_point="100000000001",
        measuring_point_desc="101",
        ro_valid_to=date(2030, 12, 31),
        status="Active",
        role="Client Meter",
        reading=1234.565,
        reading_at=datetime(2025, 3, 10, 0, 0, 0),
    )
    values.update(overrides)
    return ExportCandidate(**values)


class TestCutoffSelection:
    def test_cutoff_timestamp_is_naive(self):
        assert cutoff_timestamp(date(2025, 3, 10), time(0, 14, 59)) == CUTOFF_AT

    def test_regular_day(self):
        assert target_cutoff_days(date(2025, 3, 10)) == (10,)

    def test_month_end_serves_later_days(self):
        assert target_cutoff_days(date(2025, 2, 28)) == (28, 29, 30, 31)
        assert target_cutoff_days(date(2024, 2, 29)) == (29, 30, 31)
        assert target_cutoff_days(date(2025, 4, 30)) == (30, 31)
        assert target_cutoff_days(date(2025, 3, 31)) == (31,)

    def test_explicit_day_overrides(self):
        assert target_cutoff_days(date(2025, 2, 28), cutoff_day=15) == (15,)

    def test_sites_due_groups_by_entity_and_company(self, app):
        db.session.add_all(
            [
                Site(code="A", sap_business_entity="BE01", sap_company_code="1000", sap_cut_off_day=10),
                Site(code="B", sap_business_entity="BE02", sap_company_code="1000", sap_cut_off_day=10),
                Site(code="C", sap_business_entity="BE03", sap_company_code=None, sap_cut_off_day=10),
                Site(code="D", sap_business_entity="BE04", sap_company_code="1000", sap_cut_off_day=11),
                Site(code="E", sap_business_entity=None, sap_company_code="1000", sap_cut_off_day=10),
            ]
        )
        db.session.commit()

        groups = group_sites(sites_due(db.session, [10]))

        assert [group.key for group in groups] == [("BE01", "1000"), ("BE02", "1000")]
        assert groups[0].site_codes == ["A"]
        assert sites_due(db.session, [0]) == []


class TestLoadCandidates:
    def test_latest_reading_at_or_before_cutoff(self, app, site):
        gateway = Gateway(site=site, serial_number="GW-1")
        meter = Meter(name="101", sap_business_entity="BE01", site=site, site_code=site.code, gateway=gateway)
        spare = Meter(name="102", sap_business_entity="BE01", site=site, site_code=site.code)
        db.session.add_all([gateway, meter, spare])
        db.session.flush()
        db.session.add_all(
            [
                MeterReading(meter_id=meter.id, reading_at=datetime(2025, 3, 9, 23, 0), wh_total=100.0),
                MeterReading(meter_id=meter.id, reading_at=datetime(2025, 3, 10, 0, 10), wh_total=150.0),
                MeterReading(meter_id=meter.id, reading_at=datetime(2025, 3, 10, 0, 20), wh_total=999.0),
            ]
        )
        db.session.commit()

        group = ExportGroup("BE01", "1000", site_codes=[site.code], site_ids=[site.id])
        by_name = {candidate.meter_name: candidate for candidate in load_candidates(db.session, group, CUTOFF_AT)}

        assert by_name["101"].reading == 150.0
        assert by_name["101"].reading_at == datetime(2025, 3, 10, 0, 10)
        assert by_name["102"].reading is None

    def test_unassigned_meters_excluded(self, app, site):
        db.session.add(Meter(name="101", sap_business_entity="BE01", site=site, site_code="unassigned"))
        db.session.commit()

        group = ExportGroup("BE01", "1000", site_ids=[site.id])
        assert load_candidates(db.session, group, CUTOFF_AT) == []


class TestExportValidator:
    def _validator(self, **rules):
        return ExportValidator(ExportRuleSettings(**rules), cutoff_at=CUTOFF_AT)

    def test_eligible_candidate(self):
        assert self._validator().evaluate(_candidate()) is None

    @pytest.mark.parametrize(
        "overrides, code",
        [
            ({"reading": None, "reading_at": None}, "no_reading"),
            ({"reading": 0.5}, "reading_too_low"),
            ({"reading": 1e-07}, "reading_too_low"),
            ({"reading_at": datetime(2025, 3, 5, 0, 0)}, "offline"),
            ({"status": "Inactive"}, "inactive_meter"),
            ({"role": "Spare Meter"}, "not_client_meter"),
            ({"customer_name": "  "}, "no_customer_name"),
            ({"contract_number": None}, "no_contract_number"),
            ({"measuring_point": "000000000000"}, "no_measuring_point"),
            ({"ro_valid_to": None}, "no_ro_validity"),
            ({"ro_valid_to": date(2025, 3, 9)}, "expired_ro"),
        ],
    )
    def test_first_failing_rule_decides(self, overrides, code):
        failure = self._validator().evaluate(_candidate(**overrides))
        assert failure.code == code
        assert failure.meter_id == 1

    def test_min_reading_threshold_is_configurable(self):
        candidate = _candidate(reading=0.75)
        assert self._validator().evaluate(candidate).code == "reading_too_low"
        assert self._validator(min_reading_value=0.5).evaluate(candidate) is None

    def test_disabled_rule_is_skipped(self):
        candidate = _candidate(role="Spare Meter", customer_name=None)
        assert self._validator(require_client_role=False).evaluate(candidate).code == "no_customer_name"
        assert (
            self._validator(require_client_role=False, require_customer_name=False).is_eligible(candidate) is True
        )

    def test_reading_rule_cannot_be_disabled(self):
        candidate = _candidate(reading=None, reading_at=None)
        assert self._validator(require_min_reading=False).evaluate(candidate).code == "no_reading"

    def test_offline_boundary(self):
        exactly_four_days = _candidate(reading_at=CUTOFF_AT.replace(day=6))
        assert self._validator().is_eligible(exactly_four_days)
        assert self._validator(require_online=False).is_eligible(_candidate(reading_at=datetime(2024, 1, 1)))


class TestExportWriter:
    def test_format_reading_rounds_half_up(self):
        assert format_reading(1234.565) == "1234.57"
        assert format_reading(2.5) == "2.50"
        assert format_reading(1000000.0) == "1000000.00"
        assert format_reading(0.005) == "0.01"

    def test_filename_has_no_zero_padding(self, tmp_path):
        writer = ExportWriter(tmp_path)
        assert writer.filename("BE01", "1000", date(2025, 3, 5)) == "BE01_1000_5_3_2025.csv"

    def test_rows_sorted_without_trailing_newline(self, tmp_path):
        writer = ExportWriter(tmp_path / "UPLOAD")
        rows = [
            _candidate(meter_id=2, meter_name="205", measuring_point_desc="205", measuring_point=None),
            _candidate(meter_id=1),
        ]
        group = ExportGroup("BE01", "1000")

        path = writer.write(group, date(2025, 3, 10), rows)

        assert path.name == "BE01_1000_10_3_2025.csv"
        assert path.read_bytes() == (
            b"101,Tenant A,1234.57,10.03.2025,00:00:00,100000000001\n"
            b"205,Tenant A,1234.57,10.03.2025,00:00:00,000000000000"
        )
        assert [entry.name for entry in path.parent.iterdir()] == [path.name]

    def test_identical_input_gives_identical_bytes(self, tmp_path):
        rows = [_candidate(meter_id=index, meter_name=str(index), measuring_point_desc=str(index)) for index in (3, 1, 2)]
        first = ExportWriter(tmp_path / "a").write(ExportGroup("BE01", "1000"), date(2025, 3, 10), rows)
        second = ExportWriter(tmp_path / "b").write(
            ExportGroup("BE01", "1000"), date(2025, 3, 10), list(reversed(rows))
        )
        assert first.read_bytes() == second.read_bytes()

    def test_existing_file_is_never_overwritten(self, tmp_path):
        (tmp_path / "BE01_1000_10_3_2025.csv").write_text("already sent")
        writer = ExportWriter(tmp_path)

        with pytest.raises(ExportFileExists):
            writer.write(ExportGroup("BE01", "1000"), date(2025, 3, 10), [_candidate()])

        assert (tmp_path / "BE01_1000_10_3_2025.csv").read_text() == "already sent"

    def test_empty_group_writes_empty_file(self, tmp_path):
        path = ExportWriter(tmp_path).write(ExportGroup("BE01", "1000"), date(2025, 3, 10), [])
        assert path.read_bytes() == b""

    def test_group_candidates_used_by_default(self, tmp_path):
        group = ExportGroup("BE01", "1000", candidates=[replace(_candidate(), customer_name="Tenant B")])
        path = ExportWriter(tmp_path).write(group, date(2025, 3, 10))
        assert path.read_text().split(",")[1] == "Tenant B"
