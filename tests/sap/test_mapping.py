import pytest

from amr_app.sap.errors import MappingNotFound
from amr_app.sap.mapping import MappingTable, MappingTables
from config.sap import load_sap_settings


def test_meter_status_lookup_is_case_insensitive():
    tables = MappingTables.from_settings(load_sap_settings({}))

    assert tables.meter_statuses.get(" active ") == "Active"
    assert "inactive" in tables.meter_statuses
    assert tables.meter_roles.get("CLIENT") == "Client Meter"


def test_user_roles_match_exactly():
    tables = MappingTables.from_settings(load_sap_settings({}))

    assert tables.user_roles.get("Z>PH-BLDG-ADMIN-MANAGER") == "building_admin"
    assert tables.user_roles.get("Z>PH-ACCOUNTANT") is None


def test_require_raises_mapping_not_found():
    table = MappingTable("meter status", {"ACTIVE": "Active"})

    with pytest.raises(MappingNotFound) as excinfo:
        table.require("RETIRED", source_file="meters.csv", line_number=7)

    assert excinfo.value.line_number == 7
    assert str(excinfo.value) == "meters.csv line 7: unmapped meter status value 'RETIRED'"


def test_configured_maps_replace_defaults():
    settings = load_sap_settings({"SAP_METER_STATUS_MAP": {"ACT": "Active"}})
    tables = MappingTables.from_settings(settings)

    assert tables.meter_statuses.get("ACT") == "Active"
    assert tables.meter_statuses.get("ACTIVE") is None
    assert len(tables.meter_statuses) == 1
