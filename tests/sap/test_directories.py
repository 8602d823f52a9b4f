import pytest

from amr_app.sap.directories import TIER_PRODUCTION, TIER_STAGING, DirectoryResolver
from amr_app.sap.errors import NoFilesFound


def test_staging_tier_wins_when_both_have_files(app, configure_sap, write_sap_file):
    settings = configure_sap()
    write_sap_file("meters", "prod.csv", [], tier="SAP")
    write_sap_file("meters", "staging.csv", [], tier="SEP")

    discovered = DirectoryResolver(settings).discover("meters")

    assert discovered.tier.source == TIER_STAGING
    assert discovered.names == ["staging.csv"]


def test_production_tier_used_when_staging_empty(app, configure_sap, write_sap_file):
    settings = configure_sap()
    write_sap_file("sites", "b.csv", [], tier="SAP")
    write_sap_file("sites", "a.txt", [], tier="SAP")

    discovered = DirectoryResolver(settings).discover("sites")

    assert discovered.tier.source == TIER_PRODUCTION
    assert discovered.names == ["a.txt", "b.csv"]


def test_production_first_when_configured(app, configure_sap, write_sap_file):
    settings = configure_sap(SAP_CHECK_SEP_FIRST=False)
    write_sap_file("users", "prod.csv", [], tier="SAP")
    write_sap_file("users", "staging.csv", [], tier="SEP")

    discovered = DirectoryResolver(settings).discover("users")

    assert discovered.tier.source == TIER_PRODUCTION
    assert discovered.names == ["prod.csv"]


def test_non_matching_files_are_ignored(app, configure_sap, sap_base):
    settings = configure_sap()
    directory = sap_base / "DOWNLOAD" / "METER_LIST"
    directory.mkdir(parents=True)
    (directory / "notes.md").write_text("ignore me")
    (directory / "UPPER.CSV").write_text("")

    discovered = DirectoryResolver(settings).discover("meters")

    assert discovered.names == ["UPPER.CSV"]


def test_no_files_raises(app, configure_sap):
    settings = configure_sap()
    with pytest.raises(NoFilesFound) as excinfo:
        DirectoryResolver(settings).discover("meters")
    assert len(excinfo.value.searched) == 2
