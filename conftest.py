# conftest.py

import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Set testing environment BEFORE importing app so app.py selects TestingConfig
os.environ["FLASK_ENV"] = "testing"

from app import app as flask_app  # noqa: E402
from amr_app.models import Site, User, db  # noqa: E402
from amr_app.sap import init_sap  # noqa: E402
from amr_app.sap.jobs import SapJobRunner  # noqa: E402
from amr_app.sap.state import get_sap_settings  # noqa: E402

FIXED_NOW = datetime(2025, 3, 10, 2, 0, tzinfo=timezone.utc)

METER_HEADER = (
    "COMPANY_CODE,BUSINESS_ENTITY,BUILDING,BUILDING_DESCRIPTION,LAND,LAND_DESCRIPTION,RENTAL_OBJECT_NO,"
    "RENTAL_OBJECT_NAME,USAGE_TYPE,RO_VALID_FROM,RO_VALID_TO,CONTRACT_NUMBER,CONTRACT_NAME,"
    "METER_CHARACTERISTIC,MEASPOINT,METER_DESCRIPTION,MEASUREMENT_SEQUENCE,MEASUREMENT_SEPARATOR,"
    "MEASUREMENT_MULTIPLIER,METER_READING_DATE,METER_READING,METER_STATUS,PARTICIPATION_GROUP,"
    "CREATION_DATE,CREATION_BY,LAST_CHANGE_ON,LAST_CHANGE_BY"
)
SITE_HEADER = (
    "COMPANY_CODE,BUSINESS_ENTITY,SERVICE_CHARGE_KEY,PARTICIPATION_GROUP,SETTLEMENT_UNIT,"
    "METER_READING_CUTOFF,SETTLEMENT_VARIANT_TEXT,SETTLEMENT_VALID_FROM,SETTLEMENT_VALID_TO,"
    "CREATED_ON,CREATED_AT,LAST_EDITED_ON,LAST_EDITED_AT"
)
USER_HEADER = (
    "USER_ID,USER_NAME,USER_ID_VALID_TO,COMPANY,BUSINESS_ENTITY,BUSINESS_ENTITY_VALID_TO,FUNCTION,FUNCTION_VALID_TO"
)
HEADERS = {"meters": METER_HEADER, "sites": SITE_HEADER, "users": USER_HEADER}

DIRECTORIES = {
    ("meters", "SAP"): "DOWNLOAD/METER_LIST",
    ("meters", "SEP"): "SEP_DOWNLOAD/METER_LIST",
    ("sites", "SAP"): "DOWNLOAD/SITE_LIST",
    ("sites", "SEP"): "SEP_DOWNLOAD/SITE_LIST",
    ("users", "SAP"): "DOWNLOAD/USER_LIST",
    ("users", "SEP"): "SEP_DOWNLOAD/USER_LIST",
}


def meter_row(
    description,
    *,
    company="1000",
    entity="BE01",
    contract_name="Tenant A",
    contract_number="C-100",
    measuring_point="100000000001",
    status="ACTIVE",
    multiplier="1",
    ro_valid_to="20301231",
):
    """Build one METER_LIST line in column order."""
    cells = [
        company,
        entity,
        "B1",
        "Building One",
        "L1",
        "Land One",
        "RO-1",
        "Unit 1",
        "RETAIL",
        "20200101",
        ro_valid_to,
        contract_number,
        contract_name,
        "ELEC",
        measuring_point,
        description,
        "1",
        "",
        multiplier,
        "20250301",
        "1200.5",
        status,
        "PG1",
        "20200101",
        "SAPUSER",
        "20250101",
        "SAPUSER",
    ]
    return ",".join(cells)


def site_row(entity, *, company="1000", cutoff="10", valid_to="20301231"):
    cells = [company, entity, "SC1", "PG1", "SU1", cutoff, "Monthly", "20200101", valid_to, "", "", "", ""]
    return ",".join(cells)


def user_row(user_id, *, name="Jordan Reyes", function="Z>PH-BLDG-ADMIN-MANAGER", valid_to="20301231"):
    cells = [user_id, name, valid_to, "1000", "BE01", "20301231", function, "20301231"]
    return ",".join(cells)


@pytest.fixture
def sap_base(tmp_path) -> Path:
    return tmp_path / "AMR"


@pytest.fixture(scope="function")
def app(sap_base):
    """Flask app with an empty in-memory database and SAP rooted in a temp dir."""
    original_config = dict(flask_app.config)
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "MONITORING_ENABLED": False,
            "ERROR_ALERTING_ENABLED": False,
            "SAP_ENABLED": True,
            "SAP_BASE_PATH": str(sap_base),
            "SAP_LOCK_PATH": str(sap_base / "locks"),
            "SAP_NOTIFY_ON_ERROR": False,
            "SAP_LOG_TO_FILE": False,
            "CELERY_BROKER_URL": "memory://",
            "CELERY_RESULT_BACKEND": "cache+memory://",
        }
    )
    init_sap(flask_app)

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()

    flask_app.config.clear()
    flask_app.config.update(original_config)
    init_sap(flask_app)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


@pytest.fixture
def configure_sap(app):
    """Apply SAP_* overrides and re-freeze the settings."""

    def _configure(**overrides):
        app.config.update(overrides)
        init_sap(app)
        return get_sap_settings(app)

    return _configure


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def make_runner(app, fixed_clock):
    def _make(**kwargs):
        kwargs.setdefault("clock", fixed_clock)
        return SapJobRunner(get_sap_settings(app), session=db.session, **kwargs)

    return _make


@pytest.fixture
def write_sap_file(sap_base):
    """Write a drop file for an import type into the SAP or SEP tier."""

    def _write(import_type, name, rows, *, tier="SAP", header=True, encoding="utf-8"):
        directory = sap_base / DIRECTORIES[(import_type, tier)]
        directory.mkdir(parents=True, exist_ok=True)
        lines = ([HEADERS[import_type]] if header else []) + list(rows)
        path = directory / name
        path.write_bytes(("\n".join(lines) + "\n").encode(encoding))
        return path

    return _write


@pytest.fixture
def site(app):
    record = Site(
        code="SITE-01",
        name="Tower One",
        sap_business_entity="BE01",
        sap_company_code="1000",
        sap_cut_off_day=10,
    )
    db.session.add(record)
    db.session.commit()
    return record


@pytest.fixture
def admin_user(app):
    user = User(email="admin@example.com", name="Admin", is_admin=True)
    user.set_password("secret")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def login(client):
    def _login(user):
        with client.session_transaction() as session:
            session["_user_id"] = str(user.id)
            session["_fresh"] = True

    return _login
