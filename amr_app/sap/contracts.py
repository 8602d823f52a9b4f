"""
Column layouts of the SAP master-data feeds.

Files arrive without quoting, comma or tab separated, with or without a
header row. Header-less files are mapped by position in the order below.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping


def normalize_header(value: str) -> str:
    """Normalize a header cell: ``Building Description`` -> ``BUILDING_DESCRIPTION``."""
    return "_".join(value.strip().lstrip("\ufeff").upper().replace("-", " ").split())


@dataclass(frozen=True)
class FileSchema:
    name: str
    columns: tuple[str, ...]

    @property
    def width(self) -> int:
        return len(self.columns)

    @property
    def first_column(self) -> str:
        return self.columns[0]


METER_LIST = FileSchema(
    name="meters",
    columns=(
        "COMPANY_CODE",
        "BUSINESS_ENTITY",
        "BUILDING",
        "BUILDING_DESCRIPTION",
        "LAND",
        "LAND_DESCRIPTION",
        "RENTAL_OBJECT_NO",
        "RENTAL_OBJECT_NAME",
        "USAGE_TYPE",
        "RO_VALID_FROM",
        "RO_VALID_TO",
        "CONTRACT_NUMBER",
        "CONTRACT_NAME",
        "METER_CHARACTERISTIC",
        "MEASPOINT",
        "METER_DESCRIPTION",
        "MEASUREMENT_SEQUENCE",
        "MEASUREMENT_SEPARATOR",
        "MEASUREMENT_MULTIPLIER",
        "METER_READING_DATE",
        "METER_READING",
        "METER_STATUS",
        "PARTICIPATION_GROUP",
        "CREATION_DATE",
        "CREATION_BY",
        "LAST_CHANGE_ON",
        "LAST_CHANGE_BY",
    ),
)

SITE_LIST = FileSchema(
    name="sites",
    columns=(
        "COMPANY_CODE",
        "BUSINESS_ENTITY",
        "SERVICE_CHARGE_KEY",
        "PARTICIPATION_GROUP",
        "SETTLEMENT_UNIT",
        "METER_READING_CUTOFF",
        "SETTLEMENT_VARIANT_TEXT",
        "SETTLEMENT_VALID_FROM",
        "SETTLEMENT_VALID_TO",
        "CREATED_ON",
        "CREATED_AT",
        "LAST_EDITED_ON",
        "LAST_EDITED_AT",
    ),
)

USER_LIST = FileSchema(
    name="users",
    columns=(
        "USER_ID",
        "USER_NAME",
        "USER_ID_VALID_TO",
        "COMPANY",
        "BUSINESS_ENTITY",
        "BUSINESS_ENTITY_VALID_TO",
        "FUNCTION",
        "FUNCTION_VALID_TO",
    ),
)

# Header spellings seen in real drops that differ from the canonical names.
HEADER_ALIASES: Mapping[str, str] = MappingProxyType(
    {
        "CONTRACT_NAME_(TENANT_NAME)": "CONTRACT_NAME",
        "TENANT_NAME": "CONTRACT_NAME",
        "MEASURING_POINT": "MEASPOINT",
        "RENTAL_OBJECT": "RENTAL_OBJECT_NO",
    }
)

SCHEMAS: Mapping[str, FileSchema] = MappingProxyType(
    {METER_LIST.name: METER_LIST, SITE_LIST.name: SITE_LIST, USER_LIST.name: USER_LIST}
)


def get_schema(import_type: str) -> FileSchema:
    try:
        return SCHEMAS[import_type]
    except KeyError as exc:
        raise ValueError(f"Unknown SAP import type '{import_type}'.") from exc
