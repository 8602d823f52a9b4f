"""METER_LIST reconciliation."""

from __future__ import annotations

from collections import defaultdict

from sqlalchemy import delete, select

from amr_app.models import (
    METER_STATUS_ACTIVE,
    METER_STATUS_INACTIVE,
    UNASSIGNED_SITE_CODE,
    Meter,
    Site,
)

from ..errors import RowError
from ..mapping import MappingTables
from ..reader import SapRow
from .base import (
    Clock,
    Reconciler,
    ReconcileSummary,
    apply_changes,
    blank_to_none,
    logger,
    parse_number,
    parse_sap_date,
    utcnow,
)


def _measuring_point_number(value: str | None) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


class MeterReconciler(Reconciler):
    """
    Keyed by meter description (numeric) plus business entity.

    Meters missing from every file of a run are deactivated once the run is
    complete, but only within the business entities the run mentions and only
    when the same tier supplied them last.
    """

    entity = "meters"

    def __init__(
        self,
        session,
        mappings: MappingTables,
        clock: Clock = utcnow,
        *,
        deactivate_absent: bool = True,
        cleanup_unassigned_inactive: bool = True,
    ) -> None:
        super().__init__(session, mappings, clock)
        self.deactivate_absent = deactivate_absent
        self.cleanup_unassigned_inactive = cleanup_unassigned_inactive
        self._seen: dict[str, set[str]] = defaultdict(set)
        self._file_seen: set[tuple[str, str]] = set()
        self._sites: dict[str, Site] = {}

    def begin(self, source_file: str, tier: str) -> None:
        self._file_seen = set()
        self._sites = {}

    def _resolve_status(self, row: SapRow, source_file: str) -> tuple[str, str]:
        contract_name = row.get("CONTRACT_NAME")
        if not contract_name:
            return self.mappings.meter_roles.get("spare", "Spare Meter"), METER_STATUS_INACTIVE
        status = self.mappings.meter_statuses.require(
            row.get("METER_STATUS"), source_file=source_file, line_number=row.line_number
        )
        return self.mappings.meter_roles.get("client", "Client Meter"), status

    def _site_for(self, business_entity: str, company_code: str, tier: str) -> Site:
        site = self._sites.get(business_entity)
        if site is not None:
            return site
        site = self.session.scalars(select(Site).where(Site.sap_business_entity == business_entity)).first()
        if site is None:
            site = self.session.scalars(select(Site).where(Site.code == business_entity)).first()
        if site is None:
            logger.warning(
                "No site for business entity %s; creating placeholder",
                business_entity,
                extra={"sap_job": self.entity, "sap_business_entity": business_entity},
            )
            site = Site(
                code=business_entity,
                name=business_entity,
                sap_business_entity=business_entity,
                sap_company_code=company_code or None,
                sap_source=tier,
            )
            self.session.add(site)
        self._sites[business_entity] = site
        return site

    def reconcile_row(self, row: SapRow, summary: ReconcileSummary, *, source_file: str, tier: str) -> None:
        description = row.get("METER_DESCRIPTION")
        if parse_number(description) is None or "," in description:
            logger.info(
                "Skipping meter row with non-numeric description '%s'",
                description,
                extra={"sap_job": self.entity, "sap_file": source_file, "sap_line": row.line_number},
            )
            summary.skipped += 1
            return

        business_entity = row.get("BUSINESS_ENTITY")
        if not business_entity:
            raise RowError(source_file, row.line_number, "missing BUSINESS_ENTITY")

        if (business_entity, description) in self._file_seen:
            summary.skipped += 1
            return
        self._file_seen.add((business_entity, description))
        self._seen[business_entity].add(description)

        role, status = self._resolve_status(row, source_file)

        multiplier = parse_number(row.get("MEASUREMENT_MULTIPLIER"))
        if not multiplier:
            multiplier = 1.0

        company_code = row.get("COMPANY_CODE")
        measuring_point = blank_to_none(row.get("MEASPOINT"))

        existing = self.session.scalars(
            select(Meter).where(Meter.name == description, Meter.sap_business_entity == business_entity)
        ).first()

        if existing is not None:
            stored_point = _measuring_point_number(existing.sap_measuring_point)
            incoming_point = _measuring_point_number(measuring_point)
            if stored_point is not None and incoming_point is not None and incoming_point < stored_point:
                logger.info(
                    "Skipping stale meter row %s/%s (measuring point %s < %s)",
                    business_entity,
                    description,
                    incoming_point,
                    stored_point,
                    extra={"sap_job": self.entity, "sap_file": source_file, "sap_line": row.line_number},
                )
                summary.skipped += 1
                return

        site = self._site_for(business_entity, company_code, tier)
        fields = {
            "site": site,
            "site_code": site.code,
            "role": role,
            "status": status,
            "customer_name": blank_to_none(row.get("CONTRACT_NAME")),
            "multiplier": multiplier,
            "sap_company_code": blank_to_none(company_code),
            "sap_business_entity": business_entity,
            "sap_building": blank_to_none(row.get("BUILDING")),
            "sap_building_description": blank_to_none(row.get("BUILDING_DESCRIPTION")),
            "sap_land": blank_to_none(row.get("LAND")),
            "sap_land_description": blank_to_none(row.get("LAND_DESCRIPTION")),
            "sap_rental_object_no": blank_to_none(row.get("RENTAL_OBJECT_NO")),
            "sap_rental_object_name": blank_to_none(row.get("RENTAL_OBJECT_NAME")),
            "sap_usage_type": blank_to_none(row.get("USAGE_TYPE")),
            "sap_ro_valid_from": parse_sap_date(row.get("RO_VALID_FROM")),
            "sap_ro_valid_to": parse_sap_date(row.get("RO_VALID_TO")),
            "sap_contract_number": blank_to_none(row.get("CONTRACT_NUMBER")),
            "sap_meter_characteristic": blank_to_none(row.get("METER_CHARACTERISTIC")),
            "sap_measuring_point": measuring_point,
            "sap_measuring_point_desc": description,
            "sap_measurement_sequence": blank_to_none(row.get("MEASUREMENT_SEQUENCE")),
            "sap_measurement_separator": blank_to_none(row.get("MEASUREMENT_SEPARATOR")),
            "sap_last_reading_date": parse_sap_date(row.get("METER_READING_DATE")),
            "sap_last_reading": parse_number(row.get("METER_READING")),
            "sap_participation_group": blank_to_none(row.get("PARTICIPATION_GROUP")),
            "sap_source": tier,
        }

        if existing is None:
            gateway = site.primary_gateway()
            meter = Meter(name=description, gateway=gateway, **fields)
            meter.sap_synced_at = self.clock()
            self.session.add(meter)
            summary.created += 1
            return

        if apply_changes(existing, fields):
            existing.sap_synced_at = self.clock()
            summary.updated += 1
        else:
            summary.unchanged += 1

    def deactivate_missing(self, tier: str) -> int:
        if not self.deactivate_absent or not self._seen:
            return 0
        deactivated = 0
        for business_entity, names in self._seen.items():
            candidates = self.session.scalars(
                select(Meter).where(
                    Meter.sap_business_entity == business_entity,
                    Meter.status == METER_STATUS_ACTIVE,
                    Meter.sap_source == tier,
                )
            ).all()
            for meter in candidates:
                if meter.name in names:
                    continue
                meter.status = METER_STATUS_INACTIVE
                meter.sap_synced_at = self.clock()
                deactivated += 1
        if deactivated:
            logger.info(
                "Deactivated %d %s meters absent from this run",
                deactivated,
                tier,
                extra={"sap_job": self.entity, "sap_source": tier},
            )
        return deactivated

    def cleanup(self) -> int:
        if not self.cleanup_unassigned_inactive:
            return 0
        result = self.session.execute(
            delete(Meter)
            .where(Meter.site_code == UNASSIGNED_SITE_CODE, Meter.status == METER_STATUS_INACTIVE)
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0
        if deleted:
            logger.info("Cleaned up %d unassigned inactive meters", deleted, extra={"sap_job": self.entity})
        return deleted
