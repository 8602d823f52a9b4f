"""SITE_LIST reconciliation."""

from __future__ import annotations

from sqlalchemy import select

from amr_app.models import Site

from ..errors import RowError
from ..reader import SapRow
from .base import Reconciler, ReconcileSummary, apply_changes, blank_to_none, logger, parse_sap_date


class SiteReconciler(Reconciler):
    """Keyed by business entity, falling back to the site code. Sites are never deactivated."""

    entity = "sites"

    def begin(self, source_file: str, tier: str) -> None:
        self._seen: set[str] = set()

    def cutoff_day(self, row: SapRow, source_file: str) -> int:
        raw = row.get("METER_READING_CUTOFF")
        if not raw:
            return 0
        try:
            day = int(raw)
        except ValueError:
            raise RowError(source_file, row.line_number, f"invalid METER_READING_CUTOFF '{raw}'") from None
        if not 0 <= day <= 31:
            raise RowError(source_file, row.line_number, f"METER_READING_CUTOFF out of range: {day}")

        valid_to = parse_sap_date(row.get("SETTLEMENT_VALID_TO"))
        if valid_to is None or valid_to < self.today():
            if day:
                logger.info(
                    "Settlement for %s has no current validity; cut-off day set to 0",
                    row.get("BUSINESS_ENTITY"),
                    extra={"sap_job": self.entity, "sap_file": source_file, "sap_line": row.line_number},
                )
            return 0
        return day

    def reconcile_row(self, row: SapRow, summary: ReconcileSummary, *, source_file: str, tier: str) -> None:
        business_entity = row.get("BUSINESS_ENTITY")
        if not business_entity:
            raise RowError(source_file, row.line_number, "missing BUSINESS_ENTITY")
        if business_entity in self._seen:
            summary.skipped += 1
            return
        self._seen.add(business_entity)

        fields = {
            "sap_company_code": blank_to_none(row.get("COMPANY_CODE")),
            "sap_business_entity": business_entity,
            "sap_cut_off_day": self.cutoff_day(row, source_file),
            "sap_service_charge_key": blank_to_none(row.get("SERVICE_CHARGE_KEY")),
            "sap_participation_group": blank_to_none(row.get("PARTICIPATION_GROUP")),
            "sap_settlement_unit": blank_to_none(row.get("SETTLEMENT_UNIT")),
            "sap_settlement_variant": blank_to_none(row.get("SETTLEMENT_VARIANT_TEXT")),
            "sap_settlement_valid_from": parse_sap_date(row.get("SETTLEMENT_VALID_FROM")),
            "sap_settlement_valid_to": parse_sap_date(row.get("SETTLEMENT_VALID_TO")),
            "sap_source": tier,
        }

        site = self.session.scalars(select(Site).where(Site.sap_business_entity == business_entity)).first()
        if site is None:
            site = self.session.scalars(select(Site).where(Site.code == business_entity)).first()

        if site is None:
            site = Site(code=business_entity, name=business_entity, sap_synced_at=self.clock(), **fields)
            self.session.add(site)
            summary.created += 1
            logger.info("Created site %s", business_entity, extra={"sap_job": self.entity, "sap_file": source_file})
            return

        if apply_changes(site, fields):
            site.sap_synced_at = self.clock()
            summary.updated += 1
        else:
            summary.unchanged += 1
