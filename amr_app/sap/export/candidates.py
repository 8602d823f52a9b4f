"""
Select the sites due for export and the meter readings they contribute.

Readings are bounded by the logical cutoff timestamp, never by the wall
clock, so a late run exports the same snapshot as an on-time one.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Iterable, Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from amr_app.models import UNASSIGNED_SITE_CODE, Meter, MeterReading, Site


@dataclass(frozen=True)
class ExportCandidate:
    meter_id: int
    meter_name: str
    site_code: str | None
    business_entity: str
    company_code: str
    customer_name: str | None
    contract_number: str | None
    measuring_point: str | None
    measuring_point_desc: str | None
    ro_valid_to: date | None
    status: str | None
    role: str | None
    reading: float | None
    reading_at: datetime | None


@dataclass
class ExportGroup:
    """All candidates billed under one business entity and company code."""

    business_entity: str
    company_code: str
    site_codes: list[str] = field(default_factory=list)
    site_ids: list[int] = field(default_factory=list)
    candidates: list[ExportCandidate] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return self.business_entity, self.company_code


def cutoff_timestamp(cutoff_date: date, cutoff_time: time) -> datetime:
    """Combine the cutoff date and time into the naive timestamp readings are stored in."""
    return datetime.combine(cutoff_date, cutoff_time)


def target_cutoff_days(cutoff_date: date, cutoff_day: int | None = None) -> tuple[int, ...]:
    """
    Cut-off days served on ``cutoff_date``.

    On the last day of a month, sites configured for a later day (e.g. 31 in
    a 30-day month) are served as well.
    """
    if cutoff_day is not None:
        return (cutoff_day,)
    day = cutoff_date.day
    month_length = calendar.monthrange(cutoff_date.year, cutoff_date.month)[1]
    if day == month_length:
        return tuple(range(day, 32))
    return (day,)


def sites_due(session: Session, days: Iterable[int]) -> list[Site]:
    days = [day for day in days if day > 0]
    if not days:
        return []
    return list(
        session.scalars(
            select(Site)
            .where(
                Site.sap_cut_off_day.in_(days),
                Site.sap_business_entity.is_not(None),
                Site.sap_business_entity != "",
                Site.sap_company_code.is_not(None),
                Site.sap_company_code != "",
            )
            .order_by(Site.sap_business_entity, Site.sap_company_code, Site.id)
        )
    )


def group_sites(sites: Sequence[Site]) -> list[ExportGroup]:
    groups: dict[tuple[str, str], ExportGroup] = {}
    for site in sites:
        key = (site.sap_business_entity, site.sap_company_code)
        group = groups.get(key)
        if group is None:
            group = groups[key] = ExportGroup(business_entity=key[0], company_code=key[1])
        group.site_codes.append(site.code)
        group.site_ids.append(site.id)
    return list(groups.values())


def load_candidates(session: Session, group: ExportGroup, cutoff_at: datetime) -> list[ExportCandidate]:
    """Attach the latest reading at or before ``cutoff_at`` to every meter of the group."""
    if not group.site_ids:
        return []
    latest_reading_id = (
        select(MeterReading.id)
        .where(MeterReading.meter_id == Meter.id, MeterReading.reading_at <= cutoff_at)
        .order_by(MeterReading.reading_at.desc(), MeterReading.id.desc())
        .limit(1)
        .correlate(Meter)
        .scalar_subquery()
    )
    stmt = (
        select(Meter, MeterReading)
        .outerjoin(MeterReading, MeterReading.id == latest_reading_id)
        .where(
            Meter.site_id.in_(group.site_ids),
            or_(Meter.site_code.is_(None), Meter.site_code != UNASSIGNED_SITE_CODE),
        )
        .order_by(Meter.id)
    )
    candidates = []
    for meter, reading in session.execute(stmt):
        candidates.append(
            ExportCandidate(
                meter_id=meter.id,
                meter_name=meter.name,
                site_code=meter.site_code,
                business_entity=group.business_entity,
                company_code=group.company_code,
                customer_name=meter.customer_name,
                contract_number=meter.sap_contract_number,
                measuring_point=meter.sap_measuring_point,
                measuring_point_desc=meter.sap_measuring_point_desc,
                ro_valid_to=meter.sap_ro_valid_to,
                status=meter.status,
                role=meter.role,
                reading=reading.wh_total if reading is not None else None,
                reading_at=reading.reading_at if reading is not None else None,
            )
        )
    return candidates

