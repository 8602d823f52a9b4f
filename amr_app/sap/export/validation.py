"""
Export eligibility rules.

Each rule is a named predicate with its own enable flag. Rules run in a
fixed order and the first failure decides the exclusion reason recorded for
audit; reasons never reach the billing file.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from config.sap import ExportRuleSettings

from .candidates import ExportCandidate

CLIENT_METER_ROLE = "Client Meter"


@dataclass(frozen=True)
class ValidationRuleFailure:
    """Why a candidate was excluded. A value, not an exception."""

    code: str
    message: str
    meter_id: int | None = None

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "meter_id": self.meter_id}


@dataclass(frozen=True)
class ExportRule:
    code: str
    description: str
    enabled: bool
    check: Callable[[ExportCandidate], str | None]

    def evaluate(self, candidate: ExportCandidate) -> ValidationRuleFailure | None:
        if not self.enabled:
            return None
        failure_code = self.check(candidate)
        if failure_code is None:
            return None
        return ValidationRuleFailure(code=failure_code, message=self.description, meter_id=candidate.meter_id)


def _is_blank(value: str | None) -> bool:
    return value is None or not str(value).strip()


def _uses_exponent(value: float) -> bool:
    return "e" in repr(float(value)).lower()


def _is_zero_measuring_point(value: str | None) -> bool:
    if _is_blank(value):
        return True
    try:
        return int(str(value).strip()) == 0
    except ValueError:
        return False


class ExportValidator:
    """Apply the enabled rules to export candidates for one cutoff."""

    def __init__(self, rules: ExportRuleSettings, *, cutoff_at: datetime) -> None:
        self.settings = rules
        self.cutoff_at = cutoff_at
        self.rules = self._build_rules(rules)

    def _build_rules(self, settings: ExportRuleSettings) -> tuple[ExportRule, ...]:
        cutoff_at = self.cutoff_at
        cutoff_date = cutoff_at.date()
        max_offline = timedelta(days=settings.max_offline_days)

        def reading_present(candidate):
            if candidate.reading is None or candidate.reading_at is None:
                return "no_reading"
            return None

        def reading_minimum(candidate):
            if candidate.reading < settings.min_reading_value or _uses_exponent(candidate.reading):
                return "reading_too_low"
            return None

        def online(candidate):
            if cutoff_at - candidate.reading_at > max_offline:
                return "offline"
            return None

        def active(candidate):
            if (candidate.status or "").strip().lower() != "active":
                return "inactive_meter"
            return None

        def client_role(candidate):
            if candidate.role != CLIENT_METER_ROLE:
                return "not_client_meter"
            return None

        def customer_name(candidate):
            return "no_customer_name" if _is_blank(candidate.customer_name) else None

        def contract_number(candidate):
            return "no_contract_number" if _is_blank(candidate.contract_number) else None

        def measuring_point(candidate):
            return "no_measuring_point" if _is_zero_measuring_point(candidate.measuring_point) else None

        def rental_object_validity(candidate):
            if candidate.ro_valid_to is None:
                return "no_ro_validity"
            if candidate.ro_valid_to < cutoff_date:
                return "expired_ro"
            return None

        return (
            ExportRule("reading_present", "Meter has no reading at or before the cutoff", True, reading_present),
            ExportRule(
                "min_reading",
                f"Reading below {settings.min_reading_value} or not a plain decimal",
                settings.require_min_reading,
                reading_minimum,
            ),
            ExportRule(
                "online",
                f"Latest reading older than {settings.max_offline_days} days",
                settings.require_online,
                online,
            ),
            ExportRule("active_status", "Meter is not active", settings.require_active_status, active),
            ExportRule("client_role", "Meter is not a client meter", settings.require_client_role, client_role),
            ExportRule("customer_name", "Customer name missing", settings.require_customer_name, customer_name),
            ExportRule(
                "contract_number", "Contract number missing", settings.require_contract_number, contract_number
            ),
            ExportRule(
                "measuring_point", "Measuring point missing or zero", settings.require_measuring_point, measuring_point
            ),
            ExportRule(
                "valid_ro",
                "Rental object validity missing or ended before the cutoff",
                settings.require_valid_ro,
                rental_object_validity,
            ),
        )

    def evaluate(self, candidate: ExportCandidate) -> ValidationRuleFailure | None:
        for rule in self.rules:
            failure = rule.evaluate(candidate)
            if failure is not None:
                return failure
        return None

    def is_eligible(self, candidate: ExportCandidate) -> bool:
        return self.evaluate(candidate) is None
