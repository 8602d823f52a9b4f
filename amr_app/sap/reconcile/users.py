"""USER_LIST reconciliation."""

from __future__ import annotations

from sqlalchemy import select

from amr_app.models import User

from ..directories import TIER_PRODUCTION
from ..errors import RowError
from ..mapping import MappingTables
from ..reader import SapRow
from .base import Clock, Reconciler, ReconcileSummary, apply_changes, logger, parse_sap_date, utcnow


def derive_email(user_id: str, domain: str) -> str:
    user_id = user_id.strip()
    if "@" in user_id:
        return user_id.lower()
    return f"{user_id}@{domain}".lower()


class UserReconciler(Reconciler):
    """
    Keyed by the e-mail derived from the SAP user id.

    Rows whose FUNCTION is not a known building-admin role are skipped, not
    rejected: the feed lists every SAP user of the business entities.
    """

    entity = "users"

    def __init__(
        self,
        session,
        mappings: MappingTables,
        clock: Clock = utcnow,
        *,
        email_domain: str = "example.com",
        default_password: str = "123",
        deactivate_absent: bool = False,
    ) -> None:
        super().__init__(session, mappings, clock)
        self.email_domain = email_domain
        self.default_password = default_password
        self.deactivate_absent = deactivate_absent
        self._seen: set[str] = set()
        self._file_seen: set[str] = set()

    def begin(self, source_file: str, tier: str) -> None:
        self._file_seen = set()

    def reconcile_row(self, row: SapRow, summary: ReconcileSummary, *, source_file: str, tier: str) -> None:
        user_id = row.get("USER_ID")
        if not user_id:
            raise RowError(source_file, row.line_number, "missing USER_ID")

        function = row.get("FUNCTION")
        role = self.mappings.user_roles.get(function)
        if role is None:
            logger.debug(
                "Skipping SAP user %s with unmapped function '%s'",
                user_id,
                function,
                extra={"sap_job": self.entity, "sap_file": source_file, "sap_line": row.line_number},
            )
            summary.skipped += 1
            return

        email = derive_email(user_id, self.email_domain)
        if email in self._file_seen:
            summary.skipped += 1
            return
        self._file_seen.add(email)
        self._seen.add(email)

        valid_to = parse_sap_date(row.get("USER_ID_VALID_TO"))
        fields = {
            "name": row.get("USER_NAME") or user_id,
            "role": role,
            "is_active": valid_to is None or valid_to >= self.today(),
            "sap_user_id": user_id,
            "sap_valid_to": valid_to,
            "sap_managed": True,
        }

        user = self.session.scalars(select(User).where(User.email == email)).first()
        if user is None:
            user = User(email=email, sap_synced_at=self.clock(), **fields)
            user.set_password(self.default_password)
            self.session.add(user)
            summary.created += 1
            logger.info("Created SAP user %s", email, extra={"sap_job": self.entity, "sap_file": source_file})
            return

        if apply_changes(user, fields):
            user.sap_synced_at = self.clock()
            summary.updated += 1
        else:
            summary.unchanged += 1

    def deactivate_missing(self, tier: str) -> int:
        # staging files never retire users
        if not self.deactivate_absent or not self._seen or tier != TIER_PRODUCTION:
            return 0
        users = self.session.scalars(
            select(User).where(User.sap_managed.is_(True), User.is_active.is_(True))
        ).all()
        deactivated = 0
        for user in users:
            if user.email in self._seen:
                continue
            user.is_active = False
            user.sap_synced_at = self.clock()
            deactivated += 1
        return deactivated
