"""Vocabulary lookups applied while reconciling SAP rows."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Mapping

from config.sap import SapSettings

from .errors import MappingNotFound


def _identity(value: str) -> str:
    return value.strip()


def _upper(value: str) -> str:
    return value.strip().upper()


class MappingTable:
    """Read-only lookup from an SAP value to its internal value."""

    def __init__(self, name: str, entries: Mapping[str, str], *, normalize: Callable[[str], str] = _identity):
        self.name = name
        self._normalize = normalize
        self._entries = MappingProxyType({normalize(key): value for key, value in entries.items()})

    def __contains__(self, value: object) -> bool:
        return isinstance(value, str) and self._normalize(value) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"<MappingTable {self.name} ({len(self._entries)} entries)>"

    def get(self, value: str, default: str | None = None) -> str | None:
        return self._entries.get(self._normalize(value or ""), default)

    def require(self, value: str, *, source_file: str, line_number: int) -> str:
        """
        Return the mapped value.

        Raises:
            MappingNotFound: ``value`` has no entry.
        """
        mapped = self.get(value)
        if mapped is None:
            raise MappingNotFound(source_file, line_number, self.name, value)
        return mapped


@dataclass(frozen=True)
class MappingTables:
    user_roles: MappingTable
    meter_roles: MappingTable
    meter_statuses: MappingTable

    @classmethod
    def from_settings(cls, settings: SapSettings) -> "MappingTables":
        return cls(
            user_roles=MappingTable("user role", settings.user_roles),
            meter_roles=MappingTable("meter role", settings.meter_roles, normalize=lambda value: value.strip().lower()),
            meter_statuses=MappingTable("meter status", settings.meter_statuses, normalize=_upper),
        )
