"""Locate SAP drop files across the staging (SEP) and production (SAP) tiers."""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from pathlib import Path

from config.sap import SapSettings

from .errors import NoFilesFound

TIER_STAGING = "SEP"
TIER_PRODUCTION = "SAP"


@dataclass(frozen=True)
class DirectoryTier:
    source: str
    path: Path


@dataclass(frozen=True)
class DiscoveredFiles:
    """Files picked from the first tier that had any."""

    import_type: str
    tier: DirectoryTier
    files: tuple[Path, ...]

    @property
    def names(self) -> list[str]:
        return [path.name for path in self.files]


class DirectoryResolver:
    def __init__(self, settings: SapSettings) -> None:
        self.settings = settings

    def resolve(self, import_type: str) -> list[DirectoryTier]:
        """Return the tiers to scan for ``import_type`` in priority order."""
        entity = self.settings.entity(import_type)
        staging = DirectoryTier(TIER_STAGING, entity.sep_path)
        production = DirectoryTier(TIER_PRODUCTION, entity.path)
        if self.settings.check_sep_first:
            return [staging, production]
        return [production, staging]

    def matching_files(self, directory: Path) -> list[Path]:
        if not directory.is_dir():
            return []
        patterns = self.settings.file_patterns
        matches = [
            entry
            for entry in directory.iterdir()
            if entry.is_file() and any(fnmatch.fnmatchcase(entry.name.lower(), pattern) for pattern in patterns)
        ]
        return sorted(matches, key=lambda entry: entry.name)

    def discover(self, import_type: str) -> DiscoveredFiles:
        """
        Pick the files of the first tier holding at least one match.

        Raises:
            NoFilesFound: no tier has a matching file.
        """
        tiers = self.resolve(import_type)
        for tier in tiers:
            files = self.matching_files(tier.path)
            if files:
                return DiscoveredFiles(import_type=import_type, tier=tier, files=tuple(files))
        raise NoFilesFound(import_type, tuple(tier.path for tier in tiers))
