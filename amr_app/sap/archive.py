"""Move processed SAP files out of the drop directories."""

from __future__ import annotations

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from .errors import ArchiveError

logger = logging.getLogger(__name__)


class Archiver:
    """
    Move files into an archive directory without ever overwriting.

    A name collision gets a ``_YYYYmmddHHMMSS`` suffix, and a counter after
    that when the stamped name is taken as well.
    """

    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)) -> None:
        self.clock = clock

    def destination_for(self, path: Path, archive_dir: Path) -> Path:
        destination = archive_dir / path.name
        if not destination.exists():
            return destination
        stamp = self.clock().strftime("%Y%m%d%H%M%S")
        candidate = archive_dir / f"{path.stem}_{stamp}{path.suffix}"
        counter = 1
        while candidate.exists():
            candidate = archive_dir / f"{path.stem}_{stamp}_{counter}{path.suffix}"
            counter += 1
        return candidate

    def archive(self, path: Path | str, archive_dir: Path | str) -> Path:
        """
        Move ``path`` into ``archive_dir`` and return the new location.

        Raises:
            ArchiveError: the directory cannot be created or the move fails;
                the source file is left in place.
        """
        path = Path(path)
        archive_dir = Path(archive_dir)
        if not path.is_file():
            raise ArchiveError(path, "source file no longer exists")
        try:
            archive_dir.mkdir(parents=True, exist_ok=True)
            destination = self.destination_for(path, archive_dir)
            shutil.move(str(path), str(destination))
        except OSError as exc:
            raise ArchiveError(path, exc.strerror or str(exc)) from exc
        logger.info("Archived %s to %s", path.name, destination, extra={"sap_file": path.name})
        return destination


def archive_export_files(
    export_dir: Path | str,
    archive_dir: Path | str,
    *,
    archiver: Archiver | None = None,
    pattern: str = "*.csv",
) -> list[Path]:
    """Move every export file sitting directly in ``export_dir`` into ``archive_dir``."""
    export_dir = Path(export_dir)
    if not export_dir.is_dir():
        return []
    archiver = archiver or Archiver()
    moved = []
    for path in sorted(export_dir.glob(pattern)):
        if path.is_file():
            moved.append(archiver.archive(path, archive_dir))
    return moved
