"""
Filesystem lock files guarding each SAP job against overlapping runs.

A lock is a file named after the job under the lock directory, created with
``O_CREAT | O_EXCL``. Its body is a JSON lease recording who took it and
when, so a lock left behind by a crashed run can be reclaimed once it is
older than the staleness threshold.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator

from .errors import AlreadyRunning, LockError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lock:
    """Handle returned by :meth:`LockManager.acquire`."""

    job_key: str
    path: Path
    token: str
    acquired_at: datetime


@dataclass(frozen=True)
class LockStatus:
    job_key: str
    path: Path
    held: bool
    stale: bool = False
    holder: dict | None = None
    age_seconds: float | None = None

    def to_dict(self) -> dict:
        return {
            "job": self.job_key,
            "path": str(self.path),
            "held": self.held,
            "stale": self.stale,
            "holder": dict(self.holder or {}),
            "age_seconds": self.age_seconds,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LockManager:
    """Create, inspect and release per-job lock files."""

    def __init__(
        self,
        lock_dir: Path | str,
        *,
        stale_after: timedelta = timedelta(minutes=60),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.lock_dir = Path(lock_dir)
        self.stale_after = stale_after
        self._clock = clock

    def path_for(self, job_key: str) -> Path:
        return self.lock_dir / job_key

    def acquire(self, job_key: str) -> Lock:
        """
        Take the lock for ``job_key``.

        Raises:
            AlreadyRunning: the lock is held and not stale.
            LockError: the lock directory cannot be created or written.
        """
        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LockError(f"Cannot create lock directory {self.lock_dir}: {exc}") from exc

        try:
            return self._create(job_key)
        except FileExistsError:
            pass

        path = self.path_for(job_key)
        holder = self._read_lease(path)
        if holder is not None:
            if not self._is_stale(holder, path=path):
                raise AlreadyRunning(job_key, holder)
            logger.warning(
                "Reclaiming stale SAP lock '%s'",
                job_key,
                extra={"sap_lock": job_key, "sap_lock_holder": holder},
            )
            self._unlink(path)
        try:
            return self._create(job_key)
        except FileExistsError:
            raise AlreadyRunning(job_key, self._read_lease(path)) from None

    def release(self, lock: Lock) -> bool:
        """Remove the lock file if it still carries ``lock``'s token."""
        lease = self._read_lease(lock.path)
        if lease is None:
            logger.warning("SAP lock '%s' vanished before release", lock.job_key)
            return False
        if lease.get("token") != lock.token:
            logger.warning(
                "SAP lock '%s' is owned by another run; leaving it in place",
                lock.job_key,
                extra={"sap_lock": lock.job_key, "sap_lock_holder": lease},
            )
            return False
        self._unlink(lock.path)
        return True

    @contextmanager
    def hold(self, job_key: str) -> Iterator[Lock]:
        lock = self.acquire(job_key)
        try:
            yield lock
        finally:
            self.release(lock)

    def status(self, job_key: str) -> LockStatus:
        path = self.path_for(job_key)
        if not path.exists():
            return LockStatus(job_key=job_key, path=path, held=False)
        holder = self._read_lease(path)
        acquired_at = self._lease_time(holder, path)
        age = (self._clock() - acquired_at).total_seconds() if acquired_at else None
        return LockStatus(
            job_key=job_key,
            path=path,
            held=True,
            stale=self._is_stale(holder, path=path),
            holder=holder,
            age_seconds=age,
        )

    def force_release(self, job_key: str) -> bool:
        """Remove a lock regardless of owner. Returns False when no lock existed."""
        path = self.path_for(job_key)
        if not path.exists():
            return False
        logger.warning("Force-releasing SAP lock '%s'", job_key, extra={"sap_lock": job_key})
        self._unlink(path)
        return True

    def _create(self, job_key: str) -> Lock:
        path = self.path_for(job_key)
        acquired_at = self._clock()
        token = uuid.uuid4().hex
        lease = {
            "job": job_key,
            "token": token,
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "acquired_at": acquired_at.isoformat(),
        }
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise
        except OSError as exc:
            raise LockError(f"Cannot create lock file {path}: {exc}") from exc
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(lease, handle)
        return Lock(job_key=job_key, path=path, token=token, acquired_at=acquired_at)

    def _read_lease(self, path: Path) -> dict | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise LockError(f"Cannot read lock file {path}: {exc}") from exc
        try:
            lease = json.loads(raw)
        except json.JSONDecodeError:
            # Legacy marker files carry no lease body.
            return {}
        return lease if isinstance(lease, dict) else {}

    def _lease_time(self, lease: dict | None, path: Path | None = None) -> datetime | None:
        if lease and lease.get("acquired_at"):
            try:
                acquired_at = datetime.fromisoformat(lease["acquired_at"])
            except ValueError:
                acquired_at = None
            if acquired_at is not None:
                if acquired_at.tzinfo is None:
                    acquired_at = acquired_at.replace(tzinfo=timezone.utc)
                return acquired_at
        if path is not None:
            try:
                return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            except OSError:
                return None
        return None

    def _is_stale(self, lease: dict | None, *, path: Path | None = None) -> bool:
        if lease is None:
            return False
        acquired_at = self._lease_time(lease, path)
        if acquired_at is None:
            return False
        return self._clock() - acquired_at > self.stale_after

    def _unlink(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise LockError(f"Cannot remove lock file {path}: {exc}") from exc
