"""Cross-instance mutual exclusion through a lock file.

Only one scheduler may work on the shared results folder at a time. The lock
file holds a JSON ``LockRecord`` (pid, timestamp, hostname). A record older
than the staleness threshold is treated as abandoned: the recorded process is
terminated when it runs on this host, the file is removed and the caller
takes over. A corrupted file is removed and overwritten.

**Failure semantics:**
- A fresh lock owned by another process makes ``try_acquire`` return False;
  the caller exits cleanly. This is flow control, not an error.
- Failure to terminate a stale owner is logged and ignored.
- The owner refreshes the timestamp between registrations and before every
  report run so a healthy, long-running scheduler never looks stale.
- A refresh that finds someone else's record in the file reports the lock
  as lost instead of overwriting it; the caller must stop.
- A stale record is only removed if it is still the one judged stale.
"""

from __future__ import annotations

import logging
import os
import signal
import socket
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from .data_models import LockRecord

LOG = logging.getLogger(__name__)

LOCK_FILENAME = ".process_lock"
DEFAULT_STALE_AFTER = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def terminate_process(pid: int) -> None:
    """Ask the operating system to stop ``pid``.

    Raises
    ------
    OSError
        If the process does not exist or cannot be signalled.
    """
    os.kill(pid, signal.SIGTERM)


class ProcessLock:
    """Lock file guarding the single-active-instance invariant.

    Parameters
    ----------
    path : Path
        Lock file location (inside the shared results folder).
    stale_after : timedelta
        Age after which a lock record is considered abandoned.
    clock : Callable[[], datetime], optional
        Returns the current aware UTC time; injectable for tests.
    terminate : Callable[[int], None], optional
        Kills a stale owner; injectable for tests.
    """

    def __init__(
        self,
        path: Path,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        terminate: Optional[Callable[[int], None]] = None,
        pid: Optional[int] = None,
        hostname: Optional[str] = None,
    ) -> None:
        self.path = Path(path)
        self.stale_after = stale_after
        self._clock = clock or _utcnow
        self._terminate = terminate or terminate_process
        self.pid = os.getpid() if pid is None else pid
        self.hostname = socket.gethostname() if hostname is None else hostname
        self._acquired = False

    @classmethod
    def for_results_folder(cls, results_folder: Path, stale_seconds: float = 300) -> "ProcessLock":
        return cls(Path(results_folder) / LOCK_FILENAME, timedelta(seconds=stale_seconds))

    @property
    def acquired(self) -> bool:
        return self._acquired

    def try_acquire(self) -> bool:
        """Take the lock unless a live instance owns it.

        Returns
        -------
        bool
            True when this process now owns the lock, False when another
            instance holds a fresh lock.
        """
        if self._acquired:
            return True

        if self.path.exists() and not self._clear_existing():
            return False

        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            # Another instance created the file between the check and the create.
            LOG.warning("Lock file %s appeared while acquiring; another instance is starting", self.path)
            return False

        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(self._new_record().to_json())
        self._acquired = True
        LOG.info("Process lock acquired (PID: %s)", self.pid)
        return True

    def refresh(self) -> bool:
        """Rewrite the lock timestamp so the owner is not judged stale.

        Returns
        -------
        bool
            True when the lock is still ours and was refreshed. False when
            it was never acquired or another instance has taken it over; the
            file is then left untouched and ``acquired`` becomes False.
        """
        if not self._acquired:
            return False

        record = self._read_record()
        if not self._owns(record):
            if record is None:
                LOG.error("Process lock file %s is gone or unreadable; lock lost", self.path)
            else:
                LOG.error(
                    "Process lock taken over by PID %s on %s; lock lost",
                    record.pid,
                    record.hostname,
                )
            self._acquired = False
            return False

        self.path.write_text(self._new_record().to_json(), encoding="utf-8")
        LOG.debug("Process lock refreshed (PID: %s)", self.pid)
        return True

    def release(self) -> None:
        """Delete the lock file when it belongs to this process."""
        if not self.path.exists():
            self._acquired = False
            return

        record = self._read_record()
        if record is not None and not self._owns(record):
            LOG.warning(
                "Lock file now belongs to PID %s on %s; leaving it in place",
                record.pid,
                record.hostname,
            )
            self._acquired = False
            return

        try:
            self.path.unlink(missing_ok=True)
            LOG.info("Process lock released (PID: %s)", self.pid)
        except OSError as exc:
            LOG.error("Failed to release process lock: %s", exc)
        finally:
            self._acquired = False

    def __enter__(self) -> "ProcessLock":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def _new_record(self) -> LockRecord:
        return LockRecord(
            pid=self.pid,
            timestamp=self._clock().isoformat(),
            hostname=self.hostname,
        )

    def _owns(self, record: Optional[LockRecord]) -> bool:
        return record is not None and (record.pid, record.hostname) == (self.pid, self.hostname)

    def _read_record(self) -> Optional[LockRecord]:
        try:
            return LockRecord.from_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None

    def _clear_existing(self) -> bool:
        """Decide what to do with an existing lock file.

        Returns True when the file was removed and acquisition may proceed.
        """
        record = self._read_record()
        if record is None:
            LOG.warning("Removing corrupted lock file %s", self.path)
            self.path.unlink(missing_ok=True)
            return True

        age = self._clock() - record.acquired_at()
        if age <= self.stale_after:
            LOG.warning(
                "Another instance is running (PID: %s, started: %s)",
                record.pid,
                record.timestamp,
            )
            return False

        LOG.warning(
            "Detected stuck process (PID: %s, running for %ss)",
            record.pid,
            int(age.total_seconds()),
        )
        self._terminate_stale_owner(record)

        # Terminating can take a while; only delete the record judged stale.
        current = self._read_record()
        if current != record:
            LOG.warning("Lock file changed while taking over a stale lock; another instance owns it")
            return False
        self.path.unlink(missing_ok=True)
        LOG.info("Removed stale lock file")
        return True

    def _terminate_stale_owner(self, record: LockRecord) -> None:
        if record.pid == self.pid:
            return
        if record.hostname and record.hostname != self.hostname:
            LOG.warning(
                "Stale lock owner runs on %s; not terminating PID %s from %s",
                record.hostname,
                record.pid,
                self.hostname,
            )
            return
        try:
            self._terminate(record.pid)
            LOG.info("Successfully killed stuck process %s", record.pid)
        except OSError as exc:
            LOG.warning("Failed to kill process %s: %s", record.pid, exc)
