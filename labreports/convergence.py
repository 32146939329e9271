"""Wait for the report engine's PDFs to settle in the results folder.

The report engine gives no completion signal, so stability over time is the
only available one. The folder is sampled every ``poll_interval`` seconds;
each sample counts the ``*.pdf`` files modified at or after the registration
started (older files are leftovers from a previous run) and sums their sizes.

The set is trusted once:

- count >= expected count, and
- aggregate size > 0, and
- aggregate size equals the previous sample's for ``stable_samples``
  consecutive samples.

A timeout returns an empty list; the caller treats it as a recoverable
failure of that registration.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class FolderSample:
    """One observation of the results folder."""

    files: Tuple[str, ...]
    total_size: int

    @property
    def count(self) -> int:
        return len(self.files)


def sample_folder(folder: Path, since_timestamp: float) -> FolderSample:
    """List ``*.pdf`` in folder modified at or after ``since_timestamp``.

    Files that disappear between listing and stat are skipped.
    """
    names: List[str] = []
    total = 0
    for path in sorted(Path(folder).glob("*.pdf")):
        try:
            stats = path.stat()
        except FileNotFoundError:
            continue
        if not path.is_file() or stats.st_mtime < since_timestamp:
            continue
        names.append(path.name)
        total += stats.st_size
    return FolderSample(files=tuple(names), total_size=total)


class ConvergenceWaiter:
    """Polling convergence detector for a shared output folder.

    Parameters
    ----------
    folder : Path
        Shared folder the report engine writes into.
    poll_interval : float
        Seconds between samples.
    stable_samples : int
        Consecutive unchanged samples required before trusting the set.
    clock, sleep : callables, optional
        Time source and sleeper; injectable so tests run instantly.
    """

    def __init__(
        self,
        folder: Path,
        *,
        poll_interval: float = 1.0,
        stable_samples: int = 1,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        if stable_samples < 1:
            raise ValueError("stable_samples must be at least 1")
        self.folder = Path(folder)
        self.poll_interval = poll_interval
        self.stable_samples = stable_samples
        self._clock = clock or time.monotonic
        self._sleep = sleep or time.sleep

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ConvergenceWaiter":
        processing = config.get("processing", {})
        return cls(
            Path(config["paths"]["results_folder"]),
            poll_interval=processing.get("convergence_poll_seconds", 1),
            stable_samples=processing.get("convergence_stable_samples", 1),
        )

    def wait_for(
        self, expected_count: int, timeout_seconds: float, since_timestamp: float
    ) -> List[str]:
        """Block until ``expected_count`` PDFs exist and stop growing.

        Parameters
        ----------
        expected_count : int
            Number of reports queued for the registration.
        timeout_seconds : float
            Give up after this many seconds.
        since_timestamp : float
            Epoch seconds; files with an older mtime are ignored.

        Returns
        -------
        List[str]
            Matched file names, or an empty list on timeout or when nothing
            was expected.
        """
        if expected_count <= 0:
            return []

        LOG.info("Waiting for %s PDF(s) to be generated...", expected_count)
        started = self._clock()
        deadline = started + timeout_seconds
        previous_size: Optional[int] = None
        stable = 0

        while True:
            try:
                sample = sample_folder(self.folder, since_timestamp)
            except OSError as exc:
                LOG.warning("Error checking PDFs: %s", exc)
                sample = None

            if sample is not None:
                LOG.info(
                    "PDF check: count=%s, size=%s, elapsed=%.0fs",
                    sample.count,
                    sample.total_size,
                    self._clock() - started,
                )
                if (
                    sample.count >= expected_count
                    and sample.total_size > 0
                    and sample.total_size == previous_size
                ):
                    stable += 1
                    if stable >= self.stable_samples:
                        LOG.info(
                            "PDFs ready: %s files, %s bytes total",
                            sample.count,
                            sample.total_size,
                        )
                        return list(sample.files)
                else:
                    stable = 0
                previous_size = sample.total_size
            else:
                previous_size = None
                stable = 0

            if self._clock() >= deadline:
                break
            self._sleep(self.poll_interval)

        LOG.warning("Timeout waiting for PDFs after %s seconds", timeout_seconds)
        return []
