"""Flip a registration's processing flag once its report is done.

This is the last and most important write of a registration. It runs on a
freshly opened connection rather than the read pool, so a slow or poisoned
pooled connection cannot block it. It is bounded twice: the driver's call
timeout cancels a statement stuck on a row lock, and an overall deadline
covers connect + update + close.

The update only matches rows that are not already PROCESSED, which makes a
repeated call a successful no-op (zero rows affected). A timeout or database
error leaves the registration QUEUED for the next batch.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict

import oracledb

from .database import open_connection
from .enums import ProcessingFlag
from .exceptions import PersistenceError

LOG = logging.getLogger(__name__)

MARK_PROCESSED_SQL = """
    UPDATE reg
    SET worklist_printed = :processed
    WHERE reg_key = :reg_key
    AND (worklist_printed IS NULL OR worklist_printed <> :processed)
"""


class StateTransitioner:
    """Single-row status update with an overall deadline.

    Parameters
    ----------
    connect : Callable[[], connection]
        Opens a new autocommit connection for each update.
    timeout_seconds : float
        Deadline for connect + update + close.
    """

    def __init__(self, connect: Callable[[], Any], timeout_seconds: float = 30) -> None:
        self._connect = connect
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "StateTransitioner":
        timeout_seconds = config.get("processing", {}).get("mark_processed_timeout_seconds", 30)
        return cls(
            connect=lambda: open_connection(config, call_timeout_seconds=timeout_seconds),
            timeout_seconds=timeout_seconds,
        )

    def mark_processed(self, reg_key: str) -> int:
        """Mark ``reg_key`` PROCESSED.

        Returns
        -------
        int
            Rows affected; 0 when the registration was already processed.

        Raises
        ------
        PersistenceError
            If the update fails or does not finish within the deadline.
        """
        LOG.info("Starting database update for reg_key: %s", reg_key)
        outcome: Dict[str, Any] = {}

        def run_update() -> None:
            try:
                outcome["rows"] = self._update(reg_key)
            except Exception as exc:
                outcome["error"] = exc

        # Daemon thread: an abandoned update must not keep the process alive.
        worker = threading.Thread(target=run_update, name="mark-processed", daemon=True)
        worker.start()
        worker.join(self.timeout_seconds)

        if worker.is_alive():
            raise PersistenceError(
                f"Database update timeout after {self.timeout_seconds} seconds",
                reg_key=reg_key,
            )
        error = outcome.get("error")
        if isinstance(error, oracledb.Error):
            raise PersistenceError(
                f"Database update failed: {error}".strip(), reg_key=reg_key
            ) from error
        if error is not None:
            raise error

        rows = outcome["rows"]
        if rows == 0:
            LOG.info("Registration %s was already marked as processed", reg_key)
        else:
            LOG.info("Marked registration %s as processed", reg_key)
        return rows

    def _update(self, reg_key: str) -> int:
        conn = self._connect()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    MARK_PROCESSED_SQL,
                    {"processed": ProcessingFlag.PROCESSED.value, "reg_key": reg_key},
                )
                rows = cur.rowcount
            conn.commit()
            LOG.debug("Update query executed, rows affected: %s", rows)
            return rows
        finally:
            try:
                conn.close()
            except oracledb.Error as exc:
                LOG.warning("Error closing database connection: %s", exc)
