"""Unified data models for the lab report delivery pipeline.

This module provides the dataclasses passed between pipeline stages. None of
them are persisted except ``LockRecord``, which is the JSON content of the
process lock file.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .enums import ItemKind, RegistrationStatus

CODE_PARAMETERS = {
    ItemKind.GROUP: "MY_GROUP_CODE",
    ItemKind.MEGA: "MEGA_CODE",
}


@dataclass(frozen=True)
class LockRecord:
    """Content of the process lock file.

    Parameters
    ----------
    pid : int
        Process id of the instance owning the lock.
    timestamp : str
        ISO 8601 time the lock was acquired or last refreshed.
    hostname : str
        Host the owning process runs on.
    """

    pid: int
    timestamp: str
    hostname: str

    @classmethod
    def from_json(cls, text: str) -> "LockRecord":
        """Parse a lock file payload.

        Raises
        ------
        ValueError
            If the payload is not a JSON object with the required fields.
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Lock file is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("Lock file must contain a JSON object")
        try:
            record = cls(
                pid=int(data["pid"]),
                timestamp=str(data["timestamp"]),
                hostname=str(data.get("hostname", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Lock file is missing required fields: {exc}") from exc
        record.acquired_at()
        return record

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2)

    def acquired_at(self) -> datetime:
        """Return the lock timestamp as an aware UTC datetime.

        Accepts a trailing ``Z`` and treats naive timestamps as UTC.
        """
        value = self.timestamp.strip()
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValueError(f"Invalid lock timestamp: {self.timestamp}") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed


@dataclass(frozen=True)
class ReportJob:
    """One report to render for one test item of a registration.

    Parameters
    ----------
    template_path : Path
        Report template file (``.rep``) on the reports share.
    reg_key : str
        Registration the report belongs to.
    code : str
        Group code or mega code of the test item.
    printed_by : str
        Operator label printed on the report.
    kind : ItemKind
        Group or mega item; selects the report parameter carrying ``code``.
    """

    template_path: Path
    reg_key: str
    code: str
    printed_by: str
    kind: ItemKind

    def parameters(self) -> Dict[str, str]:
        return {
            "MY_REG_KEY": self.reg_key,
            CODE_PARAMETERS[self.kind]: self.code,
            "PRINTED_BY": self.printed_by,
        }


@dataclass(frozen=True)
class InvocationResult:
    """Outcome of one external report invocation.

    Parameters
    ----------
    returncode : int
        Process exit status (may be a success sentinel other than 0).
    stdout : str
        Captured standard output.
    stderr : str
        Captured standard error.
    duration : float
        Wall-clock seconds the process ran.
    """

    returncode: int
    stdout: str
    stderr: str
    duration: float


@dataclass(frozen=True)
class DeliveryReceipt:
    """Result of a successful WhatsApp delivery."""

    message_id: str
    status: str
    media_url: str


@dataclass
class RegistrationOutcome:
    """Per-registration result collected into the batch summary.

    Parameters
    ----------
    reg_key : str
        Registration key.
    status : RegistrationStatus
        PROCESSED when the flag was flipped, FAILED otherwise.
    artifact_path : Path, optional
        Merged report artifact, when one was produced.
    delivered : bool
        True when the WhatsApp message was accepted by the API.
    error : str, optional
        Message of the failure that stopped processing.
    """

    reg_key: str
    status: RegistrationStatus
    artifact_path: Optional[Path] = None
    delivered: bool = False
    error: Optional[str] = None


@dataclass
class BatchSummary:
    """Counts for one pass over the eligible registrations."""

    outcomes: List[RegistrationOutcome] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return sum(1 for o in self.outcomes if o.status is RegistrationStatus.PROCESSED)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status is RegistrationStatus.FAILED)

    @property
    def undelivered(self) -> Tuple[str, ...]:
        return tuple(
            o.reg_key
            for o in self.outcomes
            if o.status is RegistrationStatus.PROCESSED and not o.delivered
        )
