"""Error taxonomy for the lab report delivery pipeline.

Every error raised while processing a registration derives from
``PipelineError`` and carries the registration key and the stage that failed,
so the scheduler can log one line with full context and move on to the next
registration.

Lock contention is deliberately absent: another live instance owning the lock
is normal flow control and is reported by ``ProcessLock.try_acquire``
returning ``False``.
"""

from __future__ import annotations

from typing import Optional

from .enums import DeliveryStep


class PipelineError(Exception):
    """Base class for recoverable per-registration failures."""

    stage = "pipeline"

    def __init__(self, message: str, *, reg_key: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.reg_key = reg_key

    def __str__(self) -> str:
        if self.reg_key is None:
            return f"[{self.stage}] {self.message}"
        return f"[{self.stage}] reg_key={self.reg_key}: {self.message}"


class InvocationError(PipelineError):
    """External report tool failed, could not start, or timed out."""

    stage = "report"

    def __init__(
        self,
        message: str,
        *,
        reg_key: Optional[str] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message, reg_key=reg_key)
        self.returncode = returncode
        self.stderr = stderr


class ConvergenceTimeout(PipelineError):
    """Expected report PDFs never appeared or never stopped growing."""

    stage = "convergence"


class MergeError(PipelineError):
    """No PDFs to merge, or the merge tool failed."""

    stage = "merge"


class DeliveryError(PipelineError):
    """One of the three WhatsApp delivery calls failed."""

    stage = "delivery"

    def __init__(
        self,
        step: DeliveryStep,
        message: str,
        *,
        reg_key: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(f"{step.value} failed: {message}", reg_key=reg_key)
        self.step = step
        self.status_code = status_code


class PersistenceError(PipelineError):
    """Final processing-flag update failed or timed out."""

    stage = "persistence"


class ShutdownRequested(Exception):
    """Raised between stages once a termination signal has been received."""
