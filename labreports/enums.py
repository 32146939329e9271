"""Enumerations for the lab report delivery pipeline."""

from enum import Enum


class ProcessingFlag(Enum):
    """Values of the ``worklist_printed`` column on a registration.

    The column is written upstream when a registration becomes eligible and
    flipped to ``PROCESSED`` by this pipeline once its report has been
    generated. Failed registrations keep ``QUEUED`` so a later batch retries
    them.

    Attributes
    ----------
    NOT_ELIGIBLE : int
        Registration is not ready for report delivery (0).
    PROCESSED : int
        Report generated and the registration has been handled (1).
    QUEUED : int
        Eligible and waiting for the pipeline (2).
    """

    NOT_ELIGIBLE = 0
    PROCESSED = 1
    QUEUED = 2


class ItemKind(Enum):
    """Discriminator of a test item attached to a registration.

    Group items map directly to the group report template; mega items need a
    ``mega_profiles`` lookup to resolve their template name.
    """

    GROUP = "group"
    MEGA = "mega"

    @property
    def type_codes(self) -> tuple[int, ...]:
        """Return the ``test_type`` column values belonging to this kind."""
        if self is ItemKind.GROUP:
            return (1, 2)
        return (3,)

    @classmethod
    def from_type_code(cls, value: int) -> "ItemKind":
        """Convert a raw ``test_type`` column value to ItemKind.

        Raises
        ------
        ValueError
            If value does not belong to any known test kind.
        """
        for kind in cls:
            if value in kind.type_codes:
                return kind
        raise ValueError(f"Unknown test_type code: {value}")


class DeliveryStep(Enum):
    """The three remote calls of a WhatsApp delivery, in order."""

    PRESIGN = "presign"
    UPLOAD = "upload"
    SEND = "send"


class RegistrationStatus(Enum):
    """Final outcome of processing one registration."""

    PROCESSED = "processed"
    FAILED = "failed"


class SchedulerState(Enum):
    """Lifecycle states of the batch scheduler.

    ``IDLE -> LOCK_ACQUIRED -> POLLING -> PROCESSING_BATCH -> SLEEPING ->
    POLLING -> ... -> SHUTTING_DOWN``. ``POLLING`` moves straight to
    ``SLEEPING`` when no registration is eligible.
    """

    IDLE = "idle"
    LOCK_ACQUIRED = "lock_acquired"
    POLLING = "polling"
    PROCESSING_BATCH = "processing_batch"
    SLEEPING = "sleeping"
    SHUTTING_DOWN = "shutting_down"
