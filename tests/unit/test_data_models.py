"""Unit tests for data_models and enums modules.

Tests cover:
- LockRecord JSON parsing, serialization and timestamp handling
- ReportJob parameter mapping per item kind
- BatchSummary counts
- ItemKind test_type mapping

Real-world significance:
- The lock record is read by other instances; a parsing bug blocks takeover
- Report parameters must use the names the report templates declare
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from labreports.data_models import (
    BatchSummary,
    LockRecord,
    RegistrationOutcome,
    ReportJob,
)
from labreports.enums import ItemKind, ProcessingFlag, RegistrationStatus


@pytest.mark.unit
class TestLockRecord:
    """Unit tests for LockRecord."""

    def test_round_trip(self) -> None:
        record = LockRecord(pid=42, timestamp="2025-03-01T12:00:00+00:00", hostname="lab-pc")

        assert LockRecord.from_json(record.to_json()) == record

    def test_trailing_z_timestamp(self) -> None:
        """Verify ISO timestamps written with a Z suffix are accepted.

        Real-world significance:
        - Older schedulers wrote UTC timestamps with a Z suffix
        """
        record = LockRecord.from_json('{"pid": 7, "timestamp": "2025-03-01T12:00:00.000Z"}')

        assert record.acquired_at() == datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert record.hostname == ""

    def test_naive_timestamp_is_utc(self) -> None:
        record = LockRecord(pid=1, timestamp="2025-03-01T12:00:00", hostname="")

        assert record.acquired_at().tzinfo is timezone.utc

    @pytest.mark.parametrize(
        "payload",
        ["", "[]", '{"pid": "abc", "timestamp": "2025-03-01"}', '{"pid": 1, "timestamp": "yesterday"}'],
    )
    def test_invalid_payload_raises(self, payload: str) -> None:
        with pytest.raises(ValueError):
            LockRecord.from_json(payload)


@pytest.mark.unit
class TestReportJob:
    """Unit tests for ReportJob.parameters."""

    def test_group_job_parameters(self) -> None:
        """Verify group reports receive MY_GROUP_CODE.

        Real-world significance:
        - new_test.rep declares MY_REG_KEY, MY_GROUP_CODE and PRINTED_BY
        """
        job = ReportJob(Path("new_test.rep"), "R1", "G1", "Baraka", ItemKind.GROUP)

        assert job.parameters() == {
            "MY_REG_KEY": "R1",
            "MY_GROUP_CODE": "G1",
            "PRINTED_BY": "Baraka",
        }

    def test_mega_job_parameters(self) -> None:
        job = ReportJob(Path("CBC.rep"), "R1", "M1", "Baraka", ItemKind.MEGA)

        assert job.parameters() == {
            "MY_REG_KEY": "R1",
            "MEGA_CODE": "M1",
            "PRINTED_BY": "Baraka",
        }


@pytest.mark.unit
class TestBatchSummary:
    def test_counts(self) -> None:
        summary = BatchSummary(
            [
                RegistrationOutcome("R1", RegistrationStatus.PROCESSED, delivered=True),
                RegistrationOutcome("R2", RegistrationStatus.PROCESSED, delivered=False),
                RegistrationOutcome("R3", RegistrationStatus.FAILED, error="boom"),
            ]
        )

        assert summary.processed == 2
        assert summary.failed == 1
        assert summary.undelivered == ("R2",)


@pytest.mark.unit
class TestEnums:
    @pytest.mark.parametrize("code, kind", [(1, ItemKind.GROUP), (2, ItemKind.GROUP), (3, ItemKind.MEGA)])
    def test_from_type_code(self, code: int, kind: ItemKind) -> None:
        assert ItemKind.from_type_code(code) is kind

    def test_unknown_type_code_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown test_type"):
            ItemKind.from_type_code(9)

    def test_processing_flag_values(self) -> None:
        """Verify the flag values match the worklist_printed column."""
        assert ProcessingFlag.QUEUED.value == 2
        assert ProcessingFlag.PROCESSED.value == 1
