"""Unit tests for prepare_output module - per-patient report folders.

Tests cover:
- Folder naming with and without a phone number
- Creating a new folder and emptying a reused one
- Moving converged reports out of the shared results folder

Real-world significance:
- Operators find a patient's delivered report by phone and registration
- A stale artifact from a failed attempt must not be merged again
"""

from __future__ import annotations

from pathlib import Path

import pytest

from labreports import prepare_output


@pytest.mark.unit
class TestPatientFolderName:
    def test_with_phone(self) -> None:
        assert prepare_output.patient_folder_name("R1", "+201016666348") == "+201016666348_R1"

    def test_without_phone(self) -> None:
        assert prepare_output.patient_folder_name("R1", None) == "R1"


@pytest.mark.unit
class TestPreparePatientFolder:
    """Unit tests for prepare_patient_folder."""

    def test_creates_folder(self, tmp_test_dir: Path) -> None:
        folder = prepare_output.prepare_patient_folder(tmp_test_dir, "R1")

        assert folder == tmp_test_dir / "R1"
        assert folder.is_dir()

    def test_empties_existing_folder(self, tmp_test_dir: Path) -> None:
        """Verify a folder left by a failed attempt is emptied, not removed."""
        folder = tmp_test_dir / "R1"
        folder.mkdir()
        (folder / "BL-20250228.pdf").write_text("old artifact")
        (folder / "nested").mkdir()

        result = prepare_output.prepare_patient_folder(tmp_test_dir, "R1")

        assert result.is_dir()
        assert list(result.iterdir()) == []


@pytest.mark.unit
class TestMoveReports:
    def test_moves_listed_files_only(self, tmp_test_dir: Path) -> None:
        (tmp_test_dir / "R1_G1.pdf").write_text("a")
        (tmp_test_dir / "R1_G2.pdf").write_text("b")
        (tmp_test_dir / "other.pdf").write_text("c")
        destination = prepare_output.prepare_patient_folder(tmp_test_dir, "R1")

        moved = prepare_output.move_reports(tmp_test_dir, ["R1_G1.pdf", "R1_G2.pdf"], destination)

        assert moved == [destination / "R1_G1.pdf", destination / "R1_G2.pdf"]
        assert all(path.exists() for path in moved)
        assert (tmp_test_dir / "other.pdf").exists()
        assert not (tmp_test_dir / "R1_G1.pdf").exists()
