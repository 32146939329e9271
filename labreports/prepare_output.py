"""Organize a registration's converged reports into a per-patient folder.

Once the convergence waiter has trusted the set of PDFs in the shared results
folder, they are moved into ``<results>/<phone>_<reg_key>`` (or
``<results>/<reg_key>`` when no phone is known). The merge step then works
inside that folder only, so the shared folder is free for the next
registration.

A folder left by an earlier failed attempt for the same registration is
emptied first; otherwise its old artifact would be merged into the new one.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Iterable, List, Optional

from .cleanup import safe_delete


def patient_folder_name(reg_key: str, phone_e164: Optional[str]) -> str:
    """Build the per-patient folder name.

    Parameters
    ----------
    reg_key : str
        Registration key.
    phone_e164 : str, optional
        Formatted patient phone, when known.

    Returns
    -------
    str
        ``<phone>_<reg_key>`` or ``<reg_key>``.
    """
    if phone_e164:
        return f"{phone_e164}_{reg_key}"
    return reg_key


def purge_directory(directory: Path) -> None:
    """Remove everything inside directory, keeping the directory itself."""
    for child in directory.iterdir():
        safe_delete(child)


def prepare_patient_folder(results_folder: Path, folder_name: str) -> Path:
    """Create (or empty) the per-patient folder and return its path."""
    folder = Path(results_folder) / folder_name
    if folder.exists():
        purge_directory(folder)
    else:
        folder.mkdir(parents=True, exist_ok=True)
    return folder


def move_reports(results_folder: Path, filenames: Iterable[str], destination: Path) -> List[Path]:
    """Move converged report PDFs from the results folder into destination.

    Returns
    -------
    List[Path]
        New paths of the moved files, in the given order.
    """
    moved = []
    for name in filenames:
        target = destination / name
        shutil.move(str(Path(results_folder) / name), str(target))
        moved.append(target)
    return moved
