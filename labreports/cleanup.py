"""Cleanup of stale report PDFs in the shared results folder.

The report engine writes every PDF into the top level of the results folder,
so leftovers from an interrupted registration would be counted by the next
one. Each registration therefore starts by deleting the top-level ``*.pdf``
files. Per-patient subfolders and the lock file are never touched.

**Error Handling:**
- File deletion errors are logged and skipped (utility step)
- Missing directories/files don't cause errors (idempotent)
"""

import logging
import shutil
from pathlib import Path

LOG = logging.getLogger(__name__)


def safe_delete(path: Path):
    """Safely delete a file or directory if it exists.

    Parameters
    ----------
    path : Path
        File or directory to delete.
    """
    if path.exists():
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink()


def cleanup_stale_outputs(results_folder: Path) -> int:
    """Delete top-level PDFs left in the results folder.

    Parameters
    ----------
    results_folder : Path
        Shared folder the report engine writes into.

    Returns
    -------
    int
        Number of files removed.
    """
    results_folder = Path(results_folder)
    if not results_folder.is_dir():
        LOG.warning("Cleanup skipped: %s is not a directory", results_folder)
        return 0

    removed = 0
    for pdf_file in results_folder.glob("*.pdf"):
        if not pdf_file.is_file():
            continue
        try:
            safe_delete(pdf_file)
            removed += 1
        except OSError as exc:
            LOG.warning("Cleanup failed for %s: %s", pdf_file.name, exc)

    LOG.info("Cleaned up %s old PDF files from %s", removed, results_folder)
    return removed
