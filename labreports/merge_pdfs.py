"""Combine a registration's report PDFs into one deliverable artifact.

**Input Contract:**
- A per-patient folder containing the registration's report PDFs

**Output Contract:**
- One PDF named ``<prefix>-YYYYMMDD.pdf`` in the same folder
- A single source PDF is renamed in place; the merge tool is not invoked
- Two or more PDFs are merged by Ghostscript in sorted filename order, then
  every source except the artifact is deleted

**Error Handling:**
- No PDFs raises ``MergeError`` and leaves the folder untouched
- A Ghostscript failure, timeout, or missing/unreadable output raises
  ``MergeError`` and leaves every source PDF in place
"""

from __future__ import annotations

import logging
import subprocess
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from .exceptions import MergeError

LOG = logging.getLogger(__name__)

DEFAULT_PREFIX = "BL"


def discover_pdfs(folder: Path) -> List[Path]:
    return sorted(
        path
        for path in Path(folder).glob("*.pdf")
        if path.is_file() and not path.name.startswith(".")
    )


def count_pages(pdf_path: Path) -> int:
    """Return the page count of a PDF.

    Raises
    ------
    MergeError
        If the file cannot be parsed as a PDF.
    """
    try:
        return len(PdfReader(str(pdf_path)).pages)
    except (PdfReadError, OSError, ValueError) as exc:
        raise MergeError(f"Merged artifact is not a readable PDF: {pdf_path.name}: {exc}") from exc


def build_ghostscript_argv(executable: str, output_path: Path, sources: List[Path]) -> List[str]:
    return [
        executable,
        "-dBATCH",
        "-dNOPAUSE",
        "-q",
        "-sDEVICE=pdfwrite",
        f"-sOutputFile={output_path}",
        *(str(source) for source in sources),
    ]


class ArtifactMerger:
    """Merge the PDFs of one folder into a date-stamped artifact.

    Parameters
    ----------
    ghostscript_path : str
        Ghostscript executable.
    prefix : str
        Artifact filename prefix.
    timeout_seconds : float
        Deadline for the merge process.
    today : Callable[[], date], optional
        Date source for the artifact name; injectable for tests.
    """

    def __init__(
        self,
        ghostscript_path: str,
        *,
        prefix: str = DEFAULT_PREFIX,
        timeout_seconds: float = 120,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.ghostscript_path = ghostscript_path
        self.prefix = prefix
        self.timeout_seconds = timeout_seconds
        self._today = today or date.today

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ArtifactMerger":
        merge = config.get("merge", {})
        return cls(
            merge.get("ghostscript_path", "gs"),
            prefix=merge.get("artifact_prefix", DEFAULT_PREFIX),
            timeout_seconds=merge.get("timeout_seconds", 120),
        )

    def artifact_name(self) -> str:
        return f"{self.prefix}-{self._today():%Y%m%d}.pdf"

    def merge(self, source_dir: Path) -> Path:
        """Produce the single artifact for ``source_dir``.

        Returns
        -------
        Path
            Path of the merged (or renamed) artifact.

        Raises
        ------
        MergeError
            If there is nothing to merge or the merge tool fails.
        """
        source_dir = Path(source_dir)
        sources = discover_pdfs(source_dir)
        if not sources:
            raise MergeError(f"No PDF files found to merge in {source_dir}")

        artifact = source_dir / self.artifact_name()

        if len(sources) == 1:
            sources[0].replace(artifact)
            LOG.info("Single PDF renamed to: %s", artifact.name)
            return artifact

        pages = self._run_ghostscript(artifact, sources)

        removed = 0
        for source in sources:
            if source != artifact:
                source.unlink(missing_ok=True)
                removed += 1
        LOG.info(
            "PDFs merged successfully: %s (%s pages); cleaned up %s source PDF files",
            artifact.name,
            pages,
            removed,
        )
        return artifact

    def _run_ghostscript(self, artifact: Path, sources: List[Path]) -> int:
        # Ghostscript writes in place; merge into a temp name so a failed
        # run never clobbers a source that already carries the artifact name.
        partial = artifact.with_name(f".{artifact.stem}.partial.pdf")
        argv = build_ghostscript_argv(self.ghostscript_path, partial, sources)
        LOG.info("Merging %s PDFs into: %s", len(sources), artifact.name)
        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            partial.unlink(missing_ok=True)
            raise MergeError(f"PDF merge timed out after {self.timeout_seconds}s") from exc
        except OSError as exc:
            raise MergeError(f"Could not start merge tool {self.ghostscript_path}: {exc}") from exc

        if completed.returncode != 0:
            partial.unlink(missing_ok=True)
            raise MergeError(
                f"PDF merge failed with exit code {completed.returncode}: "
                f"{(completed.stderr or '').strip()}"
            )
        if not partial.exists():
            raise MergeError(f"Merge tool reported success but produced no file: {artifact.name}")

        try:
            pages = count_pages(partial)
        except MergeError:
            partial.unlink(missing_ok=True)
            raise
        partial.replace(artifact)
        return pages
