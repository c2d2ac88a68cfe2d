"""
Run Workspace
=============
Per-run working directory for page images and decoded diagrams.

Layout:
    {work_dir}/
    └── {run_id}/
        ├── pages/       # page-001.png, page-002.png, ...
        └── diagrams/    # filtered, normalized embedded images

The directory belongs to exactly one run and is removed when the run
ends, whether it succeeded or failed.
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from pathlib import Path

logger = logging.getLogger(__name__)


class RunWorkspace:
    """Owns the working directory of a single extraction run."""

    def __init__(self, work_dir: str, run_id: str):
        self.run_id = run_id
        self.root = Path(work_dir) / _sanitize_run_id(run_id)

    @property
    def pages_dir(self) -> Path:
        path = self.root / "pages"
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def diagrams_dir(self) -> Path:
        path = self.root / "diagrams"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def exists(self) -> bool:
        return self.root.exists()

    def cleanup(self) -> int:
        """
        Delete every file, then the directories.
        Safe to call more than once; failures are logged, not raised.

        Returns:
            Number of files deleted.
        """
        if not self.root.exists():
            return 0

        count = 0
        for dirpath, _dirnames, filenames in os.walk(self.root, topdown=False):
            for name in filenames:
                path = Path(dirpath) / name
                try:
                    path.unlink()
                    count += 1
                except OSError as e:
                    logger.warning(f"Failed to delete {path}: {e}")
            try:
                Path(dirpath).rmdir()
            except OSError as e:
                logger.warning(f"Failed to remove directory {dirpath}: {e}")

        logger.debug(f"Cleaned workspace {self.root} ({count} files)")
        return count


def cleanup_stale_workspaces(work_dir: str, max_age_hours: float = 24.0) -> list[str]:
    """
    Remove run directories left behind by crashed processes.

    Args:
        work_dir: Parent directory holding run workspaces.
        max_age_hours: Only directories untouched for this long are removed.

    Returns:
        Names of the removed run directories.
    """
    base = Path(work_dir)
    if not base.is_dir():
        return []

    cutoff = time.time() - max_age_hours * 3600
    removed = []
    for entry in sorted(base.iterdir()):
        if not entry.is_dir():
            continue
        if entry.stat().st_mtime > cutoff:
            continue
        RunWorkspace(str(base), entry.name).cleanup()
        if entry.exists():
            shutil.rmtree(entry, ignore_errors=True)
        if not entry.exists():
            removed.append(entry.name)
            logger.info(f"Removed stale workspace: {entry.name}")
        else:
            logger.warning(f"Could not remove stale workspace: {entry}")
    return removed


def _sanitize_run_id(run_id: str) -> str:
    """Sanitize a run id for filesystem use."""
    return "".join(
        c if c.isalnum() or c in "-_" else "_"
        for c in run_id
    )[:100]
