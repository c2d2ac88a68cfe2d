"""
Diagram Storage
===============
Permanent storage for diagrams assigned to questions.

Run-scoped diagrams live in the run workspace and disappear with it;
the ones that end up on a question are copied here first.

Directory Layout:
    {diagram_store_dir}/
    └── {run_id}-q{N}-{hash}.png
"""

from __future__ import annotations

import hashlib
import logging
import shutil
from pathlib import Path

from .models import DiagramImage

logger = logging.getLogger(__name__)


def init_storage(store_dir: str) -> Path:
    """Ensure the diagram store directory exists."""
    path = Path(store_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


def store_diagram(
    store_dir: str,
    run_id: str,
    question_number: int,
    diagram: DiagramImage,
) -> str:
    """
    Copy a run-scoped diagram into permanent storage.

    Returns:
        Path of the stored file, used as the question's diagram ref.
    """
    source = Path(diagram.path)
    digest = _file_hash(source)[:12]
    dest = init_storage(store_dir) / (
        f"{_sanitize_name(run_id)}-q{question_number}-{digest}.png"
    )
    if source.resolve() != dest.resolve():
        shutil.copy2(source, dest)
    logger.debug(f"Stored diagram for Q{question_number}: {dest}")
    return str(dest)


def delete_run_diagrams(store_dir: str, run_id: str) -> int:
    """
    Delete every stored diagram of a run.
    Returns the number of files deleted.
    """
    base = Path(store_dir)
    if not base.is_dir():
        return 0
    count = 0
    for path in base.glob(f"{_sanitize_name(run_id)}-q*.png"):
        path.unlink()
        count += 1
    if count:
        logger.info(f"Deleted {count} stored diagrams for run {run_id}")
    return count


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _file_hash(path: Path) -> str:
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def _sanitize_name(name: str) -> str:
    """Sanitize a name for filesystem use."""
    return "".join(
        c if c.isalnum() or c in "-_" else "_"
        for c in name
    )[:100]
