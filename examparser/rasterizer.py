"""
Page Rasterizer
===============
Renders every page of a PDF into a PNG inside the run workspace.

Strategies, in order:
    1. pdftoppm (poppler) at the configured DPI
    2. PyMuPDF page pixmaps at the same DPI

The second strategy runs when poppler is missing, exits non-zero,
or produces no pages. Both write page-NNN.png files.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from pathlib import Path

import fitz  # PyMuPDF

from .config import ExtractionConfig
from .errors import RasterizationFailed, SourceNotFound
from .models import PageImage
from .workspace import RunWorkspace

logger = logging.getLogger(__name__)

PAGE_FILE_PATTERN = re.compile(r"-(\d+)\.png$")

PDFTOPPM_TIMEOUT = 600


class PageRasterizer:
    """Converts a PDF into an ordered list of page images."""

    def __init__(self, config: ExtractionConfig):
        self.config = config

    def page_count(self, pdf_path: str) -> int:
        """
        Get total number of pages in the PDF.

        Raises:
            SourceNotFound: If the PDF does not exist.
            RasterizationFailed: If PyMuPDF cannot open it.
        """
        if not os.path.exists(pdf_path):
            raise SourceNotFound(pdf_path)
        try:
            with fitz.open(pdf_path) as doc:
                return doc.page_count
        except (RuntimeError, ValueError) as e:
            raise RasterizationFailed(f"Cannot open {pdf_path}: {e}") from e

    def rasterize(self, pdf_path: str, run_id: str) -> list[PageImage]:
        """
        Render all pages of a PDF.

        Args:
            pdf_path: Path to the source PDF.
            run_id: Run whose workspace receives the images.

        Returns:
            One PageImage per page, ordered by page number.

        Raises:
            SourceNotFound: If the PDF does not exist.
            RasterizationFailed: If no strategy produced images.
        """
        pdf_path = os.path.abspath(pdf_path)
        if not os.path.exists(pdf_path):
            raise SourceNotFound(pdf_path)

        pages_dir = RunWorkspace(self.config.work_dir, run_id).pages_dir
        logger.info(f"Rasterizing {pdf_path} at {self.config.dpi} DPI")

        pages: list[PageImage] = []
        if self.config.use_cli_tools and shutil.which("pdftoppm"):
            try:
                pages = self._rasterize_with_pdftoppm(pdf_path, pages_dir)
            except (subprocess.SubprocessError, OSError) as e:
                logger.warning(f"pdftoppm failed, falling back to PyMuPDF: {e}")
                pages = []
            if not pages:
                _clear_dir(pages_dir)

        if not pages:
            try:
                pages = self._rasterize_with_pymupdf(pdf_path, pages_dir)
            except (RuntimeError, ValueError, OSError) as e:
                raise RasterizationFailed(
                    f"Could not rasterize {pdf_path}: {e}"
                ) from e

        if not pages:
            raise RasterizationFailed(f"No pages rendered from {pdf_path}")

        _check_gapless(pages)
        logger.info(f"Rasterized {len(pages)} pages")
        return pages

    # ─── Strategies ───────────────────────────────────────────────────────

    def _rasterize_with_pdftoppm(
        self, pdf_path: str, pages_dir: Path
    ) -> list[PageImage]:
        prefix = pages_dir / "page"
        subprocess.run(
            ["pdftoppm", "-png", "-r", str(self.config.dpi), pdf_path, str(prefix)],
            check=True,
            capture_output=True,
            timeout=PDFTOPPM_TIMEOUT,
        )

        pages = []
        for path in pages_dir.glob("page-*.png"):
            match = PAGE_FILE_PATTERN.search(path.name)
            if not match:
                continue
            page_number = int(match.group(1))
            # pdftoppm pads to the width of the page count; normalize names
            target = pages_dir / f"page-{page_number:03d}.png"
            if path != target:
                path.rename(target)
            pages.append(PageImage(page_number=page_number, path=str(target)))

        pages.sort(key=lambda p: p.page_number)
        return pages

    def _rasterize_with_pymupdf(
        self, pdf_path: str, pages_dir: Path
    ) -> list[PageImage]:
        zoom = self.config.dpi / 72.0
        matrix = fitz.Matrix(zoom, zoom)

        pages = []
        with fitz.open(pdf_path) as doc:
            for page_index in range(doc.page_count):
                page = doc[page_index]
                pix = page.get_pixmap(matrix=matrix, alpha=False)
                target = pages_dir / f"page-{page_index + 1:03d}.png"
                pix.save(str(target))
                pages.append(PageImage(
                    page_number=page_index + 1,
                    path=str(target),
                    width=pix.width,
                    height=pix.height,
                ))
        return pages


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _check_gapless(pages: list[PageImage]):
    expected = list(range(1, len(pages) + 1))
    actual = [p.page_number for p in pages]
    if actual != expected:
        raise RasterizationFailed(
            f"Rendered pages are not contiguous: {actual[:10]}..."
        )


def _clear_dir(path: Path):
    for f in path.iterdir():
        if f.is_file():
            f.unlink()
