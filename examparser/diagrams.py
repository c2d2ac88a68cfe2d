"""
Embedded Diagram Extractor
==========================
Pulls natively embedded raster images (diagrams, figures) out of a PDF.

Pipeline:
    1. List embedded images (metadata only): pdfimages -list or PyMuPDF
    2. Drop icons/logos below the minimum size
    3. Drop watermarks: a (width, height) signature seen on many pages
    4. Decode survivors into a temporary directory
    5. Flatten gray and soft-masked images onto white (Pillow)
    6. Store results in the run workspace, grouped by page

The temporary decode directory is always removed, success or failure.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from collections import Counter, defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF
from PIL import Image

from .config import ExtractionConfig
from .errors import SourceNotFound
from .models import DiagramImage, DiagramSourceType
from .workspace import RunWorkspace

logger = logging.getLogger(__name__)

PDFIMAGES_TIMEOUT = 600

DECODED_FILE_PATTERN = re.compile(r"img-(\d+)\.png$")


@dataclass
class EmbeddedImageInfo:
    """One embedded image occurrence, as listed before decoding."""
    index: int
    page_number: int
    width: int
    height: int
    kind: str = "image"          # "image" or "smask"
    color: str = "rgb"           # "gray", "rgb", "cmyk", ...
    xref: Optional[int] = None
    smask_xref: Optional[int] = None

    @property
    def signature(self) -> tuple[int, int]:
        return (self.width, self.height)

    @property
    def is_soft_masked(self) -> bool:
        return self.kind == "smask" or bool(self.smask_xref)

    @property
    def needs_white_background(self) -> bool:
        return self.is_soft_masked or self.color == "gray"


# ─── Listing ──────────────────────────────────────────────────────────────────


def parse_image_list(output: str) -> list[EmbeddedImageInfo]:
    """
    Parse `pdfimages -list` output.

    Columns: page num type width height color comp bpc enc interp object ID ...
    Header and separator lines are skipped.
    """
    images: list[EmbeddedImageInfo] = []
    for line in output.splitlines():
        if not line.strip() or "page" in line or "---" in line:
            continue
        parts = line.split()
        if len(parts) < 6:
            continue
        try:
            page = int(parts[0])
            width = int(parts[3])
            height = int(parts[4])
        except ValueError:
            continue
        images.append(EmbeddedImageInfo(
            index=len(images),
            page_number=page,
            width=width,
            height=height,
            kind=parts[2],
            color=parts[5],
        ))
    return images


def _colorspace_name(name: str) -> str:
    lowered = (name or "").lower()
    if "gray" in lowered:
        return "gray"
    if "cmyk" in lowered:
        return "cmyk"
    if "indexed" in lowered:
        return "index"
    return "rgb"


def list_images_with_pymupdf(pdf_path: str) -> list[EmbeddedImageInfo]:
    """List embedded images page by page using PyMuPDF."""
    images: list[EmbeddedImageInfo] = []
    with fitz.open(pdf_path) as doc:
        for page_index in range(doc.page_count):
            # (xref, smask, width, height, bpc, colorspace, alt_cs, name, filter, referencer)
            for entry in doc.get_page_images(page_index, full=True):
                xref, smask, width, height = entry[0], entry[1], entry[2], entry[3]
                images.append(EmbeddedImageInfo(
                    index=len(images),
                    page_number=page_index + 1,
                    width=width,
                    height=height,
                    kind="image",
                    color=_colorspace_name(entry[5]),
                    xref=xref,
                    smask_xref=smask or None,
                ))
    return images


# ─── Filtering ────────────────────────────────────────────────────────────────


def detect_watermarks(
    images: list[EmbeddedImageInfo],
    page_threshold: int = 5,
) -> set[tuple[int, int]]:
    """
    Find (width, height) signatures that repeat across many pages.

    Soft masks are not counted; they shadow the image they belong to.
    A signature present on at least `page_threshold` distinct pages
    is treated as a watermark.
    """
    pages_by_signature: dict[tuple[int, int], set[int]] = defaultdict(set)
    for img in images:
        if img.kind == "smask":
            continue
        pages_by_signature[img.signature].add(img.page_number)

    return {
        signature
        for signature, pages in pages_by_signature.items()
        if len(pages) >= page_threshold
    }


def filter_candidates(
    images: list[EmbeddedImageInfo],
    min_width: int = 100,
    min_height: int = 80,
    watermark_page_threshold: int = 5,
) -> tuple[list[EmbeddedImageInfo], Counter]:
    """
    Apply the size filter, then the watermark filter.

    Returns:
        (survivors, stats) where stats counts kept/small/watermark.
    """
    watermarks = detect_watermarks(images, watermark_page_threshold)
    if watermarks:
        logger.info(
            f"Detected {len(watermarks)} watermark pattern(s): "
            + ", ".join(f"{w}x{h}" for w, h in sorted(watermarks))
        )

    stats: Counter = Counter()
    survivors = []
    for img in images:
        if img.width < min_width or img.height < min_height:
            stats["small"] += 1
            continue
        if img.signature in watermarks:
            stats["watermark"] += 1
            continue
        stats["kept"] += 1
        survivors.append(img)
    return survivors, stats


# ─── Normalization / Cropping ─────────────────────────────────────────────────


def normalize_background(source_path: str, dest_path: str):
    """Composite an image over white and drop its alpha channel."""
    with Image.open(source_path) as img:
        if img.mode in ("RGBA", "LA") or (
            img.mode == "P" and "transparency" in img.info
        ):
            rgba = img.convert("RGBA")
            background = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
            flattened = Image.alpha_composite(background, rgba).convert("RGB")
        else:
            flattened = img.convert("RGB")
        flattened.save(dest_path, "PNG")


def crop_region(
    image_path: str,
    x: int,
    y: int,
    width: int,
    height: int,
    output_path: str,
) -> str:
    """
    Crop a rectangular region out of a page image.

    Raises:
        FileNotFoundError: If the source image is missing.
        ValueError: If the box is empty or falls outside the image.
    """
    if not os.path.exists(image_path):
        raise FileNotFoundError(f"Image not found: {image_path}")
    if width <= 0 or height <= 0 or x < 0 or y < 0:
        raise ValueError(
            f"Invalid crop box: x={x} y={y} width={width} height={height}"
        )

    with Image.open(image_path) as img:
        if x + width > img.width or y + height > img.height:
            raise ValueError(
                f"Crop box {width}x{height}+{x}+{y} exceeds image bounds "
                f"{img.width}x{img.height}"
            )
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        img.crop((x, y, x + width, y + height)).save(output_path, "PNG")

    logger.info(f"Cropped region {width}x{height}+{x}+{y} -> {output_path}")
    return output_path


# ─── Extractor ────────────────────────────────────────────────────────────────


class DiagramExtractor:
    """Extracts, filters and normalizes embedded diagrams."""

    def __init__(self, config: ExtractionConfig):
        self.config = config

    def _pdfimages_available(self) -> bool:
        return self.config.use_cli_tools and shutil.which("pdfimages") is not None

    def list_embedded_images(self, pdf_path: str) -> list[EmbeddedImageInfo]:
        """Metadata-only listing of all embedded image occurrences."""
        if self._pdfimages_available():
            result = subprocess.run(
                ["pdfimages", "-list", pdf_path],
                check=True,
                capture_output=True,
                text=True,
                timeout=PDFIMAGES_TIMEOUT,
            )
            return parse_image_list(result.stdout)
        return list_images_with_pymupdf(pdf_path)

    def extract_diagrams(
        self, pdf_path: str, run_id: str
    ) -> dict[int, list[DiagramImage]]:
        """
        Extract diagrams grouped by page number.

        Raises:
            SourceNotFound: If the PDF does not exist.

        Any other failure is logged and whatever was extracted so far
        is returned.
        """
        pdf_path = os.path.abspath(pdf_path)
        if not os.path.exists(pdf_path):
            raise SourceNotFound(pdf_path)

        workspace = RunWorkspace(self.config.work_dir, run_id)
        temp_dir = workspace.root / "decode-tmp"
        diagrams_by_page: dict[int, list[DiagramImage]] = {}

        try:
            temp_dir.mkdir(parents=True, exist_ok=True)
            use_cli = self._pdfimages_available()

            listing = self.list_embedded_images(pdf_path)
            logger.info(f"Found {len(listing)} embedded images in PDF")

            survivors, stats = filter_candidates(
                listing,
                min_width=self.config.min_diagram_width,
                min_height=self.config.min_diagram_height,
                watermark_page_threshold=self.config.watermark_page_threshold,
            )
            if not survivors:
                logger.info("No diagram candidates after filtering")
                return diagrams_by_page

            if use_cli:
                decoded = self._decode_with_pdfimages(pdf_path, temp_dir)
            else:
                decoded = self._decode_with_pymupdf(pdf_path, survivors, temp_dir)

            normalized = 0
            for info in survivors:
                source = decoded.get(info.index)
                if source is None:
                    logger.warning(
                        f"No decoded file for image #{info.index} "
                        f"on page {info.page_number}"
                    )
                    continue

                dest = workspace.diagrams_dir / (
                    f"p{info.page_number:03d}-{info.index:04d}.png"
                )
                if info.needs_white_background:
                    try:
                        normalize_background(str(source), str(dest))
                        normalized += 1
                    except (OSError, ValueError) as e:
                        logger.warning(
                            f"Background normalization failed for "
                            f"image #{info.index}, storing raw: {e}"
                        )
                        shutil.copy2(source, dest)
                else:
                    shutil.copy2(source, dest)

                diagrams_by_page.setdefault(info.page_number, []).append(
                    DiagramImage(
                        page_number=info.page_number,
                        width=info.width,
                        height=info.height,
                        source_type=(
                            DiagramSourceType.SOFT_MASK
                            if info.is_soft_masked
                            else DiagramSourceType.IMAGE
                        ),
                        color=info.color,
                        path=str(dest),
                    )
                )

            total = sum(len(v) for v in diagrams_by_page.values())
            logger.info(
                f"Extracted {total} diagrams across {len(diagrams_by_page)} pages "
                f"(skipped {stats['small']} small, {stats['watermark']} watermarks, "
                f"normalized {normalized})"
            )
            return diagrams_by_page

        except Exception as e:
            logger.error(f"Failed to extract embedded diagrams: {e}")
            return diagrams_by_page

        finally:
            _remove_dir(temp_dir)

    # ─── Decoding ─────────────────────────────────────────────────────────

    def _decode_with_pdfimages(
        self, pdf_path: str, temp_dir: Path
    ) -> dict[int, Path]:
        """Decode every image; files are matched to the listing by index."""
        subprocess.run(
            ["pdfimages", "-png", pdf_path, str(temp_dir / "img")],
            check=True,
            capture_output=True,
            timeout=PDFIMAGES_TIMEOUT,
        )
        decoded = {}
        for path in temp_dir.glob("img-*.png"):
            match = DECODED_FILE_PATTERN.search(path.name)
            if match:
                decoded[int(match.group(1))] = path
        return decoded

    def _decode_with_pymupdf(
        self,
        pdf_path: str,
        survivors: list[EmbeddedImageInfo],
        temp_dir: Path,
    ) -> dict[int, Path]:
        decoded = {}
        with fitz.open(pdf_path) as doc:
            for info in survivors:
                target = temp_dir / f"img-{info.index:04d}.png"
                try:
                    pix = fitz.Pixmap(doc, info.xref)
                    if info.smask_xref:
                        mask = fitz.Pixmap(doc, info.smask_xref)
                        pix = fitz.Pixmap(pix, mask)
                    if pix.n - pix.alpha >= 4:
                        pix = fitz.Pixmap(fitz.csRGB, pix)
                    pix.save(str(target))
                    decoded[info.index] = target
                except (RuntimeError, ValueError) as e:
                    logger.warning(
                        f"Failed decoding image xref={info.xref} "
                        f"on page {info.page_number}: {e}"
                    )
        return decoded


def _remove_dir(path: Path):
    """Delete files, then the directory. Failures are logged."""
    if not path.exists():
        return
    for f in path.iterdir():
        try:
            f.unlink()
        except OSError as e:
            logger.warning(f"Failed to delete temp file {f}: {e}")
    try:
        path.rmdir()
        logger.debug(f"Cleaned up temp directory: {path}")
    except OSError as e:
        logger.warning(f"Failed to cleanup temp directory {path}: {e}")
