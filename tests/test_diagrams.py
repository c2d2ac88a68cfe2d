"""
Tests for page rasterization, embedded diagrams, workspaces and storage.
"""

from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path

import pytest
from PIL import Image

from examparser.diagrams import (
    DiagramExtractor,
    EmbeddedImageInfo,
    crop_region,
    detect_watermarks,
    filter_candidates,
    list_images_with_pymupdf,
    normalize_background,
    parse_image_list,
)
from examparser.errors import RasterizationFailed, SourceNotFound
from examparser.models import DiagramImage
from examparser.rasterizer import PageRasterizer
from examparser.storage import delete_run_diagrams, store_diagram
from examparser.workspace import RunWorkspace, cleanup_stale_workspaces

from .conftest import write_pdf


PDFIMAGES_LIST = """\
page   num  type   width height color comp bpc  enc interp  object ID x-ppi y-ppi size ratio
--------------------------------------------------------------------------------------------
   1     0 image     400    60  rgb     3   8  jpeg   no        10  0    72    72 1234B 1.2%
   2     1 image     400    60  rgb     3   8  jpeg   no        10  0    72    72 1234B 1.2%
   2     2 smask     300   200  gray    1   8  image  no        12  0    72    72  100B 0.1%
   3     3 image      40    40  gray    1   8  image  no        13  0    72    72   90B 0.1%
"""


def images_on(pages, width, height, kind="image"):
    return [
        EmbeddedImageInfo(index=i, page_number=p, width=width, height=height, kind=kind)
        for i, p in enumerate(pages)
    ]


# ═══════════════════════════════════════════════════════════════════════════════
# LISTING AND FILTERING
# ═══════════════════════════════════════════════════════════════════════════════


class TestImageListing:
    """Test pdfimages -list parsing."""

    def test_parse_rows(self):
        images = parse_image_list(PDFIMAGES_LIST)
        assert [img.page_number for img in images] == [1, 2, 2, 3]
        assert [img.index for img in images] == [0, 1, 2, 3]
        assert images[0].signature == (400, 60)
        assert images[2].kind == "smask"
        assert images[2].is_soft_masked
        assert images[3].color == "gray"
        assert images[3].needs_white_background

    def test_parse_empty(self):
        assert parse_image_list("") == []


class TestWatermarkFilter:
    """Test size and watermark filtering."""

    def test_signature_on_six_pages_is_watermark(self):
        images = images_on(range(1, 7), 400, 60)
        assert detect_watermarks(images, page_threshold=5) == {(400, 60)}

    def test_signature_on_two_pages_is_kept(self):
        images = images_on([3, 7], 400, 60)
        survivors, stats = filter_candidates(images, min_width=100, min_height=50)
        assert len(survivors) == 2
        assert stats["watermark"] == 0

    def test_watermark_dropped_regardless_of_size(self):
        images = images_on(range(1, 7), 800, 600)
        images.append(EmbeddedImageInfo(index=99, page_number=2, width=300, height=200))
        survivors, stats = filter_candidates(images)
        assert [img.index for img in survivors] == [99]
        assert stats["watermark"] == 6

    def test_repeats_on_one_page_count_once(self):
        images = images_on([1, 1, 1, 1, 1, 1], 400, 60)
        assert detect_watermarks(images) == set()

    def test_soft_masks_not_counted(self):
        images = images_on(range(1, 7), 400, 60, kind="smask")
        assert detect_watermarks(images) == set()

    def test_small_images_dropped(self):
        images = [
            EmbeddedImageInfo(index=0, page_number=1, width=99, height=200),
            EmbeddedImageInfo(index=1, page_number=1, width=200, height=79),
            EmbeddedImageInfo(index=2, page_number=1, width=100, height=80),
        ]
        survivors, stats = filter_candidates(images)
        assert [img.index for img in survivors] == [2]
        assert stats["small"] == 2


# ═══════════════════════════════════════════════════════════════════════════════
# IMAGE PROCESSING
# ═══════════════════════════════════════════════════════════════════════════════


class TestImageProcessing:
    """Test background normalization and region cropping."""

    def test_normalize_transparent_to_white(self, tmp_path):
        source = tmp_path / "alpha.png"
        Image.new("RGBA", (10, 10), (0, 0, 0, 0)).save(source)
        dest = tmp_path / "flat.png"

        normalize_background(str(source), str(dest))

        with Image.open(dest) as img:
            assert img.mode == "RGB"
            assert img.getpixel((5, 5)) == (255, 255, 255)

    def test_normalize_gray(self, tmp_path):
        source = tmp_path / "gray.png"
        Image.new("L", (10, 10), 128).save(source)
        dest = tmp_path / "flat.png"
        normalize_background(str(source), str(dest))
        with Image.open(dest) as img:
            assert img.mode == "RGB"

    def test_crop_region(self, tmp_path):
        source = tmp_path / "page.png"
        Image.new("RGB", (50, 40), (0, 0, 255)).save(source)
        out = crop_region(str(source), 5, 5, 20, 10, str(tmp_path / "crops" / "q1.png"))
        with Image.open(out) as img:
            assert img.size == (20, 10)

    def test_crop_out_of_bounds(self, tmp_path):
        source = tmp_path / "page.png"
        Image.new("RGB", (50, 40)).save(source)
        with pytest.raises(ValueError):
            crop_region(str(source), 40, 0, 20, 10, str(tmp_path / "out.png"))

    def test_crop_empty_box(self, tmp_path):
        source = tmp_path / "page.png"
        Image.new("RGB", (50, 40)).save(source)
        with pytest.raises(ValueError):
            crop_region(str(source), 0, 0, 0, 10, str(tmp_path / "out.png"))

    def test_crop_missing_image(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            crop_region(str(tmp_path / "none.png"), 0, 0, 5, 5, str(tmp_path / "o.png"))


# ═══════════════════════════════════════════════════════════════════════════════
# DIAGRAM EXTRACTOR
# ═══════════════════════════════════════════════════════════════════════════════


class TestDiagramExtractor:
    """Test extraction from generated PDFs through the PyMuPDF path."""

    def test_extracts_embedded_image(self, config, sample_pdf):
        diagrams = DiagramExtractor(config).extract_diagrams(str(sample_pdf), "run-1")

        assert list(diagrams) == [2]
        diagram = diagrams[2][0]
        assert (diagram.width, diagram.height) == (200, 150)
        assert Path(diagram.path).exists()
        assert not (Path(config.work_dir) / "run-1" / "decode-tmp").exists()

    def test_watermark_never_extracted(self, config, tmp_path):
        config.min_diagram_height = 50
        images = {p: [(400, 60)] for p in range(1, 7)}
        images[3].append((200, 150))
        pdf = write_pdf(tmp_path / "wm.pdf", [["page"]] * 6, images=images)

        diagrams = DiagramExtractor(config).extract_diagrams(str(pdf), "run-wm")

        found = [(d.width, d.height) for page in diagrams.values() for d in page]
        assert found == [(200, 150)]

    def test_repeat_on_two_pages_kept(self, config, tmp_path):
        config.min_diagram_height = 50
        pdf = write_pdf(
            tmp_path / "two.pdf",
            [["page"]] * 3,
            images={1: [(400, 60)], 3: [(400, 60)]},
        )
        diagrams = DiagramExtractor(config).extract_diagrams(str(pdf), "run-two")
        assert sorted(diagrams) == [1, 3]

    def test_listing_with_pymupdf(self, sample_pdf):
        images = list_images_with_pymupdf(str(sample_pdf))
        assert len(images) == 1
        assert images[0].page_number == 2
        assert images[0].xref

    def test_missing_pdf(self, config, tmp_path):
        with pytest.raises(SourceNotFound):
            DiagramExtractor(config).extract_diagrams(str(tmp_path / "no.pdf"), "r")

    def test_normalization_failure_stores_raw_image(self, config, sample_pdf, monkeypatch):
        listed = list_images_with_pymupdf(str(sample_pdf))
        for info in listed:
            info.color = "gray"
        monkeypatch.setattr(
            "examparser.diagrams.list_images_with_pymupdf", lambda path: listed
        )

        def broken_normalize(source, dest):
            raise OSError("cannot identify image file")

        monkeypatch.setattr("examparser.diagrams.normalize_background", broken_normalize)

        diagrams = DiagramExtractor(config).extract_diagrams(str(sample_pdf), "run-raw")

        diagram = diagrams[2][0]
        with Image.open(diagram.path) as img:
            assert img.size == (200, 150)

    def test_unreadable_pdf_returns_empty(self, config, tmp_path):
        broken = tmp_path / "broken.pdf"
        broken.write_text("not a pdf at all")
        diagrams = DiagramExtractor(config).extract_diagrams(str(broken), "run-b")
        assert diagrams == {}
        assert not (Path(config.work_dir) / "run-b" / "decode-tmp").exists()


# ═══════════════════════════════════════════════════════════════════════════════
# RASTERIZER
# ═══════════════════════════════════════════════════════════════════════════════


class TestPageRasterizer:
    """Test page rendering through the PyMuPDF fallback."""

    def test_rasterize_all_pages(self, config, sample_pdf):
        rasterizer = PageRasterizer(config)
        pages = rasterizer.rasterize(str(sample_pdf), "run-r")

        assert [p.page_number for p in pages] == [1, 2, 3]
        assert all(Path(p.path).exists() for p in pages)
        assert Path(pages[0].path).name == "page-001.png"
        with Image.open(pages[0].path) as img:
            assert img.size == (pages[0].width, pages[0].height)

    def test_pdftoppm_pages_are_renamed(self, config, sample_pdf, monkeypatch):
        config.use_cli_tools = True
        commands = []

        def fake_pdftoppm(cmd, **kwargs):
            commands.append(cmd)
            prefix = cmd[-1]
            for n in (1, 2, 3):
                Image.new("RGB", (20, 30)).save(f"{prefix}-{n}.png")
            return subprocess.CompletedProcess(cmd, 0)

        monkeypatch.setattr("examparser.rasterizer.shutil.which", lambda name: f"/usr/bin/{name}")
        monkeypatch.setattr("examparser.rasterizer.subprocess.run", fake_pdftoppm)

        pages = PageRasterizer(config).rasterize(str(sample_pdf), "run-tool")

        assert commands[0][:4] == ["pdftoppm", "-png", "-r", "50"]
        assert [Path(p.path).name for p in pages] == [
            "page-001.png", "page-002.png", "page-003.png",
        ]

    def test_failing_pdftoppm_falls_back(self, config, sample_pdf, monkeypatch):
        config.use_cli_tools = True

        def failing_pdftoppm(cmd, **kwargs):
            prefix = cmd[-1]
            Image.new("RGB", (5, 5)).save(f"{prefix}-1.png")
            raise subprocess.CalledProcessError(1, cmd, stderr=b"Syntax Error")

        monkeypatch.setattr("examparser.rasterizer.shutil.which", lambda name: f"/usr/bin/{name}")
        monkeypatch.setattr("examparser.rasterizer.subprocess.run", failing_pdftoppm)

        pages = PageRasterizer(config).rasterize(str(sample_pdf), "run-fallback")

        assert [p.page_number for p in pages] == [1, 2, 3]
        with Image.open(pages[0].path) as img:
            assert img.size == (pages[0].width, pages[0].height)
            assert img.size != (5, 5)

    def test_pdftoppm_without_output_falls_back(self, config, sample_pdf, monkeypatch):
        config.use_cli_tools = True
        monkeypatch.setattr("examparser.rasterizer.shutil.which", lambda name: f"/usr/bin/{name}")
        monkeypatch.setattr(
            "examparser.rasterizer.subprocess.run",
            lambda cmd, **kwargs: subprocess.CompletedProcess(cmd, 0),
        )
        pages = PageRasterizer(config).rasterize(str(sample_pdf), "run-empty")
        assert len(pages) == 3

    def test_no_strategy_renders(self, config, sample_pdf, monkeypatch):
        def broken_render(self, pdf_path, pages_dir):
            raise RuntimeError("cannot render page")

        monkeypatch.setattr(PageRasterizer, "_rasterize_with_pymupdf", broken_render)

        with pytest.raises(RasterizationFailed):
            PageRasterizer(config).rasterize(str(sample_pdf), "run-x")

    def test_zero_pages_rendered(self, config, sample_pdf, monkeypatch):
        monkeypatch.setattr(
            PageRasterizer, "_rasterize_with_pymupdf", lambda self, path, d: []
        )
        with pytest.raises(RasterizationFailed, match="No pages rendered"):
            PageRasterizer(config).rasterize(str(sample_pdf), "run-zero")

    def test_corrupt_pdf(self, config, tmp_path):
        corrupt = tmp_path / "corrupt.pdf"
        corrupt.write_bytes(b"%PDF-1.4 garbage")
        with pytest.raises(RasterizationFailed):
            PageRasterizer(config).page_count(str(corrupt))
        with pytest.raises(RasterizationFailed):
            PageRasterizer(config).rasterize(str(corrupt), "run-c")

    def test_page_count(self, config, sample_pdf):
        assert PageRasterizer(config).page_count(str(sample_pdf)) == 3

    def test_missing_pdf(self, config, tmp_path):
        with pytest.raises(SourceNotFound):
            PageRasterizer(config).rasterize(str(tmp_path / "missing.pdf"), "r")
        assert not (Path(config.work_dir) / "r").exists()


# ═══════════════════════════════════════════════════════════════════════════════
# WORKSPACE AND STORAGE
# ═══════════════════════════════════════════════════════════════════════════════


class TestRunWorkspace:
    """Test per-run directory lifecycle."""

    def test_cleanup_removes_files_then_dirs(self, tmp_path):
        workspace = RunWorkspace(str(tmp_path), "run-1")
        (workspace.pages_dir / "page-001.png").write_bytes(b"x")
        (workspace.diagrams_dir / "p001-0000.png").write_bytes(b"y")

        assert workspace.cleanup() == 2
        assert not workspace.exists()

    def test_cleanup_is_idempotent(self, tmp_path):
        workspace = RunWorkspace(str(tmp_path), "run-1")
        workspace.pages_dir
        workspace.cleanup()
        assert workspace.cleanup() == 0

    def test_run_id_is_sanitized(self, tmp_path):
        workspace = RunWorkspace(str(tmp_path), "../escape/run")
        assert workspace.root.parent == tmp_path

    def test_stale_workspaces_removed(self, tmp_path):
        old = RunWorkspace(str(tmp_path), "old-run")
        (old.pages_dir / "page-001.png").write_bytes(b"x")
        fresh = RunWorkspace(str(tmp_path), "fresh-run")
        fresh.pages_dir

        past = time.time() - 48 * 3600
        os.utime(old.root, (past, past))

        removed = cleanup_stale_workspaces(str(tmp_path), max_age_hours=24)

        assert removed == ["old-run"]
        assert not old.exists()
        assert fresh.exists()

    def test_stale_cleanup_missing_dir(self, tmp_path):
        assert cleanup_stale_workspaces(str(tmp_path / "nothing")) == []


class TestDiagramStorage:
    """Test the permanent diagram store."""

    def test_store_and_delete(self, tmp_path):
        source = tmp_path / "p002-0000.png"
        Image.new("RGB", (20, 20)).save(source)
        diagram = DiagramImage(page_number=2, width=20, height=20, path=str(source))
        store_dir = tmp_path / "store"

        ref = store_diagram(str(store_dir), "run-1", 7, diagram)

        assert Path(ref).exists()
        assert Path(ref).name.startswith("run-1-q7-")
        assert Path(ref).suffix == ".png"
        assert delete_run_diagrams(str(store_dir), "run-1") == 1
        assert not Path(ref).exists()

    def test_delete_missing_store(self, tmp_path):
        assert delete_run_diagrams(str(tmp_path / "none"), "run-1") == 0
