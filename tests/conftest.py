"""
Shared fixtures: PDF builders, fake providers and test configuration.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF
import pytest
from PIL import Image

from examparser.config import ExtractionConfig
from examparser.providers import ExtractionProvider, ProviderResponse


class FakeProvider(ExtractionProvider):
    """
    Replays scripted replies in call order.
    A reply that is an exception instance is raised instead of returned.
    """

    name = "fake"

    def __init__(self, replies: list, model: str = "fake-model"):
        self.model = model
        self.replies = list(replies)
        self.calls: list[tuple[str, str]] = []

    def generate_from_image(self, image_path: str, prompt: str) -> ProviderResponse:
        self.calls.append((image_path, prompt))
        if not self.replies:
            raise AssertionError("FakeProvider ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return ProviderResponse(
            text=reply,
            model=self.model,
            input_tokens=100,
            output_tokens=50,
        )


def write_pdf(
    path: Path,
    pages: list[list[str]],
    images: Optional[dict[int, list[tuple[int, int]]]] = None,
    image_dir: Optional[Path] = None,
) -> Path:
    """
    Build a PDF with one list of text lines per page.

    Args:
        images: 1-indexed page number -> [(width, height), ...] of solid
            RGB images to embed on that page.
    """
    images = images or {}
    image_dir = image_dir or path.parent
    doc = fitz.open()
    for page_index, lines in enumerate(pages):
        page = doc.new_page(width=595, height=842)
        y = 60
        for line in lines:
            page.insert_text((40, y), line, fontsize=9)
            y += 14
        for img_index, (width, height) in enumerate(images.get(page_index + 1, [])):
            img_path = image_dir / f"embed-{page_index + 1}-{img_index}.png"
            Image.new("RGB", (width, height), (200, 30, 30)).save(img_path)
            top = 400 + img_index * 110
            page.insert_image(
                fitz.Rect(40, top, 40 + width / 2, top + height / 2),
                filename=str(img_path),
            )
    doc.save(str(path))
    doc.close()
    return path


@pytest.fixture
def config(tmp_path) -> ExtractionConfig:
    """Config rooted in tmp_path, PyMuPDF fallbacks, no retry delays."""
    return ExtractionConfig(
        work_dir=str(tmp_path / "runs"),
        output_dir=str(tmp_path / "output"),
        diagram_store_dir=str(tmp_path / "diagrams"),
        dpi=50,
        use_cli_tools=False,
        retry_initial_delay=0.0,
        start_delay=0.0,
    )


@pytest.fixture
def sample_pdf(tmp_path) -> Path:
    """Three-page paper: cover page, then questions with one embedded figure."""
    return write_pdf(
        tmp_path / "paper.pdf",
        [
            ["NEET PRACTICE PAPER", "Physics"],
            [
                "1. The figure below shows a block on an incline.",
                "(a) 10 N (b) 20 N (c) 30 N (d) 40 N Ans.(c)",
                "2. What is the SI unit of force?",
                "(a) newton (b) joule (c) watt (d) pascal Ans.(a)",
            ],
            [
                "4. Which quantity is a vector in mechanics?",
                "(a) mass (b) speed (c) velocity (d) time Ans.(c)",
            ],
        ],
        images={2: [(200, 150)]},
    )
