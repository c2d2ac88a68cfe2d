"""
Diagram-to-Question Mapper
==========================
Positional heuristic that assigns page diagrams to questions.

Questions are assumed to be spread evenly over the content pages
(pages from `start_page` on). Each page therefore covers a contiguous
range of question numbers, and its diagrams are handed out to that range
in page order, one diagram per question.

Only questions already flagged `has_diagram` receive a diagram; the
mapper never invents associations.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

from .models import DiagramImage, ExtractedQuestion

logger = logging.getLogger(__name__)


def map_diagrams_to_questions(
    diagrams_by_page: dict[int, list[DiagramImage]],
    total_questions: int,
    total_pages: int,
    start_page: int = 2,
) -> dict[int, DiagramImage]:
    """
    Estimate which question each diagram belongs to.

    Args:
        diagrams_by_page: Diagrams grouped by 1-indexed page number.
        total_questions: Highest question number in the document.
        total_pages: Page count of the document.
        start_page: First page holding questions (cover pages come before).

    Returns:
        Mapping of question number to diagram.
    """
    content_pages = total_pages - start_page + 1
    if total_questions <= 0 or content_pages <= 0:
        return {}

    per_page = math.ceil(total_questions / content_pages)
    mapping: dict[int, DiagramImage] = {}

    for page_number in sorted(diagrams_by_page):
        page_offset = page_number - start_page
        if page_offset < 0:
            continue

        first = page_offset * per_page + 1
        last = min((page_offset + 1) * per_page, total_questions)
        if first > last:
            continue

        diagrams = iter(diagrams_by_page[page_number])
        for question_number in range(first, last + 1):
            diagram = next(diagrams, None)
            if diagram is None:
                break
            mapping[question_number] = diagram

    logger.debug(
        f"Mapped {len(mapping)} diagrams over {content_pages} content pages "
        f"({per_page} questions/page)"
    )
    return mapping


def assign_diagrams(
    questions: list[ExtractedQuestion],
    diagram_map: dict[int, DiagramImage],
    store: Optional[callable] = None,
) -> int:
    """
    Attach mapped diagrams to questions flagged `has_diagram`.

    Args:
        questions: Questions to update in place.
        diagram_map: Output of map_diagrams_to_questions.
        store: Optional callable(question_number, diagram) -> ref that
            copies the diagram into permanent storage.

    Returns:
        Number of questions that received a diagram.
    """
    assigned = 0
    for question in questions:
        if not question.has_diagram or question.diagram_image_ref:
            continue
        diagram = diagram_map.get(question.question_number)
        if diagram is None:
            continue
        ref = store(question.question_number, diagram) if store else diagram.path
        question.diagram_image_ref = ref
        assigned += 1

    logger.info(f"Assigned {assigned} diagrams to flagged questions")
    return assigned
