"""
Vision-Based Extractor
======================
Page-by-page question extraction with a multimodal model, for scanned
or layout-heavy papers where text patterns fail.

Architecture:
    PageImage → provider (through the CostLedger) → reply text →
    first well-formed JSON payload → ExtractedQuestion[] →
    SectionNumbering (restart detection) → questions with global numbers

Pages are processed strictly in order: renumbering depends on the
running maximum of every page before it.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .config import ExtractionConfig
from .errors import MalformedProviderResponse
from .ledger import CostLedger
from .models import (
    PENDING_ANSWER,
    Anomaly,
    AnomalyType,
    Difficulty,
    ExtractedQuestion,
    ListItem,
    PageImage,
    QuestionType,
    StructuredData,
    StructuredDataType,
)
from .providers import ExtractionProvider, is_retryable_error

logger = logging.getLogger(__name__)


PAGE_PROMPT = """You are analyzing page {page_number} of an exam question paper. Extract EVERY question visible on this page.

Instructions:
- Include the complete question text and all options (A, B, C, D)
- Use the question number exactly as printed on the page
- If a question continues from the previous page or onto the next, extract what you can see
- Mark questions that refer to a diagram, figure or graph with hasDiagram

For each question, provide a JSON object with:
- questionNumber: the number shown on the page
- questionText: complete question text
- questionType: "single_correct", "multiple_correct", "assertion_reason", "integer_type" or "match_list"
- optionA, optionB, optionC, optionD: the four options
- correctAnswer: the answer letter if printed on the page, otherwise null
- subject: "Physics", "Chemistry", "Botany" or "Zoology"
- topic: main topic name
- difficulty: "easy", "medium" or "hard"
- hasDiagram: true if the question has a diagram
- diagramDescription: brief description of the diagram

For match-list questions, also provide structuredData:
{{"listATitle": "List-I", "listBTitle": "List-II",
  "listA": [{{"key": "A", "value": "..."}}],
  "listB": [{{"key": "I", "value": "..."}}]}}

Return ONLY a JSON array of questions, nothing else."""

DIAGRAM_PROMPT = """You are analyzing an exam page that contains Question {question_number}.

This question has a diagram described as: "{description}"

Confirm that you can see Question {question_number} and its associated diagram on this page. Provide a brief description of what you see."""


# Letter answers: "B", or "A, C" for multiple-correct questions.
ANSWER_PATTERN = re.compile(r"^[A-D](\s*,\s*[A-D])*$")


# ─── Section Renumbering ──────────────────────────────────────────────────────


class SectionNumbering:
    """
    Maps printed question numbers to document-global numbers.

    Papers often restart numbering per section (Physics 1-45, Chemistry
    1-45, ...). A number that does not move past the running maximum
    starts a new section: the running maximum becomes the section offset.
    Numbers inside an open section keep that offset, so a section may
    span several pages.
    """

    def __init__(self):
        self.running_max = 0
        self.offset = 0
        self.sections = 1
        self._page_numbers: set[int] = set()

    def begin_page(self):
        self._page_numbers = set()

    def assign(self, printed: int) -> Optional[int]:
        """
        Global number for a printed number, or None for a duplicate
        of a number already seen on the current page.
        """
        if printed in self._page_numbers:
            return None
        self._page_numbers.add(printed)

        number = printed + self.offset
        if number <= self.running_max:
            self.offset = self.running_max
            self.sections += 1
            number = printed + self.offset
            logger.info(
                f"Section restart at printed Q{printed}: "
                f"offset now {self.offset}"
            )

        self.running_max = max(self.running_max, number)
        return number


# ─── JSON Recovery ────────────────────────────────────────────────────────────


def _match_bracket(text: str, start: int) -> Optional[int]:
    """Index of the bracket closing text[start], skipping string contents."""
    pairs = {"[": "]", "{": "}"}
    stack = [pairs[text[start]]]
    in_string = False
    escaped = False
    for i in range(start + 1, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in pairs:
            stack.append(pairs[ch])
        elif ch in "]}":
            if not stack or ch != stack[-1]:
                return None
            stack.pop()
            if not stack:
                return i
    return None


def extract_json_payload(text: str) -> Any:
    """
    Find the first well-formed JSON array or object in a model reply.
    Prose and code fences around the JSON are ignored.

    Raises:
        MalformedProviderResponse: If no parseable JSON is present.
    """
    for match in re.finditer(r"[\[{]", text or ""):
        start = match.start()
        end = _match_bracket(text, start)
        if end is None:
            continue
        try:
            return json.loads(text[start:end + 1])
        except json.JSONDecodeError:
            continue
    raise MalformedProviderResponse(
        "No JSON array or object found in provider reply",
        raw_text=(text or "")[:500],
    )


# ─── Coercion ─────────────────────────────────────────────────────────────────


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    match = re.search(r"\d+", str(value or ""))
    return int(match.group(0)) if match else None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def _enum_value(enum_cls, value: Any, default):
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return default


def _structured_from_item(raw: Any) -> Optional[StructuredData]:
    if not isinstance(raw, dict):
        return None
    list_a = raw.get("listA") or []
    list_b = raw.get("listB") or []
    if not (list_a or list_b):
        return None

    def items(entries):
        result = []
        for entry in entries:
            if isinstance(entry, dict):
                label = _as_text(entry.get("key") or entry.get("label"))
                value = _as_text(entry.get("value"))
                if label and value:
                    result.append(ListItem(label=label, value=value))
        return result

    list_i, list_ii = items(list_a), items(list_b)
    header_i = _as_text(raw.get("listATitle")) or "List-I"
    header_ii = _as_text(raw.get("listBTitle")) or "List-II"
    return StructuredData(
        type=StructuredDataType.MATCH_LIST,
        headers=[header_i, header_ii],
        rows=[[a.value, b.value] for a, b in zip(list_i, list_ii)],
        list_i=list_i,
        list_ii=list_ii,
        description=f"Match {header_i} with {header_ii}",
    )


def question_from_item(item: dict, page_number: int) -> Optional[ExtractedQuestion]:
    """Coerce one JSON item into a question; None if it has no usable number."""
    number = _as_int(item.get("questionNumber"))
    if not number or number < 1:
        return None

    answer = _as_text(item.get("correctAnswer"))
    question_type = _enum_value(
        QuestionType, item.get("questionType"), QuestionType.SINGLE_CORRECT
    )
    structured = _structured_from_item(item.get("structuredData"))
    if structured is not None:
        question_type = QuestionType.MATCH_LIST

    anomalies = []
    if answer:
        answer = answer.upper()
        if question_type != QuestionType.INTEGER_TYPE and not ANSWER_PATTERN.match(answer):
            anomalies.append(Anomaly(
                type=AnomalyType.MALFORMED_PROVIDER_RESPONSE,
                severity=20,
                message=f"Unreadable answer '{answer[:20]}' for Q{number}",
                context={"raw_answer": answer[:50]},
            ))
            answer = None

    return ExtractedQuestion(
        question_number=number,
        text=_as_text(item.get("questionText")) or "",
        option_a=_as_text(item.get("optionA")),
        option_b=_as_text(item.get("optionB")),
        option_c=_as_text(item.get("optionC")),
        option_d=_as_text(item.get("optionD")),
        question_type=question_type,
        correct_answer=answer or PENDING_ANSWER,
        subject=(_as_text(item.get("subject")) or "").lower(),
        topic=_as_text(item.get("topic")) or "",
        subtopic=_as_text(item.get("subtopic")),
        difficulty=_enum_value(Difficulty, item.get("difficulty"), Difficulty.MEDIUM),
        explanation=_as_text(item.get("explanation")),
        has_diagram=_as_bool(item.get("hasDiagram")),
        diagram_description=_as_text(item.get("diagramDescription")),
        structured_data=structured,
        exam_year=_as_int(item.get("examYear")),
        exam_type=_as_text(item.get("examType")),
        page_number=page_number,
        anomalies=anomalies,
    )


# ─── Extractor ────────────────────────────────────────────────────────────────


@dataclass
class PageBatchResult:
    """Outcome of a sequential multi-page extraction."""
    questions: list[ExtractedQuestion] = field(default_factory=list)
    pages_processed: int = 0
    pages_skipped: list[int] = field(default_factory=list)
    numbering: Optional[SectionNumbering] = None


class VisionExtractor:
    """Sends page images to a provider and reconciles question numbers."""

    def __init__(
        self,
        provider: ExtractionProvider,
        ledger: CostLedger,
        config: Optional[ExtractionConfig] = None,
        source_document_id: Optional[str] = None,
    ):
        self.provider = provider
        self.ledger = ledger
        self.config = config or ExtractionConfig()
        self.source_document_id = source_document_id

    def extract_page(
        self, page_image: PageImage, numbering: SectionNumbering
    ) -> list[ExtractedQuestion]:
        """
        Extract the questions of one page and assign global numbers.

        Raises:
            MalformedProviderResponse: If the reply holds no JSON.
            ProviderError: If the provider call ultimately fails.
        """
        prompt = PAGE_PROMPT.format(page_number=page_image.page_number)
        response = self.ledger.call(
            lambda: self.provider.generate_from_image(page_image.path, prompt),
            provider=self.provider.name,
            model=self.provider.model,
            operation_type="page_extraction",
            source_document_id=self.source_document_id,
            page_number=page_image.page_number,
            max_retries=self.config.max_retries,
        )

        payload = extract_json_payload(response.text)
        if isinstance(payload, dict):
            payload = payload.get("questions", [payload])
        if not isinstance(payload, list):
            raise MalformedProviderResponse(
                f"Expected a JSON array on page {page_image.page_number}",
                raw_text=response.text[:500],
            )

        numbering.begin_page()
        questions = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            try:
                question = question_from_item(item, page_image.page_number)
            except (ValidationError, ValueError, TypeError) as e:
                logger.warning(
                    f"Page {page_image.page_number}: skipping malformed item: {e}"
                )
                continue
            if question is None:
                logger.warning(
                    f"Page {page_image.page_number}: skipping item without "
                    f"a question number"
                )
                continue

            printed = question.question_number
            number = numbering.assign(printed)
            if number is None:
                logger.warning(
                    f"Page {page_image.page_number}: duplicate Q{printed} dropped"
                )
                continue
            if number != printed:
                question.question_number = number
                question.anomalies.append(Anomaly(
                    type=AnomalyType.SECTION_RENUMBERED,
                    severity=5,
                    message=f"Printed Q{printed} renumbered to Q{number}",
                    context={"printed_number": printed, "section": numbering.sections},
                ))
            questions.append(question)

        if not questions:
            logger.warning(f"No questions found on page {page_image.page_number}")
        else:
            logger.info(
                f"Page {page_image.page_number}: {len(questions)} questions "
                f"(Q{questions[0].question_number}-Q{questions[-1].question_number})"
            )
        return questions

    def extract_pages(
        self,
        pages: list[PageImage],
        numbering: Optional[SectionNumbering] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> PageBatchResult:
        """
        Extract every page in order.

        A malformed reply, or any retryable failure (503, timeout, dropped
        connection) that outlasts the retries, skips that page. Anything
        else aborts.
        """
        numbering = numbering or SectionNumbering()
        result = PageBatchResult(numbering=numbering)
        total = len(pages)

        for index, page in enumerate(sorted(pages, key=lambda p: p.page_number), 1):
            try:
                result.questions.extend(self.extract_page(page, numbering))
                result.pages_processed += 1
            except MalformedProviderResponse as e:
                logger.warning(f"Page {page.page_number}: {e}, skipping")
                result.pages_skipped.append(page.page_number)
            except Exception as e:
                if not is_retryable_error(e):
                    raise
                logger.error(
                    f"Page {page.page_number}: provider unavailable after "
                    f"retries, skipping: {e}"
                )
                result.pages_skipped.append(page.page_number)

            if progress_callback:
                progress_callback(index, total)

        logger.info(
            f"Vision extraction complete: {len(result.questions)} questions from "
            f"{result.pages_processed}/{total} pages"
        )
        return result


# ─── Diagram Locator ──────────────────────────────────────────────────────────


@dataclass
class DiagramLocation:
    """A reviewer candidate for a question's diagram."""
    question_number: int
    page_number: int
    confirmation: str
    candidate_path: str


class DiagramLocator:
    """
    Asks the provider to locate and confirm a question's diagram on a page.
    The full page image is returned as the review candidate; reviewers
    crop it with explicit coordinates afterwards.
    """

    def __init__(
        self,
        provider: ExtractionProvider,
        ledger: CostLedger,
        config: Optional[ExtractionConfig] = None,
        source_document_id: Optional[str] = None,
    ):
        self.provider = provider
        self.ledger = ledger
        self.config = config or ExtractionConfig()
        self.source_document_id = source_document_id

    def locate(
        self,
        page_image: PageImage,
        question_number: int,
        description: Optional[str] = None,
    ) -> DiagramLocation:
        prompt = DIAGRAM_PROMPT.format(
            question_number=question_number,
            description=description or "diagram",
        )
        response = self.ledger.call(
            lambda: self.provider.generate_from_image(page_image.path, prompt),
            provider=self.provider.name,
            model=self.provider.model,
            operation_type="diagram_location",
            source_document_id=self.source_document_id,
            page_number=page_image.page_number,
            max_retries=self.config.max_retries,
        )
        logger.info(
            f"Q{question_number}: diagram confirmed on page "
            f"{page_image.page_number}: {response.text[:100]}"
        )
        return DiagramLocation(
            question_number=question_number,
            page_number=page_image.page_number,
            confirmation=response.text.strip(),
            candidate_path=page_image.path,
        )
