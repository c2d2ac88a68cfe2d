"""
Text Pattern Extractor
======================
Regex-driven question extraction for digitally clean exam PDFs.

Question shape:
    <number> <stem> [<EXAM> (<month>) <year>] (a) .. (b) .. (c) .. (d) .. Ans.(<letter>)

The cleaned text is scanned by an ordered cascade of grammars, strict to
loose. A shared signature set (the first characters of the stem) is
carried through the cascade, so a stricter grammar's result always wins
and looser grammars only fill the gaps.

Cascade:
    1. marked_compact     exam marker required, paren-free option spans
    2. marked_multiline   exam marker required, one option per line
    3. marked_permissive  exam marker required, multi-line spans
    4. unmarked           marker optional, split out of the stem if present
    5. numbered_options   (1)..(4) options, no inline answer key

Usage:
    extractor = TextPatternExtractor(config)
    questions = extractor.extract_from_text(pdf_text, subject_hint="physics")
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Callable, Optional

import fitz  # PyMuPDF

from .config import ExtractionConfig
from .errors import RasterizationFailed, SourceNotFound
from .models import (
    PENDING_ANSWER,
    ExtractedQuestion,
    QuestionType,
    StructuredDataType,
)
from .structured import detect_diagram, detect_subject, extract_structured_data

logger = logging.getLogger(__name__)

MAX_STEM_LENGTH = 1000

# Subject hints that mean "decide per question".
MIXED_SUBJECT_HINTS = frozenset({"", "full_length", "general", "mixed"})


# ─── Pattern Building Blocks ─────────────────────────────────────────────────

# Known exam vocabulary, most specific first.
EXAM_TYPES = (
    ("CBSE AIPMT", re.compile(r"CBSE\s+AIPMT", re.I)),
    ("AIPMT", re.compile(r"AIPMT", re.I)),
    ("NEET", re.compile(r"NEET", re.I)),
    ("JEE Advanced", re.compile(r"JEE\s+Adv", re.I)),
    ("JEE Main", re.compile(r"JEE\s+Main", re.I)),
    ("JEE", re.compile(r"JEE", re.I)),
    ("AIIMS", re.compile(r"AIIMS", re.I)),
)

MARKER = r"\[(?i:CBSE\s+AIPMT|AIPMT|NEET|JEE|AIIMS)[^\]\n]{0,60}\]"
MARKER_PATTERN = re.compile(MARKER)
YEAR_PATTERN = re.compile(r"(?<!\d)((?:19|20)\d{2})(?!\d)")

NUMBER = r"(?<![\w.(])(?P<num>\d{1,3})[.)]?\s+"
ANSWER = r"\s*(?:Ans|ANS)\.?\s*\((?P<ans>[a-dA-D])\)"

# Stems never run across an option list or an answer key.
STEM_CHAR = r"(?:(?!\(a\)|\bAns\.?\s*\()[\s\S])"
COMPACT_STEM_CHAR = r"(?:(?!\(a\)|\bAns\.?\s*\()[^\[])"
OPTION_CHAR = r"(?:(?!\bAns\.?\s*\()[\s\S])"
NUMBERED_STEM_CHAR = r"(?:(?!\(1\)|\bAns\.?\s*\()[\s\S])"

TOPIC_HEADING_PATTERN = re.compile(
    r"TOPIC[ \t]+(\d+)[ \t]*\n[ \t]*([A-Z][A-Za-z ,\-]{2,78}?)[ \t]*(?=\n|$)"
)
TOPIC_MARKER_PATTERN = re.compile(r"TOPIC[ \t]+\d+")

NUMBERED_ANSWER_MAP = {"1": "A", "2": "B", "3": "C", "4": "D"}


# ─── Grammar Descriptors ─────────────────────────────────────────────────────


@dataclass
class Candidate:
    """Raw fields lifted out of one grammar match."""
    number: int
    stem: str
    options: tuple[str, str, str, str]
    answer: str
    marker: Optional[str]
    start: int
    end: int


@dataclass
class Grammar:
    """One stage of the cascade: a pattern and its field extractor."""
    name: str
    pattern: re.Pattern
    extract: Callable[[re.Match], Optional[Candidate]]


def _collapse(value: Optional[str]) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def _options(match: re.Match) -> tuple[str, str, str, str]:
    return tuple(_collapse(match.group(k)) for k in ("a", "b", "c", "d"))


def _extract_marked(match: re.Match) -> Optional[Candidate]:
    stem = match.group("stem")
    tail = match.groupdict().get("tail") or ""
    return Candidate(
        number=int(match.group("num")),
        stem=_collapse(f"{stem} {tail}"),
        options=_options(match),
        answer=match.group("ans").upper(),
        marker=match.group("marker"),
        start=match.start(),
        end=match.end(),
    )


def _extract_unmarked(match: re.Match) -> Optional[Candidate]:
    stem = match.group("stem")
    marker = None
    marker_match = MARKER_PATTERN.search(stem)
    if marker_match:
        marker = marker_match.group(0)
        stem = stem[:marker_match.start()] + " " + stem[marker_match.end():]
    return Candidate(
        number=int(match.group("num")),
        stem=_collapse(stem),
        options=_options(match),
        answer=match.group("ans").upper(),
        marker=marker,
        start=match.start(),
        end=match.end(),
    )


def _extract_numbered(match: re.Match) -> Optional[Candidate]:
    stem = match.group("stem")
    marker = None
    marker_match = MARKER_PATTERN.search(stem)
    if marker_match:
        marker = marker_match.group(0)
        stem = stem[:marker_match.start()] + " " + stem[marker_match.end():]
    raw_answer = match.group("ans")
    if raw_answer:
        answer = NUMBERED_ANSWER_MAP.get(raw_answer, raw_answer.upper())
    else:
        answer = PENDING_ANSWER
    return Candidate(
        number=int(match.group("num")),
        stem=_collapse(stem),
        options=_options(match),
        answer=answer,
        marker=marker,
        start=match.start(),
        end=match.end(),
    )


def _option_chain(span: str) -> str:
    return (
        rf"\(a\)(?P<a>{span})\(b\)(?P<b>{span})"
        rf"\(c\)(?P<c>{span})\(d\)(?P<d>{span})"
    )


GRAMMARS: list[Grammar] = [
    Grammar(
        name="marked_compact",
        pattern=re.compile(
            NUMBER
            + rf"(?P<stem>{COMPACT_STEM_CHAR}{{5,300}})"
            + rf"(?P<marker>{MARKER})"
            + r"(?P<tail>[^(\[]{0,200})"
            + r"\(a\)(?P<a>[^(]{1,200}?)\(b\)(?P<b>[^(]{1,200}?)"
            + r"\(c\)(?P<c>[^(]{1,200}?)\(d\)(?P<d>[^(]{1,200}?)"
            + ANSWER
        ),
        extract=_extract_marked,
    ),
    Grammar(
        name="marked_multiline",
        pattern=re.compile(
            NUMBER
            + rf"(?P<stem>{STEM_CHAR}{{5,300}}?)"
            + rf"(?P<marker>{MARKER})"
            + rf"(?P<tail>{STEM_CHAR}{{0,200}}?)"
            + r"\(a\)(?P<a>[^\n]{1,200})\n[^(\n]{0,50}"
            + r"\(b\)(?P<b>[^\n]{1,200})\n[^(\n]{0,50}"
            + r"\(c\)(?P<c>[^\n]{1,200})\n[^(\n]{0,50}"
            + r"\(d\)(?P<d>[^\n]{1,200}?)\s{0,50}?"
            + ANSWER
        ),
        extract=_extract_marked,
    ),
    Grammar(
        name="marked_permissive",
        pattern=re.compile(
            NUMBER
            + rf"(?P<stem>{STEM_CHAR}{{5,2000}}?)"
            + rf"(?P<marker>{MARKER})"
            + rf"(?P<tail>{STEM_CHAR}{{0,2000}}?)"
            + _option_chain(rf"{OPTION_CHAR}{{1,500}}?")
            + ANSWER
        ),
        extract=_extract_marked,
    ),
    Grammar(
        name="unmarked",
        pattern=re.compile(
            NUMBER
            + rf"(?P<stem>{STEM_CHAR}{{5,1500}}?)"
            + _option_chain(rf"{OPTION_CHAR}{{1,400}}?")
            + ANSWER
        ),
        extract=_extract_unmarked,
    ),
    Grammar(
        name="numbered_options",
        pattern=re.compile(
            NUMBER
            + rf"(?P<stem>{NUMBERED_STEM_CHAR}{{5,1500}}?)"
            + rf"\(1\)(?P<a>{OPTION_CHAR}{{1,400}}?)"
            + rf"\(2\)(?P<b>{OPTION_CHAR}{{1,400}}?)"
            + rf"\(3\)(?P<c>{OPTION_CHAR}{{1,400}}?)"
            + r"\(4\)(?P<d>[^\n]{1,300}?)"
            + r"(?:\s*(?:Ans|ANS)\.?\s*\((?P<ans>[1-4a-dA-D])\))?"
            + r"(?=[ \t]*\n|[ \t]*$)"
        ),
        extract=_extract_numbered,
    ),
]


# ─── Text Helpers ─────────────────────────────────────────────────────────────


def clean_text(raw_text: str) -> str:
    """Normalize newlines, collapse runs of blanks, cap blank lines at one."""
    text = raw_text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t\f\v]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def parse_exam_marker(marker: Optional[str]) -> tuple[Optional[int], Optional[str]]:
    """
    Parse "[NEET (Sep.) 2020]" into (2020, "NEET").
    Unknown or missing markers give (None, None) for the missing parts.
    """
    if not marker:
        return None, None
    year_match = YEAR_PATTERN.search(marker)
    year = int(year_match.group(1)) if year_match else None
    exam_type = None
    for name, pattern in EXAM_TYPES:
        if pattern.search(marker):
            exam_type = name
            break
    return year, exam_type


def find_topic_headings(text: str) -> list[tuple[int, int, str]]:
    """
    Locate "TOPIC <n>" headings followed by a name line.

    Returns:
        (offset, topic_number, name) tuples in document order.
    """
    headings = []
    for match in TOPIC_HEADING_PATTERN.finditer(text):
        name = _collapse(match.group(2))
        if 3 <= len(name) < 80 and "(a)" not in name and "Ans." not in name:
            headings.append((match.start(), int(match.group(1)), name))
    return headings


def _mask_topic_markers(text: str) -> str:
    """Blank out "TOPIC n" tokens so their numbers never start a question."""
    return TOPIC_MARKER_PATTERN.sub(lambda m: " " * len(m.group(0)), text)


def read_pdf_text(pdf_path: str) -> str:
    """Plain text of every page, in page order."""
    if not os.path.exists(pdf_path):
        raise SourceNotFound(pdf_path)
    try:
        with fitz.open(pdf_path) as doc:
            return "\n".join(page.get_text("text") for page in doc)
    except (RuntimeError, ValueError) as e:
        raise RasterizationFailed(f"Cannot read text from {pdf_path}: {e}") from e


# ─── Extractor ────────────────────────────────────────────────────────────────


class TextPatternExtractor:
    """Runs the grammar cascade over cleaned PDF text."""

    def __init__(
        self,
        config: Optional[ExtractionConfig] = None,
        grammars: Optional[list[Grammar]] = None,
    ):
        config = config or ExtractionConfig()
        self.max_option_length = config.max_option_length
        self.signature_length = config.signature_length
        self.grammars = grammars if grammars is not None else GRAMMARS

    def signature(self, stem: str) -> str:
        return stem[:self.signature_length]

    def extract_from_text(
        self,
        raw_text: str,
        subject_hint: str = "",
        document_title: Optional[str] = None,
    ) -> list[ExtractedQuestion]:
        """
        Extract questions from raw PDF text.

        Args:
            raw_text: Text as read from the PDF.
            subject_hint: Subject for every question, or a mixed hint
                ("", "full_length") to detect per question.
            document_title: Used as the topic fallback, e.g. "NEET 2024".

        Returns:
            Questions in cascade order (stage, then position). Numbers are
            the printed numbers; no renumbering happens here.
        """
        text = clean_text(raw_text)
        if not text:
            logger.warning("No text to extract questions from")
            return []

        headings = find_topic_headings(text)
        scan_text = _mask_topic_markers(text)

        seen_signatures: set[str] = set()
        captured_spans: list[tuple[int, int]] = []
        questions: list[ExtractedQuestion] = []

        logger.info(f"Scanning {len(text)} characters with {len(self.grammars)} grammars")

        for grammar in self.grammars:
            found = 0
            for match in grammar.pattern.finditer(scan_text):
                candidate = grammar.extract(match)
                if candidate is None or candidate.number < 1:
                    continue

                signature = self.signature(candidate.stem)
                if not signature or signature in seen_signatures:
                    continue
                if any(s <= candidate.start < e for s, e in captured_spans):
                    continue
                if any(
                    not opt or len(opt) > self.max_option_length
                    for opt in candidate.options
                ):
                    logger.debug(
                        f"{grammar.name}: rejected Q{candidate.number}, "
                        f"option length out of bounds"
                    )
                    continue

                seen_signatures.add(signature)
                captured_spans.append((candidate.start, candidate.end))
                questions.append(self._build_question(
                    candidate, subject_hint, document_title, headings
                ))
                found += 1

            logger.info(f"Grammar {grammar.name}: {found} questions")

        logger.info(f"Text extraction complete: {len(questions)} questions")
        return questions

    def _build_question(
        self,
        candidate: Candidate,
        subject_hint: str,
        document_title: Optional[str],
        headings: list[tuple[int, int, str]],
    ) -> ExtractedQuestion:
        stem = candidate.stem[:MAX_STEM_LENGTH]
        option_a, option_b, option_c, option_d = candidate.options
        exam_year, exam_type = parse_exam_marker(candidate.marker)

        # Topic: nearest preceding heading, then marker, then title
        topic = ""
        for offset, _number, name in headings:
            if offset < candidate.start:
                topic = name
            else:
                break
        if not topic and exam_type:
            topic = f"{exam_type} {exam_year}" if exam_year else exam_type
        if not topic and document_title:
            topic = document_title.strip()

        all_options = " ".join(candidate.options)
        if (subject_hint or "").lower() in MIXED_SUBJECT_HINTS:
            subject = detect_subject(f"{stem} {all_options}")
        else:
            subject = subject_hint.lower()

        structured = extract_structured_data(stem)
        if structured and structured.type == StructuredDataType.MATCH_LIST:
            question_type = QuestionType.MATCH_LIST
        elif re.search(r"\bAssertion\b", stem, re.I) and re.search(r"\bReason\b", stem, re.I):
            question_type = QuestionType.ASSERTION_REASON
        else:
            question_type = QuestionType.SINGLE_CORRECT

        has_diagram, diagram_description = detect_diagram(stem, all_options)

        return ExtractedQuestion(
            question_number=candidate.number,
            text=stem,
            option_a=option_a,
            option_b=option_b,
            option_c=option_c,
            option_d=option_d,
            question_type=question_type,
            correct_answer=candidate.answer,
            subject=subject,
            topic=topic,
            has_diagram=has_diagram,
            diagram_description=diagram_description,
            structured_data=structured,
            exam_year=exam_year,
            exam_type=exam_type,
            source_offset=candidate.start,
        )
