"""
Completeness Validator
======================
Final pass over extracted questions before persistence.

    - Incomplete questions are kept but deactivated
    - Duplicate numbers keep their first record; extras are deactivated
    - Every missing number in 1..max gets an inactive placeholder

After finalize() the active and inactive records of one document cover
question numbers 1..max exactly once each (duplicates aside).

Never silently drops a question.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field

from .models import (
    OPTION_BEARING_TYPES,
    PENDING_ANSWER,
    Anomaly,
    AnomalyType,
    ExtractedQuestion,
)

logger = logging.getLogger(__name__)

MIN_STEM_LENGTH = 10

PLACEHOLDER_TEXT = "Question {number} — NOT EXTRACTED"


@dataclass
class FinalizeResult:
    """Questions split by readiness, plus the numbering report."""
    ready: list[ExtractedQuestion] = field(default_factory=list)
    incomplete: list[ExtractedQuestion] = field(default_factory=list)
    placeholders: list[ExtractedQuestion] = field(default_factory=list)
    duplicates: list[ExtractedQuestion] = field(default_factory=list)
    missing_question_numbers: list[int] = field(default_factory=list)
    duplicate_question_numbers: list[int] = field(default_factory=list)

    @property
    def questions(self) -> list[ExtractedQuestion]:
        """Every record, ordered by question number."""
        combined = self.ready + self.incomplete + self.placeholders + self.duplicates
        return sorted(combined, key=lambda q: (q.question_number, not q.is_active))


def missing_fields(question: ExtractedQuestion) -> list[str]:
    """Names of the fields that keep a question from being complete."""
    missing = []
    if len((question.text or "").strip()) < MIN_STEM_LENGTH:
        missing.append("text")
    if not (question.subject or "").strip():
        missing.append("subject")
    if not (question.topic or "").strip():
        missing.append("topic")
    if question.question_type in OPTION_BEARING_TYPES:
        for key, value in question.options.items():
            if not (value or "").strip():
                missing.append(f"option_{key.lower()}")
    return missing


def is_question_complete(question: ExtractedQuestion) -> bool:
    return not missing_fields(question)


def make_placeholder(
    number: int,
    subject: str = "",
    topic: str = "",
) -> ExtractedQuestion:
    """Inactive stand-in for a question number no extractor produced."""
    return ExtractedQuestion(
        question_number=number,
        text=PLACEHOLDER_TEXT.format(number=number),
        correct_answer=PENDING_ANSWER,
        subject=subject,
        topic=topic,
        is_active=False,
        is_placeholder=True,
        anomalies=[Anomaly(
            type=AnomalyType.MISSING_QUESTION_NUMBER,
            severity=60,
            message=f"Question {number} was not extracted",
        )],
    )


class CompletenessValidator:
    """
    Splits questions into ready and incomplete and fills numbering gaps.
    """

    def finalize(self, questions: list[ExtractedQuestion]) -> FinalizeResult:
        """
        Validate questions and fill gaps.

        Args:
            questions: Extracted questions; updated in place.

        Returns:
            FinalizeResult with ready, incomplete, placeholder and
            duplicate records.
        """
        result = FinalizeResult()

        if not questions:
            logger.warning("No questions to validate")
            return result

        ordered = sorted(questions, key=lambda q: q.question_number)
        counts = Counter(q.question_number for q in ordered)
        result.duplicate_question_numbers = sorted(
            num for num, count in counts.items() if count > 1
        )

        seen: set[int] = set()
        for question in ordered:
            if question.question_number in seen:
                question.is_active = False
                question.anomalies.append(Anomaly(
                    type=AnomalyType.DUPLICATE_QUESTION_NUMBER,
                    severity=40,
                    message=(
                        f"Question number {question.question_number} "
                        f"already extracted"
                    ),
                ))
                result.duplicates.append(question)
                continue
            seen.add(question.question_number)

            missing = missing_fields(question)
            if missing:
                question.is_active = False
                question.anomalies.append(Anomaly(
                    type=AnomalyType.VALIDATION_INCOMPLETE,
                    severity=50,
                    message=f"Missing: {', '.join(missing)}",
                    context={"missing_fields": missing},
                ))
                result.incomplete.append(question)
            else:
                result.ready.append(question)

        # Fill gaps in 1..max
        max_number = max(seen)
        previous = None
        by_number = {q.question_number: q for q in ordered if q.question_number in seen}
        for number in range(1, max_number + 1):
            if number in by_number:
                previous = by_number[number]
                continue
            result.missing_question_numbers.append(number)
            result.placeholders.append(make_placeholder(
                number,
                subject=previous.subject if previous else "",
                topic=previous.topic if previous else "",
            ))

        self.build_report(result)
        return result

    def build_report(self, result: FinalizeResult):
        """Log the completeness summary block."""
        logger.info("=" * 60)
        logger.info("COMPLETENESS REPORT")
        logger.info("=" * 60)
        logger.info(f"Ready Questions: {len(result.ready)}")
        logger.info(f"Incomplete (inactive): {len(result.incomplete)}")
        logger.info(f"Placeholders: {len(result.placeholders)}")
        logger.info(
            f"Duplicate Question Numbers: "
            f"{len(result.duplicate_question_numbers)}"
        )
        if result.missing_question_numbers:
            shown = ", ".join(str(n) for n in result.missing_question_numbers[:20])
            more = len(result.missing_question_numbers) - 20
            logger.info(
                f"Missing Question Numbers: {shown}"
                + (f" (+{more} more)" if more > 0 else "")
            )
        logger.info("=" * 60)
