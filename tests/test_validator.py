"""
Tests for diagram mapping and completeness validation.
"""

from __future__ import annotations

from examparser.mapper import assign_diagrams, map_diagrams_to_questions
from examparser.models import (
    AnomalyType,
    DiagramImage,
    ExtractedQuestion,
    QuestionType,
)
from examparser.validator import (
    CompletenessValidator,
    is_question_complete,
    make_placeholder,
    missing_fields,
)


def question(number: int, **overrides) -> ExtractedQuestion:
    data = dict(
        question_number=number,
        text=f"What is the answer to question {number}?",
        option_a="one", option_b="two", option_c="three", option_d="four",
        correct_answer="A",
        subject="physics",
        topic="Kinematics",
    )
    data.update(overrides)
    return ExtractedQuestion(**data)


def diagram(page: int, tag: str) -> DiagramImage:
    return DiagramImage(page_number=page, width=200, height=150, path=f"{tag}.png")


# ═══════════════════════════════════════════════════════════════════════════════
# DIAGRAM MAPPER
# ═══════════════════════════════════════════════════════════════════════════════


class TestDiagramMapper:
    """Test the positional diagram heuristic."""

    def test_page_ranges(self):
        mapping = map_diagrams_to_questions(
            {
                1: [diagram(1, "cover")],
                2: [diagram(2, "d1"), diagram(2, "d2")],
                4: [diagram(4, "d3")],
            },
            total_questions=20,
            total_pages=5,
            start_page=2,
        )
        assert {n: d.path for n, d in mapping.items()} == {
            1: "d1.png", 2: "d2.png", 11: "d3.png",
        }

    def test_at_most_one_diagram_per_question(self):
        mapping = map_diagrams_to_questions(
            {3: [diagram(3, f"d{i}") for i in range(7)]},
            total_questions=20,
            total_pages=5,
        )
        assert sorted(mapping) == [6, 7, 8, 9, 10]

    def test_last_page_range_is_clipped(self):
        mapping = map_diagrams_to_questions(
            {3: [diagram(3, "a"), diagram(3, "b"), diagram(3, "c")]},
            total_questions=3,
            total_pages=3,
        )
        # 2 content pages, 2 questions per page: page 3 covers only Q3
        assert sorted(mapping) == [3]

    def test_degenerate_inputs(self):
        diagrams = {2: [diagram(2, "d")]}
        assert map_diagrams_to_questions(diagrams, 0, 5) == {}
        assert map_diagrams_to_questions(diagrams, 10, 1, start_page=2) == {}

    def test_only_flagged_questions_receive_diagrams(self):
        questions = [
            question(1, has_diagram=True),
            question(2),
            question(3, has_diagram=True, diagram_image_ref="kept.png"),
        ]
        mapping = {1: diagram(2, "d1"), 2: diagram(2, "d2"), 3: diagram(2, "d3")}

        assigned = assign_diagrams(questions, mapping)

        assert assigned == 1
        assert questions[0].diagram_image_ref == "d1.png"
        assert questions[1].diagram_image_ref is None
        assert questions[2].diagram_image_ref == "kept.png"

    def test_store_callable_provides_ref(self):
        questions = [question(1, has_diagram=True)]
        stored = []

        def store(number, diag):
            stored.append((number, diag.path))
            return f"permanent/q{number}.png"

        assign_diagrams(questions, {1: diagram(2, "d1")}, store=store)

        assert stored == [(1, "d1.png")]
        assert questions[0].diagram_image_ref == "permanent/q1.png"


# ═══════════════════════════════════════════════════════════════════════════════
# COMPLETENESS VALIDATOR
# ═══════════════════════════════════════════════════════════════════════════════


class TestCompleteness:
    """Test per-question completeness rules."""

    def test_complete_question(self):
        assert is_question_complete(question(1))

    def test_short_stem(self):
        assert missing_fields(question(1, text="Too short")) == ["text"]

    def test_missing_subject_and_topic(self):
        assert missing_fields(question(1, subject="", topic=" ")) == ["subject", "topic"]

    def test_missing_option_for_single_correct(self):
        assert missing_fields(question(1, option_c=None)) == ["option_c"]

    def test_integer_type_needs_no_options(self):
        q = question(
            1,
            question_type=QuestionType.INTEGER_TYPE,
            option_a=None, option_b=None, option_c=None, option_d=None,
        )
        assert is_question_complete(q)

    def test_placeholder(self):
        q = make_placeholder(7, subject="chemistry", topic="Bonding")
        assert q.text == "Question 7 — NOT EXTRACTED"
        assert q.is_active is False
        assert q.is_placeholder is True
        assert q.correct_answer == "PENDING"
        assert q.anomalies[0].type == AnomalyType.MISSING_QUESTION_NUMBER


class TestCompletenessValidator:
    """Test finalize(): deactivation, duplicates and gap filling."""

    def test_gaps_filled_with_placeholders(self):
        result = CompletenessValidator().finalize([question(5), question(1), question(2)])

        assert [q.question_number for q in result.questions] == [1, 2, 3, 4, 5]
        assert result.missing_question_numbers == [3, 4]
        assert len(result.ready) == 3
        assert all(q.is_placeholder for q in result.placeholders)
        assert all(not q.is_active for q in result.placeholders)

    def test_placeholder_inherits_previous_subject(self):
        result = CompletenessValidator().finalize([
            question(1, subject="botany", topic="Plant Kingdom"),
            question(3),
        ])
        placeholder = result.placeholders[0]
        assert placeholder.question_number == 2
        assert placeholder.subject == "botany"
        assert placeholder.topic == "Plant Kingdom"

    def test_incomplete_kept_inactive(self):
        result = CompletenessValidator().finalize([question(1), question(2, option_d="")])

        assert [q.question_number for q in result.incomplete] == [2]
        incomplete = result.incomplete[0]
        assert incomplete.is_active is False
        anomaly = incomplete.anomalies[-1]
        assert anomaly.type == AnomalyType.VALIDATION_INCOMPLETE
        assert anomaly.context["missing_fields"] == ["option_d"]

    def test_duplicates_kept_inactive(self):
        first = question(2, text="The first extraction of question two")
        second = question(2, text="The second extraction of question two")
        result = CompletenessValidator().finalize([question(1), first, second])

        assert result.duplicate_question_numbers == [2]
        assert first.is_active is True
        assert second.is_active is False
        assert second.anomalies[-1].type == AnomalyType.DUPLICATE_QUESTION_NUMBER
        active_numbers = [q.question_number for q in result.questions if q.is_active]
        assert active_numbers == [1, 2]

    def test_contiguous_numbering(self):
        numbers = [1, 4, 9, 10, 15]
        result = CompletenessValidator().finalize([question(n) for n in numbers])
        covered = sorted({q.question_number for q in result.questions})
        assert covered == list(range(1, 16))
        assert len(result.questions) == 15

    def test_empty_input(self):
        result = CompletenessValidator().finalize([])
        assert result.questions == []
        assert result.missing_question_numbers == []
