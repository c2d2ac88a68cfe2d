"""
Tests for the retry/cost ledger and the question stores.
"""

from __future__ import annotations

import logging

import httpx
import pytest

from examparser.database import SQLiteStore, count_run_questions, get_api_calls
from examparser.errors import ProviderError, TransientProviderError
from examparser.ledger import CostLedger, estimate_cost, summarize_records
from examparser.models import (
    ApiCallRecord,
    ExtractedQuestion,
    ExtractionRun,
    RunStatus,
)
from examparser.providers import ProviderResponse, is_retryable_error
from examparser.store import MemoryStore


class Flaky:
    """Callable failing with the given errors before returning a response."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return ProviderResponse(
            text="[]", model="gemini-2.0-flash", input_tokens=100, output_tokens=50
        )


def ledger_with_delays(**kwargs):
    delays = []
    ledger = CostLedger(sleep=delays.append, **kwargs)
    return ledger, delays


def call(ledger, fn, **kwargs):
    return ledger.call(
        fn,
        provider="gemini",
        model="gemini-2.0-flash",
        operation_type="page_extraction",
        source_document_id="doc-1",
        **kwargs,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# RETRY POLICY
# ═══════════════════════════════════════════════════════════════════════════════


class TestRetryableErrors:
    """Test retryable error classification."""

    @pytest.mark.parametrize("exc,expected", [
        (TransientProviderError("unavailable"), True),
        (TimeoutError("read timed out"), True),
        (ConnectionError("reset by peer"), True),
        (httpx.ReadTimeout("read"), True),
        (httpx.ConnectError("refused"), True),
        (ProviderError("server error", status_code=503), True),
        (ProviderError("bad request", status_code=400), False),
        (ValueError("Rate limit exceeded"), True),
        (RuntimeError("model is overloaded"), True),
        (ValueError("invalid prompt"), False),
    ])
    def test_classification(self, exc, expected):
        assert is_retryable_error(exc) is expected


class TestCostLedger:
    """Test retries, records and cost aggregation."""

    def test_two_transient_failures_then_success(self):
        ledger, delays = ledger_with_delays(initial_delay=1.0)
        fn = Flaky(TransientProviderError("503"), TransientProviderError("503"))

        response = call(ledger, fn, page_number=4)

        assert response.text == "[]"
        assert fn.calls == 3
        records = ledger.records
        assert len(records) == 3
        assert [r.success for r in records] == [False, False, True]
        assert [r.attempt for r in records] == [1, 2, 3]
        assert all(r.page_number == 4 for r in records)
        assert delays == [1.0, 2.0]

    def test_success_record_carries_tokens_and_cost(self):
        ledger, _ = ledger_with_delays()
        call(ledger, Flaky())
        record = ledger.records[0]
        assert record.input_tokens == 100
        assert record.output_tokens == 50
        assert record.total_tokens == 150
        assert record.estimated_cost_usd == pytest.approx(0.00003)

    def test_non_retryable_raises_immediately(self):
        ledger, delays = ledger_with_delays()
        fn = Flaky(ValueError("invalid prompt"))
        with pytest.raises(ValueError):
            call(ledger, fn)
        assert fn.calls == 1
        assert delays == []
        assert len(ledger.records) == 1
        assert ledger.records[0].success is False
        assert "invalid prompt" in ledger.records[0].error_message

    def test_retries_exhausted(self):
        ledger, delays = ledger_with_delays(max_retries=2, initial_delay=0.5)
        fn = Flaky(*[TimeoutError("timed out")] * 5)
        with pytest.raises(TimeoutError):
            call(ledger, fn)
        assert fn.calls == 3
        assert delays == [0.5, 1.0]
        assert len(ledger.records) == 3

    def test_per_call_retry_override(self):
        ledger, _ = ledger_with_delays(max_retries=5)
        fn = Flaky(*[TimeoutError("timed out")] * 5)
        with pytest.raises(TimeoutError):
            call(ledger, fn, max_retries=0)
        assert fn.calls == 1

    def test_sink_receives_records(self):
        received = []
        ledger = CostLedger(sink=received.append, sleep=lambda s: None)
        call(ledger, Flaky(TransientProviderError("503")))
        assert len(received) == 2

    def test_sink_failure_is_logged_not_raised(self, caplog):
        def broken_sink(record):
            raise OSError("disk full")

        ledger = CostLedger(sink=broken_sink, sleep=lambda s: None)
        with caplog.at_level(logging.ERROR, logger="examparser.ledger"):
            response = call(ledger, Flaky())
        assert response.text == "[]"
        assert len(ledger.records) == 1
        assert "disk full" in caplog.text

    def test_summary_filters_by_document(self):
        ledger, _ = ledger_with_delays()
        call(ledger, Flaky(TransientProviderError("503")))
        ledger.call(
            Flaky(),
            provider="gemini",
            model="gemini-2.0-flash",
            operation_type="diagram_location",
            source_document_id="doc-2",
        )

        summary = ledger.summary("doc-1")
        assert summary.total_calls == 2
        assert summary.successful_calls == 1
        assert summary.failed_calls == 1
        assert summary.total_tokens == 150

        overall = ledger.summary()
        assert overall.total_calls == 3
        assert overall.by_operation == {"page_extraction": 2, "diagram_location": 1}
        assert overall.by_provider == {"gemini": 3}

    def test_unknown_model_costs_nothing(self):
        assert estimate_cost("some-local-model", 1000, 1000) == 0.0

    def test_summarize_empty(self):
        summary = summarize_records([])
        assert summary.total_calls == 0
        assert summary.total_cost_usd == 0.0


# ═══════════════════════════════════════════════════════════════════════════════
# STORES
# ═══════════════════════════════════════════════════════════════════════════════


def sample_question(number: int, active: bool = True) -> ExtractedQuestion:
    return ExtractedQuestion(
        question_number=number,
        text=f"Question stem number {number}",
        option_a="a", option_b="b", option_c="c", option_d="d",
        correct_answer="A",
        subject="physics",
        topic="Mechanics",
        is_active=active,
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return SQLiteStore(str(tmp_path / "examparser.sqlite"))


class TestQuestionStores:
    """Both store implementations honour the same contract."""

    def test_run_lifecycle(self, store):
        store.create_run(ExtractionRun(run_id="r1", source_document_id="doc"))
        store.mark_status("r1", RunStatus.PROCESSING)
        store.update_progress("r1", 40, "Extracting questions")

        run = store.get_run("r1")
        assert run.status == RunStatus.PROCESSING
        assert run.progress_percent == 40
        assert run.current_step == "Extracting questions"
        assert not run.is_terminal

        store.mark_status("r1", RunStatus.FAILED, error="boom")
        run = store.get_run("r1")
        assert run.status == RunStatus.FAILED
        assert run.error_message == "boom"
        assert run.is_terminal

    def test_missing_run(self, store):
        assert store.get_run("nope") is None

    def test_progress_is_clamped(self, store):
        store.create_run(ExtractionRun(run_id="r1", source_document_id="doc"))
        store.update_progress("r1", 150, "done")
        assert store.get_run("r1").progress_percent == 100

    def test_questions_ordered_by_number(self, store):
        store.create_run(ExtractionRun(run_id="r1", source_document_id="doc"))
        for number in (3, 1, 2):
            store.insert_question("r1", sample_question(number))
        questions = store.list_questions("r1")
        assert [q.question_number for q in questions] == [1, 2, 3]
        assert questions[0].topic == "Mechanics"

    def test_record_api_call(self, store):
        store.record_api_call(ApiCallRecord(
            source_document_id="doc", provider="gemini",
            model="gemini-2.0-flash", operation_type="page_extraction",
        ))


class TestSQLiteStore:
    """SQLite-specific behaviour."""

    def test_schema_init_is_idempotent(self, tmp_path):
        db_path = str(tmp_path / "examparser.sqlite")
        SQLiteStore(db_path)
        store = SQLiteStore(db_path)
        store.create_run(ExtractionRun(run_id="r1", source_document_id="doc"))
        assert store.get_run("r1") is not None

    def test_round_trips_api_calls(self, tmp_path):
        db_path = str(tmp_path / "examparser.sqlite")
        store = SQLiteStore(db_path)
        store.record_api_call(ApiCallRecord(
            source_document_id="doc", provider="gemini", model="gemini-2.0-flash",
            operation_type="page_extraction", attempt=2, success=False,
            error_message="503",
        ))
        records = get_api_calls("doc", db_path=db_path)
        assert len(records) == 1
        assert records[0].attempt == 2
        assert records[0].success is False

    def test_active_count(self, tmp_path):
        db_path = str(tmp_path / "examparser.sqlite")
        store = SQLiteStore(db_path)
        store.create_run(ExtractionRun(run_id="r1", source_document_id="doc"))
        store.insert_question("r1", sample_question(1))
        store.insert_question("r1", sample_question(2, active=False))
        assert count_run_questions("r1", db_path=db_path) == 2
        assert count_run_questions("r1", active_only=True, db_path=db_path) == 1

    def test_env_db_path(self, tmp_path, monkeypatch):
        db_path = str(tmp_path / "from-env.sqlite")
        monkeypatch.setenv("EXAMPARSER_DB_PATH", db_path)
        store = SQLiteStore()
        assert store.db_path == db_path
