"""
Question Store Port
===================
Persistence contract the pipeline writes through, plus an in-memory
implementation used by tests and one-off CLI runs.

The relational schema behind a real store is not the pipeline's
concern; see database.SQLiteStore for the bundled implementation.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Optional

from .models import (
    ApiCallRecord,
    ExtractedQuestion,
    ExtractionRun,
    RunStatus,
)


class QuestionStore(ABC):
    """Where runs, questions and API call records are persisted."""

    @abstractmethod
    def create_run(self, run: ExtractionRun) -> ExtractionRun:
        """Persist a new run record."""

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[ExtractionRun]:
        """Fetch a run by id."""

    @abstractmethod
    def update_progress(self, run_id: str, percent: int, step: str):
        """Record progress of a running extraction."""

    @abstractmethod
    def mark_status(
        self, run_id: str, status: RunStatus, error: Optional[str] = None
    ):
        """Move a run to a new status, optionally with an error message."""

    @abstractmethod
    def insert_question(self, run_id: str, question: ExtractedQuestion):
        """Persist one finalized question."""

    @abstractmethod
    def list_questions(self, run_id: str) -> list[ExtractedQuestion]:
        """All questions of a run, ordered by question number."""

    @abstractmethod
    def record_api_call(self, record: ApiCallRecord):
        """Append one API call record."""


class MemoryStore(QuestionStore):
    """Thread-safe in-memory store."""

    def __init__(self):
        self._lock = threading.Lock()
        self.runs: dict[str, ExtractionRun] = {}
        self.questions: dict[str, list[ExtractedQuestion]] = {}
        self.api_calls: list[ApiCallRecord] = []

    def create_run(self, run: ExtractionRun) -> ExtractionRun:
        with self._lock:
            self.runs[run.run_id] = run.model_copy()
            self.questions.setdefault(run.run_id, [])
        return run

    def get_run(self, run_id: str) -> Optional[ExtractionRun]:
        with self._lock:
            run = self.runs.get(run_id)
            return run.model_copy() if run else None

    def update_progress(self, run_id: str, percent: int, step: str):
        with self._lock:
            run = self.runs[run_id]
            run.progress_percent = max(0, min(100, int(percent)))
            run.current_step = step

    def mark_status(
        self, run_id: str, status: RunStatus, error: Optional[str] = None
    ):
        with self._lock:
            run = self.runs[run_id]
            run.status = status
            run.error_message = error

    def insert_question(self, run_id: str, question: ExtractedQuestion):
        with self._lock:
            self.questions.setdefault(run_id, []).append(question.model_copy(deep=True))

    def list_questions(self, run_id: str) -> list[ExtractedQuestion]:
        with self._lock:
            return sorted(
                self.questions.get(run_id, []),
                key=lambda q: q.question_number,
            )

    def record_api_call(self, record: ApiCallRecord):
        with self._lock:
            self.api_calls.append(record)
