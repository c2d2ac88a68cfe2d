"""
Data Models
===========
Pydantic models for the extraction pipeline.
All models are serializable to JSON for the downstream question bank.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


# ─── Enums ────────────────────────────────────────────────────────────────────


class QuestionType(str, Enum):
    """Supported question formats."""
    SINGLE_CORRECT = "single_correct"
    MULTIPLE_CORRECT = "multiple_correct"
    ASSERTION_REASON = "assertion_reason"
    INTEGER_TYPE = "integer_type"
    MATCH_LIST = "match_list"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class RunStatus(str, Enum):
    """Lifecycle status of an extraction run."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DiagramSourceType(str, Enum):
    """Kind of embedded raster an extracted diagram came from."""
    IMAGE = "image"
    SOFT_MASK = "soft_mask"


class StructuredDataType(str, Enum):
    TRUTH_TABLE = "truth_table"
    MATCH_LIST = "match_list"


class AnomalyType(str, Enum):
    """Non-fatal issues attached to extracted questions."""
    VALIDATION_INCOMPLETE = "validation_incomplete"
    MISSING_QUESTION_NUMBER = "missing_question_number"
    DUPLICATE_QUESTION_NUMBER = "duplicate_question_number"
    MALFORMED_PROVIDER_RESPONSE = "malformed_provider_response"
    SECTION_RENUMBERED = "section_renumbered"


# Answer value for questions whose key could not be read.
PENDING_ANSWER = "PENDING"

# Question types that must carry all four options.
OPTION_BEARING_TYPES = frozenset({
    QuestionType.SINGLE_CORRECT,
    QuestionType.MULTIPLE_CORRECT,
})


# ─── Anomaly Model ────────────────────────────────────────────────────────────


class Anomaly(BaseModel):
    """A non-fatal issue detected on a question."""
    type: AnomalyType
    severity: int = Field(
        ge=0, le=100,
        description="Severity score 0-100"
    )
    message: str
    context: Optional[dict] = None


# ─── Page / Diagram Models ───────────────────────────────────────────────────


class PageImage(BaseModel):
    """A rendered image of one physical PDF page."""
    page_number: int = Field(ge=1)
    path: str
    width: Optional[int] = None
    height: Optional[int] = None


class DiagramImage(BaseModel):
    """
    A raster diagram embedded in the PDF.
    Lives in the run working directory until assigned to a question.
    """
    page_number: int = Field(ge=1)
    width: int = Field(ge=0)
    height: int = Field(ge=0)
    source_type: DiagramSourceType = DiagramSourceType.IMAGE
    color: Optional[str] = None
    path: str = ""

    @property
    def signature(self) -> tuple[int, int]:
        return (self.width, self.height)


# ─── Question Models ─────────────────────────────────────────────────────────


class ListItem(BaseModel):
    label: str
    value: str


class StructuredData(BaseModel):
    """Tabular content detected inside a question stem."""
    type: StructuredDataType
    headers: list[str] = Field(default_factory=list)
    rows: list[list[str]] = Field(default_factory=list)
    list_i: list[ListItem] = Field(default_factory=list)
    list_ii: list[ListItem] = Field(default_factory=list)
    description: str = ""


class ExtractedQuestion(BaseModel):
    """
    A single extracted question with its options, answer,
    diagram reference and any anomalies.
    """
    question_number: int = Field(ge=1)
    text: str = ""
    option_a: Optional[str] = None
    option_b: Optional[str] = None
    option_c: Optional[str] = None
    option_d: Optional[str] = None
    question_type: QuestionType = QuestionType.SINGLE_CORRECT
    correct_answer: str = PENDING_ANSWER
    subject: str = ""
    topic: str = ""
    subtopic: Optional[str] = None
    difficulty: Difficulty = Difficulty.MEDIUM
    explanation: Optional[str] = None
    has_diagram: bool = False
    diagram_description: Optional[str] = None
    diagram_image_ref: Optional[str] = None
    structured_data: Optional[StructuredData] = None
    exam_year: Optional[int] = None
    exam_type: Optional[str] = None
    page_number: Optional[int] = None
    source_offset: Optional[int] = Field(
        default=None,
        description="Character offset of the question in the cleaned text"
    )
    is_active: bool = True
    is_placeholder: bool = False
    anomalies: list[Anomaly] = Field(default_factory=list)

    @property
    def options(self) -> dict[str, Optional[str]]:
        return {
            "A": self.option_a,
            "B": self.option_b,
            "C": self.option_c,
            "D": self.option_d,
        }

    @computed_field
    @property
    def anomaly_score(self) -> int:
        """Aggregate anomaly score (0-100)."""
        if not self.anomalies:
            return 0
        return min(100, sum(a.severity for a in self.anomalies))


# ─── Run / Ledger Models ─────────────────────────────────────────────────────


class SourceDocument(BaseModel):
    """An exam PDF handed to the pipeline."""
    document_id: str
    path: str
    title: str = ""
    subject: str = ""
    paper_type: str = "full_length"


class ExtractionRun(BaseModel):
    """Progress record for one extraction of one document."""
    run_id: str
    source_document_id: str
    progress_percent: int = Field(default=0, ge=0, le=100)
    current_step: str = ""
    status: RunStatus = RunStatus.PENDING
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.FAILED)


class ApiCallRecord(BaseModel):
    """One attempt at an external AI call. Append-only."""
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    source_document_id: Optional[str] = None
    provider: str
    model: str
    operation_type: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_usd: float = 0.0
    page_number: Optional[int] = None
    attempt: int = Field(default=1, ge=1)
    success: bool = True
    error_message: Optional[str] = None
    latency_ms: int = 0
    created_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


class CostSummary(BaseModel):
    """Aggregate of ledger records."""
    total_cost_usd: float = 0.0
    total_tokens: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    total_calls: int = 0
    by_provider: dict[str, int] = Field(default_factory=dict)
    by_operation: dict[str, int] = Field(default_factory=dict)


# ─── Report Model ────────────────────────────────────────────────────────────


class ExtractionReport(BaseModel):
    """
    Complete output of an extraction run.
    This is the top-level JSON structure returned to callers.
    """
    run: ExtractionRun
    mode: str = "text"
    questions: list[ExtractedQuestion] = Field(default_factory=list)
    ready_count: int = 0
    incomplete_count: int = 0
    placeholder_count: int = 0
    missing_question_numbers: list[int] = Field(default_factory=list)
    duplicate_question_numbers: list[int] = Field(default_factory=list)
    pages_processed: int = 0
    pages_skipped: list[int] = Field(default_factory=list)
    diagrams_extracted: int = 0
    diagrams_assigned: int = 0
    cost: CostSummary = Field(default_factory=CostSummary)
    elapsed_seconds: float = 0.0

    @computed_field
    @property
    def total_questions(self) -> int:
        return len(self.questions)

    @computed_field
    @property
    def inactive_count(self) -> int:
        return sum(1 for q in self.questions if not q.is_active)
