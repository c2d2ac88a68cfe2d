"""
Extraction Pipeline
===================
Main orchestrator that runs one source document through diagram
extraction, question extraction, diagram mapping and validation, and
persists the result through a QuestionStore.

Usage:
    pipeline = ExtractionPipeline(config, store=SQLiteStore())
    report = pipeline.run(SourceDocument(document_id="neet-2024", path="paper.pdf"))

Architecture:
    PDF → DiagramExtractor → diagrams by page
        → TextPatternExtractor (text mode)
          or PageRasterizer → VisionExtractor (vision mode)
        → SectionNumbering → map/assign diagrams → CompletenessValidator
        → QuestionStore → ExtractionReport
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Callable, Optional

from .config import ExtractionConfig
from .diagrams import DiagramExtractor
from .errors import ProviderError, SourceNotFound
from .ledger import CostLedger
from .mapper import assign_diagrams, map_diagrams_to_questions
from .models import (
    Anomaly,
    AnomalyType,
    DiagramImage,
    ExtractedQuestion,
    ExtractionReport,
    ExtractionRun,
    PageImage,
    RunStatus,
    SourceDocument,
)
from .providers import ExtractionProvider, GeminiProvider
from .rasterizer import PageRasterizer
from .storage import store_diagram
from .store import MemoryStore, QuestionStore
from .text_extractor import TextPatternExtractor, read_pdf_text
from .validator import CompletenessValidator
from .vision import DiagramLocator, SectionNumbering, VisionExtractor
from .workspace import RunWorkspace

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


def new_run_id(document_id: str) -> str:
    """Unique run id derived from the document id."""
    return f"{document_id}-{uuid.uuid4().hex[:8]}"


def renumber_sequential(questions: list[ExtractedQuestion]) -> SectionNumbering:
    """
    Apply section restarts to text-extracted questions in document order.

    Only a printed number that drops back to 1 opens a new section. Any
    other out-of-order number keeps the current offset, so a stray low
    number surfaces as a duplicate instead of shifting every question
    after it.
    """
    numbering = SectionNumbering()
    for question in questions:
        printed = question.question_number
        if printed == 1 or printed + numbering.offset > numbering.running_max:
            numbering.begin_page()
            number = numbering.assign(printed)
        else:
            number = printed + numbering.offset
        if number != printed:
            question.question_number = number
            question.anomalies.append(Anomaly(
                type=AnomalyType.SECTION_RENUMBERED,
                severity=5,
                message=f"Printed Q{printed} renumbered to Q{number}",
                context={"printed_number": printed, "section": numbering.sections},
            ))
    return numbering


class ExtractionPipeline:
    """
    Runs a complete extraction for one source document.

    Steps:
        1. Embedded diagram extraction
        2. Question extraction (text patterns or vision)
        3. Section renumbering
        4. Diagram-to-question mapping
        5. Completeness validation and placeholder filling
        6. Persistence

    The run workspace is removed at the end, whether the run
    succeeded or failed.
    """

    def __init__(
        self,
        config: Optional[ExtractionConfig] = None,
        store: Optional[QuestionStore] = None,
        provider: Optional[ExtractionProvider] = None,
        ledger: Optional[CostLedger] = None,
    ):
        self.config = config or ExtractionConfig()
        self.store = store or MemoryStore()
        self.provider = provider
        self.ledger = ledger or CostLedger(
            max_retries=self.config.max_retries,
            initial_delay=self.config.retry_initial_delay,
            sink=self.store.record_api_call,
        )

    @property
    def mode(self) -> str:
        """The concrete extraction mode, 'text' or 'vision'."""
        if self.config.mode == "auto" and self.provider is not None:
            return "vision"
        return self.config.resolved_mode

    def _get_provider(self) -> ExtractionProvider:
        if self.provider is None:
            if not self.config.api_key:
                raise ProviderError(
                    "Vision mode requires an API key (set GEMINI_API_KEY)"
                )
            self.provider = GeminiProvider(
                self.config.api_key, self.config.vision_model
            )
        return self.provider

    # ─── Run ──────────────────────────────────────────────────────────────

    def run(
        self,
        document: SourceDocument,
        run_id: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> ExtractionReport:
        """
        Extract, validate and persist the questions of one document.

        Args:
            document: The source PDF and its metadata.
            run_id: Run identifier; generated when omitted.
            progress_callback: Callback(percent, step) on every progress update.

        Returns:
            ExtractionReport with every question record and the counts.

        Raises:
            SourceNotFound: If the PDF does not exist.
            ExtractionError: If a stage fails fatally. The run is marked
                failed before the error propagates.
        """
        run_id = run_id or new_run_id(document.document_id)
        run = ExtractionRun(run_id=run_id, source_document_id=document.document_id)
        self.store.create_run(run)

        workspace = RunWorkspace(self.config.work_dir, run_id)
        start_time = time.time()
        mode = self.mode

        def progress(percent: int, step: str):
            self.store.update_progress(run_id, percent, step)
            if progress_callback:
                progress_callback(percent, step)

        try:
            self.store.mark_status(run_id, RunStatus.PROCESSING)
            pdf_path = os.path.abspath(document.path)
            if not os.path.exists(pdf_path):
                raise SourceNotFound(pdf_path)

            logger.info(
                f"Run {run_id}: extracting {document.document_id} "
                f"({os.path.basename(pdf_path)}) in {mode} mode"
            )
            rasterizer = PageRasterizer(self.config)
            total_pages = rasterizer.page_count(pdf_path)

            # ── Step 1: Embedded diagrams ─────────────────────────────
            progress(5, "Extracting embedded diagrams")
            diagrams_by_page = DiagramExtractor(self.config).extract_diagrams(
                pdf_path, run_id
            )
            diagrams_extracted = sum(len(d) for d in diagrams_by_page.values())

            # ── Step 2: Questions ─────────────────────────────────────
            pages: list[PageImage] = []
            pages_skipped: list[int] = []
            if mode == "vision":
                progress(15, "Rasterizing pages")
                pages = rasterizer.rasterize(pdf_path, run_id)
                progress(20, "Extracting questions from page images")
                questions, pages_processed, pages_skipped = self._extract_vision(
                    document, pages, progress
                )
            else:
                progress(20, "Extracting questions from text")
                questions = self._extract_text(document, pdf_path)
                pages_processed = total_pages

            # ── Step 3: Diagrams to questions ─────────────────────────
            progress(75, "Mapping diagrams to questions")
            diagrams_assigned = self._assign_diagrams(
                run_id, questions, diagrams_by_page, total_pages
            )
            if mode == "vision" and self.config.locate_missing_diagrams:
                diagrams_assigned += self._locate_missing_diagrams(
                    document, run_id, questions, pages
                )

            # ── Step 4: Validation ────────────────────────────────────
            progress(85, "Validating questions")
            result = CompletenessValidator().finalize(questions)

            # ── Step 5: Persist ───────────────────────────────────────
            progress(90, "Saving questions")
            for question in result.questions:
                self.store.insert_question(run_id, question)

            progress(100, "Completed")
            self.store.mark_status(run_id, RunStatus.COMPLETED)

            elapsed = time.time() - start_time
            report = ExtractionReport(
                run=self.store.get_run(run_id) or run,
                mode=mode,
                questions=result.questions,
                ready_count=len(result.ready),
                incomplete_count=len(result.incomplete),
                placeholder_count=len(result.placeholders),
                missing_question_numbers=result.missing_question_numbers,
                duplicate_question_numbers=result.duplicate_question_numbers,
                pages_processed=pages_processed,
                pages_skipped=pages_skipped,
                diagrams_extracted=diagrams_extracted,
                diagrams_assigned=diagrams_assigned,
                cost=self.ledger.summary(document.document_id),
                elapsed_seconds=round(elapsed, 2),
            )
            logger.info(
                f"Run {run_id} complete in {elapsed:.2f}s: "
                f"{report.ready_count} ready, {report.incomplete_count} incomplete, "
                f"{report.placeholder_count} placeholders"
            )

            if self.config.save_output:
                self._save_json(report, Path(self.config.output_dir) / f"{run_id}_report.json")

            return report

        except Exception as e:
            logger.error(f"Run {run_id} failed: {e}")
            self.store.mark_status(run_id, RunStatus.FAILED, error=str(e))
            raise

        finally:
            workspace.cleanup()

    # ─── Stages ───────────────────────────────────────────────────────────

    def _extract_text(
        self, document: SourceDocument, pdf_path: str
    ) -> list[ExtractedQuestion]:
        raw_text = read_pdf_text(pdf_path)
        extractor = TextPatternExtractor(self.config)
        questions = extractor.extract_from_text(
            raw_text,
            subject_hint=document.subject,
            document_title=document.title or document.document_id,
        )
        questions.sort(key=lambda q: q.source_offset or 0)
        numbering = renumber_sequential(questions)
        if numbering.sections > 1:
            logger.info(f"Detected {numbering.sections} numbering sections")
        return questions

    def _extract_vision(
        self,
        document: SourceDocument,
        pages: list[PageImage],
        progress: ProgressCallback,
    ) -> tuple[list[ExtractedQuestion], int, list[int]]:
        extractor = VisionExtractor(
            self._get_provider(),
            self.ledger,
            self.config,
            source_document_id=document.document_id,
        )

        def on_page(done: int, total: int):
            progress(20 + int(50 * done / total), f"Extracted page {done}/{total}")

        batch = extractor.extract_pages(pages, progress_callback=on_page)
        if document.subject and document.subject.lower() not in ("full_length", "mixed"):
            for question in batch.questions:
                if not question.subject:
                    question.subject = document.subject.lower()
        return batch.questions, batch.pages_processed, batch.pages_skipped

    def _assign_diagrams(
        self,
        run_id: str,
        questions: list[ExtractedQuestion],
        diagrams_by_page: dict[int, list[DiagramImage]],
        total_pages: int,
    ) -> int:
        if not questions or not diagrams_by_page:
            return 0
        diagram_map = map_diagrams_to_questions(
            diagrams_by_page,
            total_questions=max(q.question_number for q in questions),
            total_pages=total_pages,
            start_page=self.config.diagram_start_page,
        )
        return assign_diagrams(
            questions,
            diagram_map,
            store=lambda number, diagram: store_diagram(
                self.config.diagram_store_dir, run_id, number, diagram
            ),
        )

    def _locate_missing_diagrams(
        self,
        document: SourceDocument,
        run_id: str,
        questions: list[ExtractedQuestion],
        pages: list[PageImage],
    ) -> int:
        """Page-image candidates for flagged questions the mapper left empty."""
        by_page = {p.page_number: p for p in pages}
        locator = DiagramLocator(
            self._get_provider(),
            self.ledger,
            self.config,
            source_document_id=document.document_id,
        )
        located = 0
        for question in questions:
            if not question.has_diagram or question.diagram_image_ref:
                continue
            page = by_page.get(question.page_number)
            if page is None:
                continue
            try:
                location = locator.locate(
                    page, question.question_number, question.diagram_description
                )
            except ProviderError as e:
                logger.warning(
                    f"Q{question.question_number}: diagram location failed: {e}"
                )
                continue
            question.diagram_image_ref = store_diagram(
                self.config.diagram_store_dir,
                run_id,
                question.question_number,
                DiagramImage(
                    page_number=page.page_number,
                    width=page.width or 0,
                    height=page.height or 0,
                    path=location.candidate_path,
                ),
            )
            if not question.diagram_description:
                question.diagram_description = location.confirmation[:500]
            located += 1
        logger.info(f"Located {located} diagram candidates from page images")
        return located

    def _save_json(self, report: ExtractionReport, filepath: Path):
        """Save the report to a JSON file."""
        try:
            filepath.parent.mkdir(parents=True, exist_ok=True)
            with open(filepath, "w", encoding="utf-8") as f:
                json.dump(
                    report.model_dump(), f, indent=2, ensure_ascii=False, default=str
                )
            logger.info(f"Saved JSON output: {filepath}")
        except OSError as e:
            logger.error(f"Failed to save JSON: {e}")
