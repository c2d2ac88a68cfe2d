"""
Background Extraction
=====================
Runs an extraction in a daemon thread so callers can return at once
and observe the run through the store or the returned task handle.

Usage:
    task = spawn_extraction(pipeline, document, run_id)
    ...
    if task.wait(timeout=600):
        report = task.result()

There is no mid-run cancellation; a failed run is terminal.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from .models import ExtractionReport, SourceDocument
from .pipeline import ExtractionPipeline, new_run_id

logger = logging.getLogger(__name__)


class ExtractionTask:
    """Handle to one background extraction."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.report: Optional[ExtractionReport] = None
        self.error: Optional[BaseException] = None
        self.thread: Optional[threading.Thread] = None
        self._finished = threading.Event()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the run ends. Returns False on timeout."""
        return self._finished.wait(timeout)

    def done(self) -> bool:
        return self._finished.is_set()

    def result(self, timeout: Optional[float] = None) -> ExtractionReport:
        """
        The report of a finished run.

        Raises:
            TimeoutError: If the run is still going after timeout.
            Exception: Whatever made the run fail.
        """
        if not self.wait(timeout):
            raise TimeoutError(f"Run {self.run_id} still in progress")
        if self.error is not None:
            raise self.error
        return self.report

    def _run(
        self,
        pipeline: ExtractionPipeline,
        document: SourceDocument,
        start_delay: float,
    ):
        try:
            if start_delay > 0:
                time.sleep(start_delay)
            self.report = pipeline.run(document, run_id=self.run_id)
        except Exception as e:
            # The pipeline has already marked the run failed in the store
            logger.error(f"Background run {self.run_id} failed: {e}")
            self.error = e
        finally:
            self._finished.set()


def spawn_extraction(
    pipeline: ExtractionPipeline,
    document: SourceDocument,
    run_id: Optional[str] = None,
    start_delay: Optional[float] = None,
) -> ExtractionTask:
    """
    Start an extraction in a background thread.

    Args:
        pipeline: Configured pipeline to run.
        document: Source document to extract.
        run_id: Run identifier; generated when omitted.
        start_delay: Seconds to wait before starting; defaults to
            the pipeline config's start_delay.

    Returns:
        The task handle.
    """
    run_id = run_id or new_run_id(document.document_id)
    delay = pipeline.config.start_delay if start_delay is None else start_delay

    task = ExtractionTask(run_id)
    task.thread = threading.Thread(
        target=task._run,
        args=(pipeline, document, delay),
        daemon=True,
        name=f"extraction-{run_id}",
    )
    task.thread.start()

    logger.info(f"Spawned extraction thread for run_id={run_id}, start_delay={delay}s")
    return task
