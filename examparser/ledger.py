"""
Retry / Cost Ledger
===================
Wraps every external AI call with exponential-backoff retry and records
one ApiCallRecord per attempt, successful or not.

Usage:
    ledger = CostLedger(sink=store.record_api_call)
    response = ledger.call(
        lambda: provider.generate_from_image(path, prompt),
        provider="gemini",
        model="gemini-2.0-flash",
        operation_type="page_extraction",
        source_document_id="doc-1",
        page_number=3,
    )
    summary = ledger.summary("doc-1")

Records are appended under a lock. A failing sink is logged and never
interrupts extraction; the in-memory record is always kept.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from typing import Callable, Optional, TypeVar

from .models import ApiCallRecord, CostSummary
from .providers import is_retryable_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

# USD per token (input, output)
PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o": (2.5 / 1_000_000, 10.0 / 1_000_000),
    "gpt-4o-mini": (0.15 / 1_000_000, 0.6 / 1_000_000),
    "gemini-1.5-flash": (0.075 / 1_000_000, 0.3 / 1_000_000),
    "gemini-1.5-flash-latest": (0.075 / 1_000_000, 0.3 / 1_000_000),
    "gemini-2.0-flash": (0.1 / 1_000_000, 0.4 / 1_000_000),
    "gemini-2.0-flash-exp": (0.0, 0.0),
}


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Estimated USD cost of one call; unknown models cost nothing."""
    input_price, output_price = PRICING.get(model, (0.0, 0.0))
    return round(input_tokens * input_price + output_tokens * output_price, 6)


class CostLedger:
    """Append-only record of external AI calls with retry."""

    def __init__(
        self,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        sink: Optional[Callable[[ApiCallRecord], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.sink = sink
        self._sleep = sleep
        self._records: list[ApiCallRecord] = []
        self._lock = threading.Lock()

    @property
    def records(self) -> list[ApiCallRecord]:
        with self._lock:
            return list(self._records)

    def call(
        self,
        fn: Callable[[], T],
        *,
        provider: str,
        model: str,
        operation_type: str,
        source_document_id: Optional[str] = None,
        page_number: Optional[int] = None,
        max_retries: Optional[int] = None,
        is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    ) -> T:
        """
        Invoke fn, retrying retryable failures with exponential backoff.

        Delays run initial_delay * 2**attempt: 1s, 2s, 4s, ... by default.
        Non-retryable errors are raised after the first failed attempt;
        retryable ones after max_retries retries.
        """
        retries = self.max_retries if max_retries is None else max_retries

        for attempt in range(retries + 1):
            started = time.monotonic()
            try:
                result = fn()
            except Exception as e:
                latency_ms = int((time.monotonic() - started) * 1000)
                self._append(ApiCallRecord(
                    source_document_id=source_document_id,
                    provider=provider,
                    model=model,
                    operation_type=operation_type,
                    page_number=page_number,
                    attempt=attempt + 1,
                    success=False,
                    error_message=str(e)[:500],
                    latency_ms=latency_ms,
                ))

                if attempt >= retries or not is_retryable(e):
                    logger.warning(
                        f"{operation_type} failed on attempt {attempt + 1}: {e}"
                    )
                    raise

                delay = self.initial_delay * (2 ** attempt)
                logger.info(
                    f"Retry {attempt + 1}/{retries} for {operation_type} "
                    f"after {delay:.1f}s: {e}"
                )
                self._sleep(delay)
                continue

            latency_ms = int((time.monotonic() - started) * 1000)
            input_tokens = int(getattr(result, "input_tokens", 0) or 0)
            output_tokens = int(getattr(result, "output_tokens", 0) or 0)
            self._append(ApiCallRecord(
                source_document_id=source_document_id,
                provider=provider,
                model=model,
                operation_type=operation_type,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
                estimated_cost_usd=estimate_cost(model, input_tokens, output_tokens),
                page_number=page_number,
                attempt=attempt + 1,
                success=True,
                latency_ms=latency_ms,
            ))
            return result

        # Unreachable: the last attempt either returns or raises
        raise RuntimeError("Retry loop exited without a result")

    def _append(self, record: ApiCallRecord):
        with self._lock:
            self._records.append(record)
        if self.sink is None:
            return
        try:
            self.sink(record)
        except Exception as e:
            logger.error(f"Failed to persist API call record: {e}")

    def summary(self, source_document_id: Optional[str] = None) -> CostSummary:
        """Aggregate records, optionally for one document only."""
        records = [
            r for r in self.records
            if source_document_id is None or r.source_document_id == source_document_id
        ]
        return summarize_records(records)


def summarize_records(records: list[ApiCallRecord]) -> CostSummary:
    successful = sum(1 for r in records if r.success)
    return CostSummary(
        total_cost_usd=round(sum(r.estimated_cost_usd for r in records), 6),
        total_tokens=sum(r.total_tokens for r in records),
        successful_calls=successful,
        failed_calls=len(records) - successful,
        total_calls=len(records),
        by_provider=dict(Counter(r.provider for r in records)),
        by_operation=dict(Counter(r.operation_type for r in records)),
    )
