"""
Extraction Errors
=================
Exception hierarchy for the extraction pipeline.

Fatal errors stop a run and mark it failed. Stage-local errors
(one page, one diagram) are caught by the stage, logged and skipped.
Non-fatal data problems are recorded as anomalies on questions instead.
"""

from __future__ import annotations

from typing import Optional


class ExtractionError(Exception):
    """Base class for all extraction failures."""


class SourceNotFound(ExtractionError, FileNotFoundError):
    """The source PDF does not exist. Never retried."""

    def __init__(self, path: str):
        super().__init__(f"PDF not found: {path}")
        self.path = path


class RasterizationFailed(ExtractionError):
    """The document could not be opened or no strategy could render it."""


class ProviderError(ExtractionError):
    """A non-retryable failure from an external AI provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """A provider failure worth retrying (timeout, rate limit, 5xx)."""


class MalformedProviderResponse(ExtractionError):
    """The provider answered, but no usable JSON could be found."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text
