"""
AI Providers
============
Port for multimodal structured-extraction providers, plus the Gemini
implementation on the google-genai SDK.

Providers only talk to the model. Retrying, cost accounting and JSON
recovery live in the ledger and the vision extractor.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from PIL import Image

from .errors import ProviderError, TransientProviderError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

RETRYABLE_MESSAGE_HINTS = (
    "econnreset",
    "timeout",
    "timed out",
    "network",
    "rate limit",
    "resource_exhausted",
    "429",
    "500",
    "502",
    "503",
    "504",
    "overloaded",
    "server_error",
    "unavailable",
)


@dataclass
class ProviderResponse:
    """Raw reply of a provider call with its token usage."""
    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


class ExtractionProvider(ABC):
    """A model that reads an image and answers a text prompt."""

    name: str = "unknown"
    model: str = ""

    @abstractmethod
    def generate_from_image(self, image_path: str, prompt: str) -> ProviderResponse:
        """Send one image plus prompt, return the model's text reply."""


def is_retryable_error(exc: BaseException) -> bool:
    """
    Decide whether a failed provider call is worth another attempt.

    Transient provider errors, timeouts and connection drops (including
    the httpx transport errors the SDK raises) retry.
    Anything else is checked against known transient message fragments.
    """
    if isinstance(exc, TransientProviderError):
        return True
    if isinstance(exc, ProviderError):
        return exc.status_code in RETRYABLE_STATUS_CODES
    if isinstance(exc, (TimeoutError, ConnectionError, httpx.TransportError)):
        return True
    status = getattr(exc, "code", None) or getattr(exc, "status_code", None)
    if isinstance(status, int) and status in RETRYABLE_STATUS_CODES:
        return True
    message = str(exc).lower()
    return any(hint in message for hint in RETRYABLE_MESSAGE_HINTS)


class GeminiProvider(ExtractionProvider):
    """Gemini vision via the google-genai SDK."""

    name = "gemini"

    def __init__(self, api_key: Optional[str], model: str = "gemini-2.0-flash"):
        if not api_key:
            raise ValueError(
                "Gemini API key required. Set GEMINI_API_KEY environment variable "
                "or pass api_key."
            )
        self.client = genai.Client(api_key=api_key)
        self.model = model

    def generate_from_image(self, image_path: str, prompt: str) -> ProviderResponse:
        try:
            with Image.open(image_path) as image:
                image.load()
                response = self.client.models.generate_content(
                    model=self.model,
                    contents=[prompt, image],
                )
        except genai_errors.APIError as e:
            status = getattr(e, "code", None)
            message = f"Gemini API error ({status}): {e}"
            if status in RETRYABLE_STATUS_CODES:
                raise TransientProviderError(message, status_code=status) from e
            raise ProviderError(message, status_code=status) from e
        except (TimeoutError, ConnectionError, httpx.TransportError) as e:
            raise TransientProviderError(f"Gemini connection error: {e}") from e

        usage = getattr(response, "usage_metadata", None)
        return ProviderResponse(
            text=response.text or "",
            model=self.model,
            input_tokens=getattr(usage, "prompt_token_count", None) or 0,
            output_tokens=getattr(usage, "candidates_token_count", None) or 0,
        )
