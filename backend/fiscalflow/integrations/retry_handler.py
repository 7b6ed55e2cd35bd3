"""Exponential backoff retry logic for inference provider calls."""

from __future__ import annotations

import httpx
from google.genai import errors as genai_errors

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

_RETRYABLE_MARKERS = ("resource_exhausted", "internal", "unavailable", "timeout", "timed out")


def should_retry(exc: BaseException, attempt: int, max_retries: int = 2) -> bool:
    """Determine if a failed provider call should be retried."""
    if attempt >= max_retries:
        return False
    if isinstance(exc, genai_errors.APIError):
        return exc.code in RETRYABLE_STATUS_CODES
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


def backoff_delay(attempt: int, base_delay: float = 0.5) -> float:
    """Seconds to wait before retry number ``attempt + 1``."""
    return base_delay * (2 ** attempt)
