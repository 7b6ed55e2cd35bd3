"""
Decoding of inference-provider output into a JSON object.

Decode pipeline, first match wins:
    1. fenced block: a ```json (or bare ```) fenced block anywhere in the text
    2. raw JSON    : the whole text parsed as JSON

A fenced block that does not parse is a failure of step 1; it is not
retried as raw JSON.  Every failure raises MalformedProviderResponseError
naming the step that failed.
"""

from __future__ import annotations

import json
import re
from typing import Any

from fiscalflow.pipeline.errors import MalformedProviderResponseError

FENCED_BLOCK = re.compile(r"```(?:json)?[ \t]*\n?(.*?)\n?```", re.DOTALL | re.IGNORECASE)

DECODE_EMPTY = "empty_response"
DECODE_FENCED = "fenced_block"
DECODE_RAW = "raw_json"
DECODE_SHAPE = "object_shape"

_PREVIEW_CHARS = 300


def _expect_object(value: Any, step: str, text: str, **context) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise MalformedProviderResponseError(
            f"Provider response decoded at step '{step}' is a {type(value).__name__}, expected an object",
            decode_step=DECODE_SHAPE,
            preview=text[:_PREVIEW_CHARS],
            **context,
        )
    return value


def decode_structured_response(
    text: str | None,
    *,
    job_id: str | None = None,
    stage_name: str | None = None,
) -> dict[str, Any]:
    """
    Decode provider output into a dict.

    Raises:
        MalformedProviderResponseError: With ``decode_step`` set to the
            step that failed ("empty_response", "fenced_block",
            "raw_json" or "object_shape").
    """
    context = {"job_id": job_id, "stage_name": stage_name}

    if text is None or not text.strip():
        raise MalformedProviderResponseError(
            "Provider returned an empty response",
            decode_step=DECODE_EMPTY,
            **context,
        )

    match = FENCED_BLOCK.search(text)
    if match:
        block = match.group(1).strip()
        try:
            return _expect_object(json.loads(block), DECODE_FENCED, text, **context)
        except json.JSONDecodeError as exc:
            raise MalformedProviderResponseError(
                f"Fenced JSON block could not be decoded: {exc}",
                decode_step=DECODE_FENCED,
                preview=block[:_PREVIEW_CHARS],
                **context,
            ) from exc

    try:
        value = json.loads(text.strip())
    except json.JSONDecodeError as exc:
        raise MalformedProviderResponseError(
            f"Response is neither a fenced JSON block nor raw JSON: {exc}",
            decode_step=DECODE_RAW,
            preview=text[:_PREVIEW_CHARS],
            **context,
        ) from exc
    return _expect_object(value, DECODE_RAW, text, **context)
