"""
LangSmith tracing for inference calls.

Tracing is opt-in (``LANGSMITH_TRACING`` plus an API key).  When it is
off, decorated coroutines run untouched, so local runs and tests never
reach LangSmith.

Each traced call is tagged with the job and stage it ran for, taken from
the ``InferenceRequest`` argument::

    @trace_inference(name="gemini_generate")
    async def generate(self, request):
        ...
"""

from __future__ import annotations

import functools
import os
from typing import Any, Callable

from langsmith import traceable

from fiscalflow.core.config import settings
from fiscalflow.core.logging import get_logger

logger = get_logger(__name__)

_enabled = False


def setup_tracing() -> bool:
    """Export the LangSmith settings for the SDK.  Returns whether tracing is on."""
    global _enabled

    _enabled = bool(settings.LANGSMITH_TRACING and settings.LANGSMITH_API_KEY)
    if not _enabled:
        logger.info("LangSmith tracing disabled")
        return False

    os.environ.update({
        "LANGSMITH_API_KEY": settings.LANGSMITH_API_KEY,
        "LANGSMITH_ENDPOINT": settings.LANGSMITH_ENDPOINT,
        "LANGSMITH_PROJECT": settings.LANGSMITH_PROJECT,
        "LANGSMITH_TRACING": "true",
    })
    logger.info("LangSmith tracing enabled", project=settings.LANGSMITH_PROJECT)
    return True


def tracing_enabled() -> bool:
    return _enabled


def _request_metadata(args: tuple, kwargs: dict[str, Any]) -> dict[str, Any]:
    request = kwargs.get("request")
    if request is None:
        request = next((a for a in args if hasattr(a, "stage_name")), None)
    if request is None:
        return {}
    return {
        "job_id": getattr(request, "job_id", None),
        "stage": getattr(request, "stage_name", None),
        "tool_exchanges": len(getattr(request, "tool_exchanges", None) or []),
    }


def trace_inference(name: str, tags: list[str] | None = None) -> Callable:
    """
    Trace an async inference call as an ``llm`` run.

    The run carries ``job_id``/``stage`` metadata and a ``stage:<name>`` tag
    so a job's calls can be filtered together in LangSmith.
    """
    def decorator(func: Callable) -> Callable:
        traced = traceable(name=name, run_type="llm", tags=tags or [])(func)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            if not _enabled:
                return await func(*args, **kwargs)
            metadata = _request_metadata(args, kwargs)
            extra = {"metadata": metadata}
            if metadata.get("stage"):
                extra["tags"] = [f"stage:{metadata['stage']}"]
            return await traced(*args, langsmith_extra=extra, **kwargs)
        return wrapper
    return decorator
