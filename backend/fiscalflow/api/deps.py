"""Shared dependencies for API routes."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from fiscalflow.pipeline.runtime import PipelineRuntime


def get_runtime(request: Request) -> PipelineRuntime:
    """The pipeline runtime created in the application lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline runtime is not running",
        )
    return runtime
