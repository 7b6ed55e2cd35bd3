"""
Domain-specific exception hierarchy for the pipeline.

All pipeline exceptions inherit from PipelineError so callers can
catch broadly or narrowly as needed.  Each exception carries structured
context (job ID, stage name, etc.) for logging/debugging.

Stage agents convert every exception raised inside their own logic into
a ``task:failed`` event; none of these ever escape an event handler.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(
        self,
        message: str,
        *,
        job_id: str | None = None,
        stage_name: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.job_id = job_id
        self.stage_name = stage_name
        self.details = details or {}
        super().__init__(message)


class StageExecutionError(PipelineError):
    """A stage failed while doing its own work."""
    pass


class PayloadValidationError(StageExecutionError):
    """The accumulated payload lacks a field the stage requires."""

    def __init__(
        self,
        message: str,
        *,
        missing_fields: list[str] | None = None,
        **kwargs,
    ) -> None:
        self.missing_fields = missing_fields or []
        super().__init__(message, **kwargs)


class FlowResolutionError(PipelineError):
    """Could not resolve the stage sequence for a flow name."""
    pass


class ExternalLookupError(PipelineError):
    """
    A single company-registry lookup failed.

    Captured as an error record inside the validation results; it never
    fails the stage on its own.
    """

    def __init__(
        self,
        message: str,
        *,
        identifier: str | None = None,
        status_code: int | None = None,
        **kwargs,
    ) -> None:
        self.identifier = identifier
        self.status_code = status_code
        super().__init__(message, **kwargs)


class ToolInvocationError(PipelineError):
    """A delegated tool call failed, or could not be issued or resumed."""

    def __init__(
        self,
        message: str,
        *,
        tool_name: str | None = None,
        **kwargs,
    ) -> None:
        self.tool_name = tool_name
        super().__init__(message, **kwargs)


class ToolRoundTripLimitError(ToolInvocationError):
    """A stage asked for more sequential tool calls than allowed."""

    def __init__(
        self,
        message: str,
        *,
        limit: int = 0,
        **kwargs,
    ) -> None:
        self.limit = limit
        super().__init__(message, **kwargs)


class InferenceProviderError(PipelineError):
    """The inference provider call failed after its retries."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int = 0,
        **kwargs,
    ) -> None:
        self.attempts = attempts
        super().__init__(message, **kwargs)


class MalformedProviderResponseError(PipelineError):
    """Provider output could not be decoded into the expected structure."""

    def __init__(
        self,
        message: str,
        *,
        decode_step: str,
        preview: str = "",
        **kwargs,
    ) -> None:
        self.decode_step = decode_step
        self.preview = preview
        super().__init__(message, **kwargs)
