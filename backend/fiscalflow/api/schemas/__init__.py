"""API schema package."""

from fiscalflow.api.schemas.jobs import JobQueuedResponse, JobSubmission

__all__ = ["JobSubmission", "JobQueuedResponse"]
