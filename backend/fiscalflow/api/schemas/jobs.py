"""Job submission request/response schemas."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fiscalflow.pipeline.context import SourceFile


class JobSubmission(BaseModel):
    """Request payload for POST /jobs."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    files: list[SourceFile] = Field(..., min_length=1)
    flow: str | None = None
    job_id: str | None = Field(default=None, max_length=128)


class JobQueuedResponse(BaseModel):
    """Returned when the job was handed to a Celery worker."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str
    celery_task_id: str
    status: str = "queued"
