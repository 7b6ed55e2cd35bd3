"""
Job endpoints — submit a batch of documents and poll its progress.
"""

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from fiscalflow.api.deps import get_runtime
from fiscalflow.api.schemas.jobs import JobQueuedResponse, JobSubmission
from fiscalflow.core.config import settings
from fiscalflow.core.logging import get_logger
from fiscalflow.pipeline.errors import FlowResolutionError
from fiscalflow.pipeline.runtime import PipelineRuntime

logger = get_logger(__name__)

router = APIRouter(prefix="/jobs", tags=["Jobs"])


# ─── Submit ───────────────────────────────────────────────
@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def submit_job(
    submission: JobSubmission,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    """
    Submit documents for processing.

    Inline mode runs the pipeline on this process's event loop and
    returns the freshly created job.  Celery mode hands the whole run
    to a worker and returns the Celery task id; the job becomes visible
    once the worker has created it in Redis.
    """
    payload = {"files": [f.model_dump(by_alias=True) for f in submission.files]}
    job_id = submission.job_id or str(uuid.uuid4())

    try:
        runtime.dispatcher.flow_resolver.resolve(submission.flow)
    except FlowResolutionError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    if settings.PIPELINE_EXECUTION_MODE == "celery":
        from fiscalflow.tasks.processing_tasks import process_job

        task = process_job.delay(job_id, payload, submission.flow)
        logger.info("Job queued", job_id=job_id, celery_task_id=task.id)
        return JobQueuedResponse(job_id=job_id, celery_task_id=task.id).model_dump(by_alias=True)

    job = await runtime.submit(payload, job_id=job_id, flow=submission.flow)
    logger.info("Job submitted", job_id=job.id, files=len(submission.files))
    return job.to_wire()


# ─── Detail ───────────────────────────────────────────────
@router.get("/{job_id}")
async def get_job(job_id: str, runtime: PipelineRuntime = Depends(get_runtime)) -> dict[str, Any]:
    """Current state of a job: pipeline steps, merged result, error."""
    job = await runtime.store.get(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found or expired")
    return job.to_wire()


@router.get("/{job_id}/alerts")
async def get_job_alerts(job_id: str, runtime: PipelineRuntime = Depends(get_runtime)) -> dict[str, Any]:
    """Stage failures the alert agent recorded for this job."""
    alerts = runtime.alerts.for_job(job_id)
    return {"data": alerts, "total": len(alerts)}
