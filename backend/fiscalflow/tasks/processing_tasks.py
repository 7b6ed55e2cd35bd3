"""
Celery tasks — fiscal document pipeline.

Runs one job to completion inside a worker: a fresh runtime (bus, agents,
collaborators) on the Redis job store, so the API process can read the
job's progress while the worker runs it.
"""

import asyncio

import structlog

from fiscalflow.core.config import settings
from fiscalflow.pipeline.runtime import build_runtime
from fiscalflow.store.job_store import build_job_store
from fiscalflow.tasks import celery_app

logger = structlog.get_logger("tasks.processing")


async def _run_job(job_id: str, payload: dict, flow: str | None) -> dict:
    runtime = build_runtime(store=build_job_store("redis"))
    try:
        await runtime.submit(payload, job_id=job_id, flow=flow)
        job = await runtime.wait_for_job(job_id, timeout=settings.JOB_WAIT_TIMEOUT_SECONDS)
    finally:
        await runtime.aclose()

    if job is None:
        return {"job_id": job_id, "status": "expired"}
    failed = job.failed_step
    return {
        "job_id": job.id,
        "status": str(job.status),
        "steps_completed": sum(1 for s in job.pipeline if s.status == "completed"),
        "total_steps": len(job.pipeline),
        "failed_step": failed.index if failed else None,
        "error": job.error,
    }


@celery_app.task(bind=True, name="fiscalflow.tasks.processing_tasks.process_job")
def process_job(self, job_id: str, payload: dict, flow: str | None = None):
    """
    Process a submitted batch of documents through the full pipeline.

    The job record lives in Redis under ``job_id``; the task returns a
    short summary for the Celery result backend.
    """
    task_log = logger.bind(task_id=self.request.id, job_id=job_id)
    task_log.info("Processing task started", files=len(payload.get("files") or []))

    try:
        summary = asyncio.run(_run_job(job_id, payload, flow))
    except Exception as exc:
        task_log.exception("Processing task failed", error=str(exc))
        raise

    task_log.info(
        "Processing task finished",
        status=summary["status"],
        steps_completed=summary.get("steps_completed"),
        total_steps=summary.get("total_steps"),
    )
    return summary
