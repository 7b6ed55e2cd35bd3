"""
StageReviewer — asynchronous follow-up reviews of stage output.

After audit, classification or analysis complete, the reviewer asks the
inference provider for a structured review and merges it into the job
result under its own key.  It runs alongside the pipeline: it writes
with ``merge_result`` so it never clobbers what the Dispatcher merges
concurrently, and its failures are logged, never turned into
``task:failed``.
"""

from __future__ import annotations

import json
from typing import Any, Callable

from fiscalflow.core.constants import EventName, StageName
from fiscalflow.core.logging import get_logger
from fiscalflow.events.bus import EventBus
from fiscalflow.events.models import TaskCompletedEvent
from fiscalflow.ingestion.file_fingerprint import compute_context_hash
from fiscalflow.integrations.inference import InferenceProvider, InferenceRequest
from fiscalflow.integrations.vector_index import VectorIndex
from fiscalflow.pipeline.prompts import REVIEW_SYSTEM_PROMPT, build_review_prompt
from fiscalflow.processing.response_decoder import decode_structured_response
from fiscalflow.store.cache import SemanticCache
from fiscalflow.store.job_store import JobStore

logger = get_logger(__name__)


def _section(title: str, content: str | None) -> str | None:
    if content and content.strip():
        return f"{title}\n{content.strip()}"
    return None


def audit_context(payload: dict[str, Any]) -> str:
    findings = payload.get("auditFindings") or {}
    summary = findings.get("summary") or {}
    sections = [
        _section(
            "Audit summary",
            f"Findings: {summary.get('totalFindings', 0)}, risk {summary.get('riskLevel', 'unknown')}, "
            f"score {summary.get('riskScore', 'n/a')}." if summary else None,
        ),
        _section("Main alerts", "\n".join((findings.get("alerts") or [])[:4])),
        _section("High-value documents", str(summary.get("highValueDocuments", 0)) if summary else None),
    ]
    sections = [s for s in sections if s]
    return "\n\n".join(sections) or "No audit information recorded yet."


def classification_context(payload: dict[str, Any]) -> str:
    summary = (payload.get("classifications") or {}).get("summary") or {}
    by_risk = summary.get("byRisk") or {}
    sections = [
        _section(
            "Classification summary",
            f"High risk: {by_risk.get('High', 0)}, pending issues: {summary.get('documentsWithPendingIssues', 0)}",
        ),
        _section("Recommendations", "\n".join((summary.get("recommendations") or [])[:4])),
    ]
    sections = [s for s in sections if s]
    return "\n\n".join(sections) or "No classification available."


def analysis_context(payload: dict[str, Any]) -> str:
    summary = payload.get("executiveSummary") or {}
    metrics = summary.get("keyMetrics") or {}
    insights = summary.get("actionableInsights") or []
    sections = [
        _section("Executive summary", summary.get("description")),
        _section("Key metrics", "; ".join(f"{k}: {v}" for k, v in metrics.items())),
        _section(
            "Insights",
            "\n".join(f"{i}. {item.get('text') if isinstance(item, dict) else item}" for i, item in enumerate(insights, 1)),
        ),
        _section("Simulation", json.dumps(payload["simulationResult"]) if payload.get("simulationResult") else None),
    ]
    sections = [s for s in sections if s]
    return "\n\n".join(sections) or "No structured context available for review."


REVIEWS: dict[str, tuple[str, Callable[[dict[str, Any]], str]]] = {
    StageName.AUDIT: ("auditReview", audit_context),
    StageName.CLASSIFICATION: ("classificationReview", classification_context),
    StageName.ANALYSIS: ("analysisReview", analysis_context),
}


class StageReviewer:
    def __init__(
        self,
        bus: EventBus,
        store: JobStore,
        provider: InferenceProvider,
        cache: SemanticCache | None = None,
        vector_index: VectorIndex | None = None,
    ) -> None:
        self.bus = bus
        self.store = store
        self.provider = provider
        self.cache = cache
        self.vector_index = vector_index

    def register(self) -> None:
        self.bus.subscribe(EventName.TASK_COMPLETED, self.on_task_completed)

    def cache_stage(self, task_name: str) -> str:
        return f"{task_name}-review"

    async def _rag_context(self, job_id: str, query: str) -> str:
        if self.vector_index is None:
            return ""
        chunks = await self.vector_index.query(job_id, query, limit=4)
        return "\n\n---\n\n".join(f"File: {c.file_name}\n{c.content.strip()[:900]}" for c in chunks)

    async def review(self, job_id: str, task_name: str, payload: dict[str, Any]) -> dict[str, Any]:
        _, build_context = REVIEWS[task_name]
        stage_context = build_context(payload)
        context_hash = compute_context_hash({"task": task_name, "context": stage_context})

        if self.cache is not None:
            cached = await self.cache.get(job_id, self.cache_stage(task_name), context_hash)
            if cached is not None:
                return cached

        prompt = build_review_prompt(job_id, task_name, stage_context, await self._rag_context(job_id, stage_context))
        response = await self.provider.generate(InferenceRequest(
            prompt=prompt,
            system_instruction=REVIEW_SYSTEM_PROMPT,
            job_id=job_id,
            stage_name=task_name,
        ))
        review = decode_structured_response(response.text, job_id=job_id, stage_name=task_name)

        if self.cache is not None:
            await self.cache.set(job_id, self.cache_stage(task_name), context_hash, review)
        return review

    async def on_task_completed(self, event: TaskCompletedEvent) -> None:
        if event.task_name not in REVIEWS:
            return

        result_key, _ = REVIEWS[event.task_name]
        log = logger.bind(job_id=event.job_id, task_name=event.task_name)
        try:
            review = await self.review(event.job_id, event.task_name, event.payload)
            merged = await self.store.merge_result(event.job_id, {result_key: review})
        except Exception as exc:
            log.warning("Stage review failed", error=str(exc), error_type=type(exc).__name__)
            return

        if merged:
            log.info("Stage review merged", result_key=result_key)
        else:
            log.warning("Stage review for unknown or expired job dropped")
