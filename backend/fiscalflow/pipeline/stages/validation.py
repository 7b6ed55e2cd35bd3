"""
ValidationStage — company-registry lookups plus deterministic fiscal checks.

CNPJs found in the extracted content are looked up one at a time with a
pause between calls, to stay inside the registry's rate limit.  A failed
lookup becomes an error record in ``validations``; it never fails the
stage.
"""

from __future__ import annotations

import asyncio
from typing import Any

from fiscalflow.core.config import settings
from fiscalflow.core.constants import StageName
from fiscalflow.core.logging import get_logger
from fiscalflow.integrations.registry_client import RegistryClient
from fiscalflow.pipeline.context import PipelinePayload, StageOutcome
from fiscalflow.pipeline.stage import StageAgent
from fiscalflow.processing.entities import find_cnpjs
from fiscalflow.validation.fiscal_rules import run_fiscal_checks

logger = get_logger(__name__)


class ValidationStage(StageAgent):
    name = StageName.VALIDATION
    description = "Validate CNPJs against the registry and run fiscal checks"
    requires = ("file_contents", "artifacts")
    failure_label = "CNPJ validation failed"
    progress_note = "Looking up and validating CNPJs..."

    def __init__(
        self,
        bus,
        store,
        registry_client: RegistryClient,
        lookup_delay: float | None = None,
    ) -> None:
        super().__init__(bus, store)
        self.registry_client = registry_client
        self.lookup_delay = settings.CNPJ_LOOKUP_DELAY_SECONDS if lookup_delay is None else lookup_delay

    async def lookup_all(self, job_id: str, cnpjs: list[str]) -> list[dict[str, Any]]:
        """Sequential lookups; each failure is captured as an error record."""
        validations: list[dict[str, Any]] = []
        for position, cnpj in enumerate(cnpjs):
            if position and self.lookup_delay > 0:
                await asyncio.sleep(self.lookup_delay)
            try:
                validations.append(await self.registry_client.lookup_cnpj(cnpj))
            except Exception as exc:
                logger.warning("CNPJ lookup failed", job_id=job_id, cnpj=cnpj, error=str(exc))
                validations.append({"error": True, "message": str(exc), "cnpj": cnpj})
        return validations

    async def run(self, job_id: str, payload: PipelinePayload) -> StageOutcome:
        combined = " ".join(str(f.get("content") or "") for f in payload.file_contents)
        cnpjs = find_cnpjs(combined)

        validations = await self.lookup_all(job_id, cnpjs)
        fiscal_checks = run_fiscal_checks(
            (a.get("fileName") or "unnamed", a.get("text") or "")
            for a in payload.artifacts
        )

        failed = sum(1 for v in validations if v.get("error"))
        summary = fiscal_checks["summary"]
        if cnpjs:
            info = f"{len(validations)} CNPJ(s) validated ({failed} with error); {summary['flaggedDocuments']} document(s) flagged."
        else:
            info = f"No CNPJ found for validation; {summary['flaggedDocuments']} document(s) flagged."

        logger.info(
            "Validation finished",
            job_id=job_id,
            cnpjs=len(cnpjs),
            lookup_errors=failed,
            flagged=summary["flaggedDocuments"],
        )
        return StageOutcome(
            contributions={"validations": validations, "fiscal_checks": fiscal_checks},
            info=info,
        )
