"""
AnalysisStage — executive summary from the inference provider.

When the invoices' total value is above TAX_SIMULATION_THRESHOLD the
provider is instructed to call ``tax_simulation``; the stage suspends
until the tool result comes back and then finishes the summary.
"""

from __future__ import annotations

from typing import Any

from fiscalflow.core.constants import StageName
from fiscalflow.integrations.inference import ToolExchange
from fiscalflow.pipeline.context import PipelinePayload, StageOutcome
from fiscalflow.pipeline.inference_stage import InferenceStage
from fiscalflow.pipeline.prompts import ANALYSIS_SYSTEM_PROMPT, build_analysis_prompt


class AnalysisStage(InferenceStage):
    name = StageName.ANALYSIS
    description = "Generate the executive analysis with the inference provider"
    requires = ("file_contents",)
    failure_label = "AI analysis failed"
    progress_note = "Generating executive analysis..."
    system_instruction = ANALYSIS_SYSTEM_PROMPT

    def build_prompt(self, payload: PipelinePayload) -> str:
        audit_summary = (payload.audit_findings or {}).get("summary")
        classification_summary = (payload.classifications or {}).get("summary")
        return build_analysis_prompt(payload.file_contents, audit_summary, classification_summary)

    def finalize(
        self,
        payload: PipelinePayload,
        decoded: dict[str, Any],
        exchanges: list[ToolExchange],
    ) -> StageOutcome:
        simulation = decoded.get("simulationResult")
        simulations = [e.result for e in exchanges if e.name == "tax_simulation"]
        if simulation is None and simulations:
            simulation = simulations[-1]
            decoded = {**decoded, "simulationResult": simulation}

        contributions: dict[str, Any] = {"executive_summary": decoded}
        if simulation is not None:
            contributions["simulation_result"] = simulation

        info = "Analysis with tax simulation finished." if exchanges else "Executive analysis finished."
        return StageOutcome(contributions=contributions, info=info)
