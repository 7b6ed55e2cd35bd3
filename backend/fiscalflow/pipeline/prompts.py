"""
Prompts for the inference-backed stage and the review follow-ups.

All prompt text lives here so it can be iterated on without touching
stage logic.
"""

from __future__ import annotations

import json
from typing import Any

from fiscalflow.core.config import settings


# ═══════════════════════════════════════════════════════════
#  System Prompt
# ═══════════════════════════════════════════════════════════

ANALYSIS_SYSTEM_PROMPT = """
You are a Brazilian tax analyst reviewing a batch of fiscal documents (NF-e
and related files). Answer only with a valid JSON object, no conversational
text. When a tool is available and the instructions ask for it, call the tool
instead of estimating its result.
""".strip()


# ═══════════════════════════════════════════════════════════
#  Executive Analysis Prompt
# ═══════════════════════════════════════════════════════════

ANALYSIS_RESPONSE_SHAPE = """
{
  "title": "string",
  "description": "string",
  "keyMetrics": {
    "validDocuments": number,
    "totalInvoiceValue": number,
    "totalProductValue": number,
    "icmsComplianceIndex": "string (e.g. '99.5%')",
    "taxRiskLevel": "Low | Medium | High"
  },
  "actionableInsights": [{ "text": "string" }],
  "simulationResult": object | null
}
""".strip()


def _combined_contents(file_contents: list[dict[str, Any]], max_chars: int) -> str:
    combined = "\n\n".join(
        f"--- START FILE: {f.get('fileName')} ---\n{f.get('content') or ''}"
        for f in file_contents
    )
    return combined[:max_chars]


def build_analysis_prompt(
    file_contents: list[dict[str, Any]],
    audit_summary: dict[str, Any] | None = None,
    classification_summary: dict[str, Any] | None = None,
    max_chars: int | None = None,
    simulation_threshold: float | None = None,
) -> str:
    max_chars = max_chars or settings.ANALYSIS_MAX_CONTEXT_CHARS
    threshold = simulation_threshold or settings.TAX_SIMULATION_THRESHOLD

    sections = [
        "Analyse the content of the files below and produce an executive summary as JSON.",
        f"If the total value of the invoices exceeds {threshold:.0f}, call the 'tax_simulation' "
        "tool with taxRegime 'Lucro Real' and that total as baseValue, then put its result in "
        "simulationResult.",
        f"Final JSON structure:\n{ANALYSIS_RESPONSE_SHAPE}",
    ]
    if audit_summary:
        sections.append(f"AUDIT SUMMARY:\n{json.dumps(audit_summary, ensure_ascii=False)}")
    if classification_summary:
        sections.append(f"CLASSIFICATION SUMMARY:\n{json.dumps(classification_summary, ensure_ascii=False)}")
    sections.append(f"CONTENT:\n{_combined_contents(file_contents, max_chars)}")
    return "\n\n".join(sections)


# ═══════════════════════════════════════════════════════════
#  Review Prompts
# ═══════════════════════════════════════════════════════════

REVIEW_SYSTEM_PROMPT = """
You are an automated reviewer of outputs produced by pipeline stages. Do not
invent answers; when information is missing, say so explicitly. Answer only
with a valid JSON object.
""".strip()

REVIEW_RESPONSE_SHAPES: dict[str, str] = {
    "audit": '{"criticalFindings": [string], "riskAreas": [string], "recommendedMitigations": [string]}',
    "classification": '{"classificationHighlights": [string], "riskSuggestions": [string], "dataGaps": [string]}',
    "analysis": '{"confidenceNotes": [string], "nextSteps": [string], "uncertainties": [string]}',
}


def build_review_prompt(job_id: str, stage_name: str, stage_context: str, rag_context: str = "") -> str:
    return "\n\n".join([
        f"Review the '{stage_name}' output of job {job_id}.",
        f"Structured context:\n{stage_context}",
        f"Additional context (retrieved chunks):\n{rag_context or 'none'}",
        f"Return a JSON object shaped as:\n{REVIEW_RESPONSE_SHAPES[stage_name]}",
    ])
