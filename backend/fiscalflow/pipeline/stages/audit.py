"""
AuditStage — consolidates registry results and per-document fiscal fields.

Rule-based, no inference provider.  Produces a registry summary, a
finding list per document, a 0-100 risk score (100 = clean) with its
level, alerts and recommendations.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from fiscalflow.core.config import settings
from fiscalflow.core.constants import RegistrationStatus, RiskLevel, StageName
from fiscalflow.core.logging import get_logger
from fiscalflow.pipeline.context import PipelinePayload, StageOutcome
from fiscalflow.pipeline.stage import StageAgent
from fiscalflow.processing.entities import normalize_cnpj
from fiscalflow.validation.fiscal_rules import format_brl, parse_localized_number

logger = get_logger(__name__)

_CFOP = re.compile(r"CFOP\b", re.IGNORECASE)
_CST = re.compile(r"CST\b", re.IGNORECASE)
_NCM = re.compile(r"NCM\b", re.IGNORECASE)
_ICMS = re.compile(r"ICMS", re.IGNORECASE)
_IPI = re.compile(r"\bIPI\b", re.IGNORECASE)
_PIS = re.compile(r"\bPIS\b", re.IGNORECASE)
_COFINS = re.compile(r"COFINS", re.IGNORECASE)

# Risk score penalties
_PENALTIES = {
    "missing_field": 4,
    "registry_error": 12,
    "inactive_cnpj": 10,
    "icms_without_cfop": 10,
    "high_value_document": 6,
    "unvalidated_cnpj_document": 8,
    "finding": 2,
}


@dataclass
class RegistrySummary:
    total: int = 0
    active: int = 0
    inactive: int = 0
    errors: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)

    @property
    def validated_cnpjs(self) -> set[str]:
        return {d["cnpj"] for d in self.details if d.get("cnpj")}

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "active": self.active,
            "inactive": self.inactive,
            "errors": self.errors,
            "details": self.details,
        }


def summarize_registry(validations: list[dict[str, Any]]) -> RegistrySummary:
    summary = RegistrySummary(total=len(validations))

    for entry in validations:
        if not entry:
            continue
        if entry.get("error"):
            summary.errors += 1
            summary.details.append({
                "cnpj": normalize_cnpj(entry.get("cnpj")) or entry.get("cnpj"),
                "status": RegistrationStatus.ERROR,
                "message": entry.get("message") or "Unknown error during validation.",
            })
            continue

        situation = str(
            entry.get("descricao_situacao_cadastral") or entry.get("situacao_cadastral") or ""
        ).upper()
        is_active = "ATIVA" in situation or situation == "02"
        if is_active:
            summary.active += 1
        else:
            summary.inactive += 1

        summary.details.append({
            "cnpj": normalize_cnpj(entry.get("cnpj")) or entry.get("cnpj"),
            "status": RegistrationStatus.ACTIVE if is_active else RegistrationStatus.INACTIVE,
            "situation": entry.get("descricao_situacao_cadastral") or entry.get("situacao_cadastral"),
            "companyName": entry.get("razao_social") or entry.get("nome_fantasia"),
        })

    return summary


def audit_document(
    artifact: dict[str, Any],
    validated_cnpjs: set[str],
    high_value_threshold: float,
) -> dict[str, Any]:
    """Findings for one extracted document."""
    text = str(artifact.get("text") or "")
    entities = artifact.get("entities") or {}

    has_cfop = bool(_CFOP.search(text))
    has_cst = bool(_CST.search(text))
    has_ncm = bool(_NCM.search(text))
    has_icms = bool(_ICMS.search(text))
    has_pis = bool(_PIS.search(text))
    has_cofins = bool(_COFINS.search(text))

    missing_fields = []
    if not has_cfop:
        missing_fields.append("CFOP")
    if has_icms and not has_cst:
        missing_fields.append("CST")
    if not has_ncm:
        missing_fields.append("NCM")
    if has_icms and not has_pis:
        missing_fields.append("PIS")
    if has_icms and not has_cofins:
        missing_fields.append("COFINS")

    values = sorted(
        (v for v in (parse_localized_number(m) for m in entities.get("monetaryValues", [])) if v is not None and v >= 0),
        reverse=True,
    )
    estimated_total = values[0] if values else None
    high_value = estimated_total is not None and estimated_total >= high_value_threshold

    detected = [c for c in (normalize_cnpj(c) for c in entities.get("cnpjs", [])) if c]
    unvalidated = [c for c in detected if c not in validated_cnpjs]

    findings = []
    if missing_fields:
        findings.append(f"Missing fields: {', '.join(missing_fields)}")
    if has_icms and not has_cfop:
        findings.append("ICMS mentioned without an explicit CFOP.")
    if unvalidated:
        findings.append(f"CNPJ(s) without registry validation: {', '.join(unvalidated)}")
    if high_value and not has_icms:
        findings.append("High-value document without ICMS mention.")

    return {
        "fileName": artifact.get("fileName"),
        "detectedCnpjs": detected,
        "missingFields": missing_fields,
        "hasIcms": has_icms,
        "hasIpi": bool(_IPI.search(text)),
        "hasPis": has_pis,
        "hasCofins": has_cofins,
        "estimatedTotal": estimated_total,
        "highValue": high_value,
        "icmsWithoutCfop": has_icms and not has_cfop,
        "unvalidatedCnpjs": unvalidated,
        "findings": findings,
        "topMonetaryValues": values[:5],
    }


def calculate_risk_score(counters: dict[str, int]) -> tuple[int, RiskLevel]:
    score = 100 - sum(_PENALTIES[key] * counters.get(key, 0) for key in _PENALTIES)
    score = max(0, min(100, score))
    if score < 55:
        return score, RiskLevel.HIGH
    if score < 80:
        return score, RiskLevel.MEDIUM
    return score, RiskLevel.LOW


def build_recommendations(counters: dict[str, int], registry: RegistrySummary) -> list[str]:
    recommendations = []
    if counters["missing_field"]:
        recommendations.append("Complete missing fiscal fields (CFOP, CST, NCM, PIS, COFINS) before bookkeeping.")
    if registry.inactive or registry.errors:
        recommendations.append("Review suppliers with inactive or invalid CNPJ and request updated records.")
    if counters["icms_without_cfop"]:
        recommendations.append("Confirm the CFOP of invoices with ICMS to avoid disallowed credits.")
    if counters["high_value_document"]:
        recommendations.append("Manually check high-value documents to confirm tax base and taxes.")
    if counters["unvalidated_cnpj_document"]:
        recommendations.append("Run a complementary registry check for CNPJs the registry did not return.")
    if not recommendations:
        recommendations.append("No critical alert found. Keep monitoring upcoming batches.")
    return recommendations


def audit_batch(
    artifacts: list[dict[str, Any]],
    validations: list[dict[str, Any]],
    high_value_threshold: float,
) -> dict[str, Any]:
    registry = summarize_registry(validations)
    documents = [audit_document(a, registry.validated_cnpjs, high_value_threshold) for a in artifacts]

    counters = {
        "missing_field": sum(len(d["missingFields"]) for d in documents),
        "registry_error": registry.errors,
        "inactive_cnpj": registry.inactive,
        "icms_without_cfop": sum(1 for d in documents if d["icmsWithoutCfop"]),
        "high_value_document": sum(1 for d in documents if d["highValue"]),
        "unvalidated_cnpj_document": sum(1 for d in documents if d["unvalidatedCnpjs"]),
        "finding": sum(len(d["findings"]) for d in documents),
    }
    score, level = calculate_risk_score(counters)

    alerts = []
    if registry.errors:
        alerts.append(f"{registry.errors} CNPJ(s) returned an error from the registry.")
    if registry.inactive:
        alerts.append(f"{registry.inactive} CNPJ(s) with inactive registration.")
    if counters["icms_without_cfop"]:
        alerts.append(f"{counters['icms_without_cfop']} invoice(s) with ICMS but no matching CFOP.")
    if counters["high_value_document"]:
        alerts.append(
            f"{counters['high_value_document']} document(s) above R$ {format_brl(high_value_threshold)} need extra attention."
        )

    total_value = sum(d["estimatedTotal"] or 0.0 for d in documents)
    return {
        "summary": {
            "documentsProcessed": len(documents),
            "totalEstimatedValue": round(total_value, 2),
            "totalFindings": counters["finding"],
            "totalMissingFields": counters["missing_field"],
            "highValueDocuments": counters["high_value_document"],
            "documentsWithUnvalidatedCnpj": counters["unvalidated_cnpj_document"],
            "riskScore": score,
            "riskLevel": str(level),
        },
        "validations": registry.to_dict(),
        "documents": documents,
        "alerts": alerts,
        "recommendations": build_recommendations(counters, registry),
    }


class AuditStage(StageAgent):
    name = StageName.AUDIT
    description = "Consolidate registry and fiscal checks into audit findings"
    requires = ("artifacts", "validations")
    failure_label = "Audit failed"
    progress_note = "Consolidating fiscal checks..."

    def __init__(self, bus, store, high_value_threshold: float | None = None) -> None:
        super().__init__(bus, store)
        self.high_value_threshold = high_value_threshold or settings.AUDIT_HIGH_VALUE_THRESHOLD

    async def run(self, job_id: str, payload: PipelinePayload) -> StageOutcome:
        findings = audit_batch(payload.artifacts, payload.validations, self.high_value_threshold)
        summary = findings["summary"]

        logger.info(
            "Audit completed",
            job_id=job_id,
            documents=summary["documentsProcessed"],
            risk_score=summary["riskScore"],
            risk_level=summary["riskLevel"],
            findings=summary["totalFindings"],
        )

        if summary["totalFindings"]:
            info = f"Audit finished: {summary['totalFindings']} finding(s) recorded."
        else:
            info = "Audit finished with no critical finding."
        return StageOutcome(contributions={"audit_findings": findings}, info=info)
