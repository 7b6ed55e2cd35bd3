"""
ClassificationStage — derives the fiscal context of each document.

Operation type comes from the CFOP (first digit) or, failing that, from
keywords in the text.  Sector comes from the NCM chapter or keywords.
Each document gets a risk score built from its audit findings and fiscal
checks.
"""

from __future__ import annotations

import re
from typing import Any

from fiscalflow.core.config import settings
from fiscalflow.core.constants import OperationType, RiskLevel, Sector, StageName
from fiscalflow.core.logging import get_logger
from fiscalflow.pipeline.context import PipelinePayload, StageOutcome
from fiscalflow.pipeline.stage import StageAgent
from fiscalflow.processing.entities import normalize_cnpj

logger = get_logger(__name__)

_NCM_IN_TEXT = re.compile(r"NCM[\s:=-]*([0-9]{4,8})", re.IGNORECASE)

_OPERATION_KEYWORDS: list[tuple[OperationType, re.Pattern]] = [
    (OperationType.SERVICE, re.compile(r"presta[çc][ãa]o\s+de\s+servi[çc]o|servi[çc]o")),
    (OperationType.SALE, re.compile(r"venda|sa[ií]da")),
    (OperationType.PURCHASE, re.compile(r"compra|entrada")),
]

_SECTOR_KEYWORDS: list[tuple[Sector, re.Pattern]] = [
    (Sector.AGRIBUSINESS, re.compile(r"fazenda|agro|safra|gr[aã]o")),
    (Sector.INDUSTRY, re.compile(r"f[aá]brica|industrial|produ[çc][ãa]o")),
    (Sector.RETAIL, re.compile(r"loja|varejo|atacado")),
    (Sector.TRANSPORT, re.compile(r"transporte|log[ií]stica|frete")),
]

# NCM chapter prefixes
_SECTOR_CHAPTERS: list[tuple[Sector, tuple[str, ...]]] = [
    (Sector.AGRIBUSINESS, ("01", "02", "03")),
    (Sector.INDUSTRY, ("84", "85", "86")),
    (Sector.TRANSPORT, ("87", "88", "89", "90")),
    (Sector.RETAIL, ("39", "48", "49", "64")),
]


def operation_from_cfops(cfops: list[str]) -> OperationType | None:
    if any(code[:1] in ("5", "6") for code in cfops):
        return OperationType.SALE
    if any(code[:1] in ("1", "2") for code in cfops):
        return OperationType.PURCHASE
    if any(code[:1] in ("3", "7") for code in cfops):
        return OperationType.SERVICE
    return None


def operation_from_text(text: str) -> OperationType | None:
    lower = text.lower()
    for operation, pattern in _OPERATION_KEYWORDS:
        if pattern.search(lower):
            return operation
    return None


def sector_from_ncms(ncms: list[str]) -> Sector | None:
    for code in ncms:
        digits = code.replace(".", "")
        for sector, chapters in _SECTOR_CHAPTERS:
            if digits.startswith(chapters):
                return sector
    return None


def sector_from_text(text: str) -> Sector | None:
    lower = text.lower()
    for sector, pattern in _SECTOR_KEYWORDS:
        if pattern.search(lower):
            return sector
    return None


def document_risk(
    audit_doc: dict[str, Any],
    fiscal_doc: dict[str, Any],
    high_value_threshold: float,
) -> tuple[int, list[str]]:
    score = 0
    drivers = []

    findings = len(audit_doc.get("findings") or [])
    if findings:
        score += findings * 3
        drivers.append(f"{findings} audit finding(s)")
    missing = len(audit_doc.get("missingFields") or [])
    if missing:
        score += missing * 2
        drivers.append(f"{missing} missing fiscal field(s)")
    estimated_total = audit_doc.get("estimatedTotal")
    if estimated_total and estimated_total >= high_value_threshold:
        score += 3
        drivers.append("High-value document")

    if fiscal_doc:
        if fiscal_doc.get("icmsConsistent") is False:
            score += 6
            drivers.append("ICMS diverges from the stated base")
        if not fiscal_doc.get("cfops"):
            score += 2
            drivers.append("No CFOP identified")
        if not fiscal_doc.get("csts"):
            score += 2
            drivers.append("No CST identified")

    return score, drivers


def risk_level(score: int) -> RiskLevel:
    if score >= 10:
        return RiskLevel.HIGH
    if score >= 5:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def classify_document(
    artifact: dict[str, Any],
    audit_doc: dict[str, Any],
    fiscal_doc: dict[str, Any],
    confirmed_cnpjs: set[str],
    high_value_threshold: float,
) -> dict[str, Any]:
    text = str(artifact.get("text") or "")
    cfops = list(fiscal_doc.get("cfops") or [])
    ncms = list(fiscal_doc.get("ncms") or []) or list(dict.fromkeys(_NCM_IN_TEXT.findall(text)))

    operation = operation_from_cfops(cfops) or operation_from_text(text) or OperationType.UNKNOWN
    sector = sector_from_ncms(ncms) or sector_from_text(text) or Sector.OTHER

    score, drivers = document_risk(audit_doc, fiscal_doc, high_value_threshold)
    level = risk_level(score)

    issues = []
    if audit_doc.get("missingFields"):
        issues.append(f"Pending fields: {', '.join(audit_doc['missingFields'])}")
    issues.extend(audit_doc.get("findings") or [])
    issues.extend(fiscal_doc.get("observations") or [])
    issues = list(dict.fromkeys(issues))

    unconfirmed = [c for c in audit_doc.get("detectedCnpjs") or [] if c not in confirmed_cnpjs]
    if unconfirmed:
        issues.append(f"CNPJ(s) without registry confirmation: {', '.join(unconfirmed)}")
        drivers.append("CNPJ without registry confirmation")
        if level != RiskLevel.HIGH:
            level = RiskLevel.MEDIUM

    return {
        "fileName": artifact.get("fileName") or "unknown",
        "operationType": str(operation),
        "sector": str(sector),
        "riskLevel": str(level),
        "riskScore": score,
        "riskDrivers": drivers,
        "issues": issues,
        "cfops": cfops,
        "ncms": ncms,
        "findings": list(audit_doc.get("findings") or []),
        "missingFields": list(audit_doc.get("missingFields") or []),
        "estimatedTotal": audit_doc.get("estimatedTotal"),
    }


def summarize_classifications(documents: list[dict[str, Any]]) -> dict[str, Any]:
    by_operation = {str(o): 0 for o in OperationType}
    by_sector = {str(s): 0 for s in Sector}
    by_risk = {str(r): 0 for r in RiskLevel}
    pending = 0

    for doc in documents:
        by_operation[doc["operationType"]] += 1
        by_sector[doc["sector"]] += 1
        by_risk[doc["riskLevel"]] += 1
        if doc["issues"]:
            pending += 1

    recommendations = []
    if by_risk[RiskLevel.HIGH]:
        recommendations.append("Prioritise manual review of documents classified as high risk.")
    if pending:
        recommendations.append("Resolve pending fiscal fields before bookkeeping.")
    if by_operation[OperationType.PURCHASE] > by_operation[OperationType.SALE]:
        recommendations.append("Assess tax credits on the highlighted purchase operations.")
    if not recommendations:
        recommendations.append("No critical pending item found in the fiscal classification.")

    return {
        "totalDocuments": len(documents),
        "byOperationType": by_operation,
        "bySector": by_sector,
        "byRisk": by_risk,
        "documentsWithPendingIssues": pending,
        "recommendations": recommendations,
    }


def _confirmed_cnpjs(validations: list[dict[str, Any]]) -> set[str]:
    confirmed = set()
    for entry in validations:
        if not entry or entry.get("error"):
            continue
        cnpj = normalize_cnpj(entry.get("cnpj"))
        if cnpj:
            confirmed.add(cnpj)
    return confirmed


class ClassificationStage(StageAgent):
    name = StageName.CLASSIFICATION
    description = "Classify operation type, sector and risk per document"
    requires = ("artifacts",)
    failure_label = "Fiscal classification failed"
    progress_note = "Deriving fiscal context per document..."

    def __init__(self, bus, store, high_value_threshold: float | None = None) -> None:
        super().__init__(bus, store)
        self.high_value_threshold = high_value_threshold or settings.AUDIT_HIGH_VALUE_THRESHOLD

    async def run(self, job_id: str, payload: PipelinePayload) -> StageOutcome:
        fiscal_docs = {d.get("fileName"): d for d in (payload.fiscal_checks or {}).get("documents", [])}
        audit_docs = {d.get("fileName"): d for d in (payload.audit_findings or {}).get("documents", [])}
        confirmed = _confirmed_cnpjs(payload.validations or [])

        documents = [
            classify_document(
                artifact,
                audit_docs.get(artifact.get("fileName"), {}),
                fiscal_docs.get(artifact.get("fileName"), {}),
                confirmed,
                self.high_value_threshold,
            )
            for artifact in payload.artifacts
        ]
        summary = summarize_classifications(documents)

        logger.info(
            "Classification completed",
            job_id=job_id,
            documents=len(documents),
            high_risk=summary["byRisk"][RiskLevel.HIGH],
        )
        info = (
            f"{len(documents)} document(s) classified, {summary['byRisk'][RiskLevel.HIGH]} high risk, "
            f"{summary['documentsWithPendingIssues']} with pending issues."
        )
        return StageOutcome(
            contributions={"classifications": {"summary": summary, "documents": documents}},
            info=info,
        )
