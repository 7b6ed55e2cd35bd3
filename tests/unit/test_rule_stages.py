import pytest

from fiscalflow.core.constants import RiskLevel
from fiscalflow.pipeline.context import PipelinePayload
from fiscalflow.pipeline.errors import StageExecutionError
from fiscalflow.pipeline.stages.audit import AuditStage, audit_batch, calculate_risk_score, summarize_registry
from fiscalflow.pipeline.stages.classification import (
    ClassificationStage,
    operation_from_cfops,
    risk_level,
    sector_from_ncms,
)
from fiscalflow.pipeline.stages.extraction import ExtractionStage
from fiscalflow.pipeline.stages.indexing import IndexingStage
from fiscalflow.integrations.vector_index import InMemoryVectorIndex
from fiscalflow.validation.fiscal_rules import run_fiscal_checks

from conftest import NFE_HIGH_VALUE, NFE_XML_DIVERGENT, SERVICE_RECEIPT, sample_files


async def _extracted(bus, store):
    stage = ExtractionStage(bus, store)
    outcome = await stage.run("j1", PipelinePayload.from_wire({"files": sample_files()}))
    return outcome.contributions


# ─── Extraction ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_extraction_produces_artifacts_and_quality_report(bus, store):
    contributions = await _extracted(bus, store)

    artifacts = contributions["artifacts"]
    assert [a["format"] for a in artifacts] == ["text", "xml", "text"]
    assert artifacts[0]["entities"]["cnpjs"] == ["12.345.678/0001-95"]
    assert len(contributions["file_contents"]) == 3
    assert contributions["data_quality_report"]["totals"]["errors"] == 0
    assert contributions["processing_metrics"]["filesReceived"] == 3


@pytest.mark.asyncio
async def test_extraction_flags_empty_and_duplicate_files(bus, store):
    stage = ExtractionStage(bus, store)
    outcome = await stage.run("j1", PipelinePayload.from_wire({"files": [
        {"fileName": "a.txt", "content": "CFOP 5102"},
        {"fileName": "b.txt", "content": "CFOP 5102"},
        {"fileName": "c.txt", "content": "   "},
    ]}))

    report = outcome.contributions["data_quality_report"]
    assert report["files"][1]["warnings"] == ["Duplicate content of a.txt."]
    assert report["files"][2]["issues"] == ["File has no content."]
    assert len(outcome.contributions["file_contents"]) == 2


@pytest.mark.asyncio
async def test_extraction_without_files_fails(bus, store):
    with pytest.raises(StageExecutionError):
        await ExtractionStage(bus, store).run("j1", PipelinePayload.from_wire({"files": []}))


# ─── Audit ────────────────────────────────────────────────

def test_registry_summary_counts_statuses():
    summary = summarize_registry([
        {"cnpj": "12345678000195", "descricao_situacao_cadastral": "ATIVA", "razao_social": "A"},
        {"cnpj": "98765432000110", "descricao_situacao_cadastral": "BAIXADA"},
        {"error": True, "message": "Registry returned 404", "cnpj": "11.222.333/0001-81"},
    ])
    assert (summary.active, summary.inactive, summary.errors) == (1, 1, 1)
    assert summary.validated_cnpjs == {"12345678000195", "98765432000110", "11222333000181"}


@pytest.mark.parametrize(
    ("counters", "expected"),
    [
        ({}, (100, RiskLevel.LOW)),
        ({"missing_field": 5}, (80, RiskLevel.LOW)),
        ({"missing_field": 5, "finding": 1}, (78, RiskLevel.MEDIUM)),
        ({"registry_error": 4}, (52, RiskLevel.HIGH)),
        ({"registry_error": 20}, (0, RiskLevel.HIGH)),
    ],
)
def test_risk_score(counters, expected):
    assert calculate_risk_score(counters) == expected


@pytest.mark.asyncio
async def test_audit_batch_findings(bus, store):
    contributions = await _extracted(bus, store)
    validations = [{"cnpj": "12345678000195", "descricao_situacao_cadastral": "ATIVA"}]

    findings = audit_batch(contributions["artifacts"], validations, 100000.0)

    docs = {d["fileName"]: d for d in findings["documents"]}
    assert docs["nfe-1001.txt"]["highValue"] is True
    assert docs["nfe-1001.txt"]["missingFields"] == []
    assert docs["nfe-2002.xml"]["unvalidatedCnpjs"] == ["98765432000110"]
    assert docs["recibo-3003.txt"]["missingFields"] == ["CFOP", "NCM"]
    assert findings["summary"]["highValueDocuments"] == 1
    assert any("100.000,00" in alert for alert in findings["alerts"])


@pytest.mark.asyncio
async def test_audit_stage_contributes_findings(bus, store):
    contributions = await _extracted(bus, store)
    payload = PipelinePayload.from_wire({"artifacts": contributions["artifacts"], "validations": []})

    outcome = await AuditStage(bus, store).run("j1", payload)

    summary = outcome.contributions["audit_findings"]["summary"]
    assert summary["documentsProcessed"] == 3
    assert summary["riskLevel"] in {"Low", "Medium", "High"}


# ─── Classification ──────────────────────────────────────

def test_operation_from_cfop_first_digit():
    assert operation_from_cfops(["5102"]) == "sale"
    assert operation_from_cfops(["1102"]) == "purchase"
    assert operation_from_cfops(["7101"]) == "service"
    assert operation_from_cfops([]) is None


def test_sector_from_ncm_chapter():
    assert sector_from_ncms(["84713012"]) == "industry"
    assert sector_from_ncms(["0201.10.00"]) == "agribusiness"
    assert sector_from_ncms(["99999999"]) is None


def test_risk_level_thresholds():
    assert risk_level(4) == RiskLevel.LOW
    assert risk_level(5) == RiskLevel.MEDIUM
    assert risk_level(10) == RiskLevel.HIGH


@pytest.mark.asyncio
async def test_classification_per_document(bus, store):
    contributions = await _extracted(bus, store)
    artifacts = contributions["artifacts"]
    validations = [
        {"cnpj": "12345678000195", "descricao_situacao_cadastral": "ATIVA"},
        {"cnpj": "98765432000110", "descricao_situacao_cadastral": "ATIVA"},
        {"cnpj": "11222333000181", "descricao_situacao_cadastral": "ATIVA"},
    ]
    payload = PipelinePayload.from_wire({
        "artifacts": artifacts,
        "validations": validations,
        "fiscalChecks": run_fiscal_checks([
            ("nfe-1001.txt", NFE_HIGH_VALUE),
            ("nfe-2002.xml", NFE_XML_DIVERGENT),
            ("recibo-3003.txt", SERVICE_RECEIPT),
        ]),
        "auditFindings": audit_batch(artifacts, validations, 100000.0),
    })

    outcome = await ClassificationStage(bus, store).run("j1", payload)

    docs = {d["fileName"]: d for d in outcome.contributions["classifications"]["documents"]}
    assert docs["nfe-1001.txt"]["operationType"] == "sale"
    assert docs["nfe-2002.xml"]["operationType"] == "purchase"
    assert docs["nfe-2002.xml"]["sector"] == "industry"
    assert "ICMS diverges from the stated base" in docs["nfe-2002.xml"]["riskDrivers"]
    assert docs["recibo-3003.txt"]["operationType"] == "service"
    assert docs["recibo-3003.txt"]["sector"] == "transport"

    summary = outcome.contributions["classifications"]["summary"]
    assert summary["totalDocuments"] == 3
    assert sum(summary["byRisk"].values()) == 3


@pytest.mark.asyncio
async def test_classification_marks_unconfirmed_cnpjs(bus, store):
    contributions = await _extracted(bus, store)
    artifacts = contributions["artifacts"]
    payload = PipelinePayload.from_wire({
        "artifacts": artifacts,
        "validations": [],
        "auditFindings": audit_batch(artifacts, [], 100000.0),
    })

    outcome = await ClassificationStage(bus, store).run("j1", payload)

    for doc in outcome.contributions["classifications"]["documents"]:
        assert doc["riskLevel"] in {"Medium", "High"}
        assert any("without registry confirmation" in issue for issue in doc["issues"])


# ─── Indexing ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_indexing_chunks_content(bus, store):
    index = InMemoryVectorIndex()
    stage = IndexingStage(bus, store, index, chunk_size=10)
    payload = PipelinePayload.from_wire({"fileContents": [{"fileName": "a.txt", "content": "x" * 25}]})

    outcome = await stage.run("j1", payload)

    assert outcome.contributions["indexing"] == {"chunksIndexed": 3, "files": 1}
    assert index.count("j1") == 3


@pytest.mark.asyncio
async def test_indexing_with_no_content_completes(bus, store):
    stage = IndexingStage(bus, store, InMemoryVectorIndex())

    outcome = await stage.run("j1", PipelinePayload.from_wire({"fileContents": []}))

    assert outcome.contributions["indexing"] == {"chunksIndexed": 0, "files": 0}
    assert outcome.info == "No content to index."
