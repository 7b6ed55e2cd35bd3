"""Shared fixtures: scripted collaborators and sample fiscal documents."""

from __future__ import annotations

import json
from typing import Any, Callable

import pytest

from fiscalflow.events.bus import EventBus
from fiscalflow.events.models import ToolCall
from fiscalflow.integrations.inference import InferenceRequest, InferenceResponse
from fiscalflow.pipeline.errors import ExternalLookupError
from fiscalflow.processing.entities import normalize_cnpj
from fiscalflow.store.cache import InMemoryCache, SemanticCache
from fiscalflow.store.job_store import InMemoryJobStore


# ─── Sample documents ─────────────────────────────────────

NFE_HIGH_VALUE = """NOTA FISCAL ELETRONICA - NF-e 1001
Emitente: Agro Sul Ltda CNPJ 12.345.678/0001-95
Natureza da operacao: Venda de producao
CFOP 5102
CST 000
NCM 1001.99.00
Base de Calculo do ICMS: 150.000,00
Aliquota ICMS: 18%
Valor do ICMS: 27.000,00
PIS 975,00
COFINS 4.500,00
Valor Total da Nota: R$ 150.000,00
"""

NFE_XML_DIVERGENT = """<NFe>
<emit>
<CNPJ>98765432000110</CNPJ>
</emit>
<prod>
<NCM>84713012</NCM>
<CFOP>1102</CFOP>
</prod>
<ICMS>
<CST>00</CST>
<vBC>1000.00</vBC>
<pICMS>18.00</pICMS>
<vICMS>150.00</vICMS>
</ICMS>
<PIS/>
<COFINS/>
</NFe>
"""

SERVICE_RECEIPT = """Recibo de prestacao de servico de transporte
Prestador: Logistica Rapida CNPJ 11.222.333/0001-81
Valor: R$ 2.500,00
"""


def sample_files() -> list[dict[str, Any]]:
    return [
        {"fileName": "nfe-1001.txt", "content": NFE_HIGH_VALUE},
        {"fileName": "nfe-2002.xml", "content": NFE_XML_DIVERGENT},
        {"fileName": "recibo-3003.txt", "content": SERVICE_RECEIPT},
    ]


# ─── Scripted collaborators ───────────────────────────────

class ScriptedProvider:
    """
    Inference provider answering from a script.

    ``script`` is called with each request and returns the response; every
    request is kept in ``requests``.
    """

    def __init__(self, script: Callable[[InferenceRequest], InferenceResponse]) -> None:
        self.script = script
        self.requests: list[InferenceRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def generate(self, request: InferenceRequest) -> InferenceResponse:
        self.requests.append(request)
        return self.script(request)


ANALYSIS_ANSWER = {
    "title": "Batch analysis",
    "description": "Three documents, one ICMS divergence.",
    "keyMetrics": {
        "validDocuments": 3,
        "totalInvoiceValue": 153500.0,
        "totalProductValue": 153500.0,
        "icmsComplianceIndex": "66.7%",
        "taxRiskLevel": "Medium",
    },
    "actionableInsights": [{"text": "Correct the ICMS of nfe-2002."}],
    "simulationResult": None,
}


def analysis_script(with_tool: bool = True) -> Callable[[InferenceRequest], InferenceResponse]:
    """Ask for tax_simulation first (when ``with_tool``), then answer with the summary."""
    def script(request: InferenceRequest) -> InferenceResponse:
        if with_tool and not request.tool_exchanges:
            return InferenceResponse(tool_call=ToolCall(
                name="tax_simulation",
                args={"baseValue": 151000.0, "taxRegime": "Lucro Real"},
            ))
        return InferenceResponse(text=f"```json\n{json.dumps(ANALYSIS_ANSWER)}\n```")

    return script


class FakeRegistryClient:
    """Registry answering ATIVA for every CNPJ except those listed in ``failing``."""

    def __init__(self, failing: set[str] | None = None, inactive: set[str] | None = None) -> None:
        self.failing = {normalize_cnpj(c) for c in failing or set()}
        self.inactive = {normalize_cnpj(c) for c in inactive or set()}
        self.lookups: list[str] = []
        self.closed = False

    async def lookup_cnpj(self, cnpj: str) -> dict[str, Any]:
        digits = normalize_cnpj(cnpj)
        self.lookups.append(digits or cnpj)
        if digits is None or digits in self.failing:
            raise ExternalLookupError("Registry returned 404", identifier=cnpj, status_code=404)
        return {
            "cnpj": digits,
            "razao_social": f"Empresa {digits[:4]}",
            "descricao_situacao_cadastral": "BAIXADA" if digits in self.inactive else "ATIVA",
        }

    async def validate_cnpj(self, cnpj: str) -> dict[str, Any]:
        try:
            return await self.lookup_cnpj(cnpj)
        except ExternalLookupError as exc:
            return {"error": True, "message": str(exc), "cnpj": cnpj}

    async def aclose(self) -> None:
        self.closed = True


# ─── Fixtures ─────────────────────────────────────────────

@pytest.fixture
def bus() -> EventBus:
    return EventBus(name="test")


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def cache() -> SemanticCache:
    return SemanticCache(InMemoryCache(), ttl_seconds=60)


@pytest.fixture
def registry() -> FakeRegistryClient:
    return FakeRegistryClient()
