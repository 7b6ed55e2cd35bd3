"""
FlowResolver — maps a flow name to the ordered stage sequence of a job.

The Dispatcher stores the resolved sequence in the job's pipeline when
the job is created, so a job keeps its flow even if the registry changes
while it runs.

To add a new flow:
    1. Write a builder returning a list of StageDefinition
    2. Register it in FLOW_REGISTRY below
    3. Make sure every stage it names has an agent registered on the bus
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from fiscalflow.core.constants import StageName
from fiscalflow.core.logging import get_logger
from fiscalflow.pipeline.errors import FlowResolutionError

logger = get_logger(__name__)


@dataclass(frozen=True)
class StageDefinition:
    """A stage slot in a flow: the agent name and its display label."""

    name: str
    label: str


STAGE_LABELS: dict[str, str] = {
    StageName.EXTRACTION: "Data Extraction",
    StageName.VALIDATION: "Registry & Fiscal Validation",
    StageName.AUDIT: "Fiscal Audit",
    StageName.CLASSIFICATION: "Fiscal Classification",
    StageName.ANALYSIS: "Executive Analysis",
    StageName.INDEXING: "Content Indexing",
}


def _numbered(names: list[str]) -> list[StageDefinition]:
    return [
        StageDefinition(name=name, label=f"{position}. {STAGE_LABELS.get(name, name)}")
        for position, name in enumerate(names, start=1)
    ]


def _default_flow() -> list[StageDefinition]:
    """
    Full flow.

    extraction → validation → audit → classification → analysis → indexing
    """
    return _numbered([
        StageName.EXTRACTION,
        StageName.VALIDATION,
        StageName.AUDIT,
        StageName.CLASSIFICATION,
        StageName.ANALYSIS,
        StageName.INDEXING,
    ])


def _deterministic_flow() -> list[StageDefinition]:
    """
    Rule-based stages only, no inference provider involved.

    extraction → validation → audit → classification
    """
    return _numbered([
        StageName.EXTRACTION,
        StageName.VALIDATION,
        StageName.AUDIT,
        StageName.CLASSIFICATION,
    ])


# ═══════════════════════════════════════════════════════════
#  Flow Registry
# ═══════════════════════════════════════════════════════════

FLOW_REGISTRY: dict[str, Callable[[], list[StageDefinition]]] = {
    "DEFAULT": _default_flow,
    "DETERMINISTIC": _deterministic_flow,
}


class FlowResolver:
    """
    Resolves a flow name to an ordered list of stage definitions.

    Unknown or empty names fall back to "DEFAULT".
    """

    def __init__(self, registry: dict[str, Callable[[], list[StageDefinition]]] | None = None) -> None:
        self.registry = registry or FLOW_REGISTRY

    def resolve(self, flow_name: str | None = None) -> list[StageDefinition]:
        """
        Return the ordered stage list for ``flow_name``.

        Raises:
            FlowResolutionError: If no matching flow is found and no DEFAULT,
                or the flow has no stages.
        """
        key = (flow_name or "DEFAULT").upper()

        if key in self.registry:
            stages = self.registry[key]()
            logger.debug("Flow resolved", flow=key, stages=[s.name for s in stages])
        elif "DEFAULT" in self.registry:
            logger.info("Unknown flow, using DEFAULT", flow=flow_name)
            stages = self.registry["DEFAULT"]()
        else:
            raise FlowResolutionError(
                f"No flow registered for '{flow_name}' and no DEFAULT flow",
                stage_name="flow_resolution",
            )

        if not stages:
            raise FlowResolutionError(f"Flow '{key}' has no stages", stage_name="flow_resolution")
        return stages

    def list_available_flows(self) -> list[str]:
        """Return all registered flow keys."""
        return list(self.registry.keys())
