"""
Pipeline orchestration — Dispatcher, stage contract, payload and flows.
"""

from fiscalflow.pipeline.context import PipelinePayload, StageOutcome
from fiscalflow.pipeline.dispatcher import PipelineDispatcher
from fiscalflow.pipeline.flow_resolver import FlowResolver, StageDefinition
from fiscalflow.pipeline.stage import StageAgent

__all__ = [
    "PipelineDispatcher",
    "PipelinePayload",
    "StageOutcome",
    "StageAgent",
    "FlowResolver",
    "StageDefinition",
]
