"""
Tools the inference provider may ask the pipeline to run, and the
executor that runs them.

``ToolExecutor`` is the consumer side of the Tool-Call Bridge: it takes
``tool:run``, executes the named function and answers with
``orchestrator:tool_completed`` for the originating stage.  When the
tool is unknown or raises, the stage is failed with ``task:failed``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from fiscalflow.core.constants import EventName, TaxRegime
from fiscalflow.core.logging import get_logger
from fiscalflow.events.bus import EventBus
from fiscalflow.events.models import TaskFailedEvent, ToolCompletedEvent, ToolRunEvent
from fiscalflow.integrations.registry_client import RegistryClient
from fiscalflow.pipeline.errors import ToolInvocationError

if TYPE_CHECKING:
    from fiscalflow.pipeline.tool_bridge import ToolCallBridge

logger = get_logger(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]

TAX_RATES: dict[str, float] = {
    TaxRegime.LUCRO_REAL: 0.34,
}
DEFAULT_TAX_RATE = 0.15


@dataclass(frozen=True)
class RegisteredTool:
    name: str
    handler: ToolHandler
    declaration: dict[str, Any]


class ToolRegistry:
    """Name → tool handler plus the function declaration shown to the model."""

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(self, name: str, handler: ToolHandler, declaration: dict[str, Any]) -> None:
        self._tools[name] = RegisteredTool(name=name, handler=handler, declaration=declaration)

    def get(self, name: str) -> RegisteredTool | None:
        return self._tools.get(name)

    def declarations(self) -> list[dict[str, Any]]:
        return [tool.declaration for tool in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools


# ═══════════════════════════════════════════════════════════
#  Tools
# ═══════════════════════════════════════════════════════════

async def tax_simulation(args: dict[str, Any]) -> dict[str, Any]:
    """Tax due on ``baseValue`` under ``taxRegime`` (34% Lucro Real, 15% otherwise)."""
    regime = str(args.get("taxRegime") or TaxRegime.LUCRO_PRESUMIDO)
    try:
        base_value = float(args.get("baseValue"))
    except (TypeError, ValueError) as exc:
        raise ToolInvocationError(
            f"tax_simulation needs a numeric baseValue, got {args.get('baseValue')!r}",
            tool_name="tax_simulation",
        ) from exc

    rate = TAX_RATES.get(regime, DEFAULT_TAX_RATE)
    return {
        "success": True,
        "details": {
            "regime": regime,
            "baseValue": base_value,
            "calculatedTax": round(base_value * rate, 2),
            "effectiveRate": f"{rate * 100:.2f}%",
        },
    }


TAX_SIMULATION_DECLARATION: dict[str, Any] = {
    "name": "tax_simulation",
    "description": "Simulates the tax due on a base value under a Brazilian tax regime.",
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "baseValue": {"type": "NUMBER", "description": "Total value the tax applies to."},
            "taxRegime": {
                "type": "STRING",
                "description": "Tax regime: 'Lucro Real', 'Lucro Presumido' or 'Simples Nacional'.",
            },
        },
        "required": ["baseValue", "taxRegime"],
    },
}

CNPJ_VALIDATION_DECLARATION: dict[str, Any] = {
    "name": "cnpj_validation",
    "description": "Looks up a CNPJ in the company registry and returns its profile.",
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "cnpj": {"type": "STRING", "description": "CNPJ, formatted or digits only."},
        },
        "required": ["cnpj"],
    },
}


def build_default_registry(registry_client: RegistryClient | None = None) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register("tax_simulation", tax_simulation, TAX_SIMULATION_DECLARATION)

    if registry_client is not None:
        async def cnpj_validation(args: dict[str, Any]) -> dict[str, Any]:
            return await registry_client.validate_cnpj(str(args.get("cnpj") or ""))

        registry.register("cnpj_validation", cnpj_validation, CNPJ_VALIDATION_DECLARATION)
    return registry


# ═══════════════════════════════════════════════════════════
#  Executor
# ═══════════════════════════════════════════════════════════

class ToolExecutor:
    def __init__(
        self,
        bus: EventBus,
        registry: ToolRegistry,
        bridge: ToolCallBridge | None = None,
    ) -> None:
        self.bus = bus
        self.registry = registry
        self.bridge = bridge

    def register(self) -> None:
        self.bus.subscribe(EventName.TOOL_RUN, self.on_tool_run)

    def _stage_for(self, event: ToolRunEvent) -> str | None:
        if event.stage_name:
            return event.stage_name
        pending = self.bridge.pending(event.job_id) if self.bridge is not None else None
        return pending.stage_name if pending is not None else None

    async def on_tool_run(self, event: ToolRunEvent) -> None:
        name = event.tool_call.name
        stage_name = self._stage_for(event)
        log = logger.bind(job_id=event.job_id, stage=stage_name, tool=name)

        try:
            tool = self.registry.get(name)
            if tool is None:
                raise ToolInvocationError(f"Unknown tool '{name}'", tool_name=name)
            log.info("Running tool", args=event.tool_call.args)
            result = await tool.handler(dict(event.tool_call.args))
        except Exception as exc:
            log.error("Tool execution failed", error=str(exc))
            if stage_name is None:
                return
            self.bus.publish(
                EventName.TASK_FAILED,
                TaskFailedEvent(
                    job_id=event.job_id,
                    task_name=stage_name,
                    error=f"Tool '{name}' failed: {exc}",
                ),
            )
            return

        log.info("Tool completed")
        self.bus.publish(
            EventName.TOOL_COMPLETED,
            ToolCompletedEvent(
                job_id=event.job_id,
                stage_name=stage_name,
                tool_name=name,
                tool_result=result,
                original_payload=event.payload,
                prompt=event.prompt,
            ),
        )
