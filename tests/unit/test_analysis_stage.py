import pytest

from fiscalflow.core.constants import EventName, StepStatus, ToolCallState
from fiscalflow.events.models import TaskStartEvent
from fiscalflow.integrations.inference import InferenceResponse
from fiscalflow.integrations.tools import ToolExecutor, build_default_registry
from fiscalflow.pipeline.context import PipelinePayload
from fiscalflow.pipeline.stages.analysis import AnalysisStage
from fiscalflow.pipeline.tool_bridge import ToolCallBridge
from fiscalflow.store.job_store import PipelineStep

from conftest import ANALYSIS_ANSWER, ScriptedProvider, analysis_script

PAYLOAD = PipelinePayload.from_wire({
    "fileContents": [{"fileName": "nfe-1001.txt", "content": "Valor Total da Nota: R$ 150.000,00"}],
    "auditFindings": {"summary": {"riskScore": 80}},
})


def _stage(bus, store, provider, cache=None):
    registry = build_default_registry()
    return AnalysisStage(bus, store, provider, ToolCallBridge(bus), cache=cache, tool_registry=registry), registry


@pytest.fixture
def events(bus):
    received = {"completed": [], "failed": []}

    async def on_completed(event):
        received["completed"].append(event)

    async def on_failed(event):
        received["failed"].append(event)

    bus.subscribe(EventName.TASK_COMPLETED, on_completed)
    bus.subscribe(EventName.TASK_FAILED, on_failed)
    return received


@pytest.mark.asyncio
async def test_cache_hit_skips_provider_and_reproduces_outcome(bus, store, cache):
    provider = ScriptedProvider(analysis_script(with_tool=False))
    stage, _ = _stage(bus, store, provider, cache)

    first = await stage.run("j1", PAYLOAD)
    second = await stage.run("j1", PAYLOAD)

    assert provider.calls == 1
    assert first.from_cache is False
    assert second.from_cache is True
    assert second.contributions == first.contributions
    assert second.info == first.info
    assert second.result_payload["executiveSummary"]["title"] == ANALYSIS_ANSWER["title"]


@pytest.mark.asyncio
async def test_cache_is_scoped_by_job(bus, store, cache):
    provider = ScriptedProvider(analysis_script(with_tool=False))
    stage, _ = _stage(bus, store, provider, cache)

    await stage.run("j1", PAYLOAD)
    await stage.run("j2", PAYLOAD)

    assert provider.calls == 2


@pytest.mark.asyncio
async def test_prompt_carries_threshold_and_summaries(bus, store):
    provider = ScriptedProvider(analysis_script(with_tool=False))
    stage, _ = _stage(bus, store, provider)

    await stage.run("j1", PAYLOAD)

    request = provider.requests[0]
    assert "tax_simulation" in request.prompt
    assert "AUDIT SUMMARY" in request.prompt
    assert "nfe-1001.txt" in request.prompt
    assert [t["name"] for t in request.tools] == ["tax_simulation"]


@pytest.mark.asyncio
async def test_tool_request_suspends_then_resumes_once(bus, store, events):
    provider = ScriptedProvider(analysis_script(with_tool=True))
    stage, registry = _stage(bus, store, provider)
    stage.register()
    ToolExecutor(bus, registry).register()
    await store.create("j1", [PipelineStep(index=0, name="analysis", status=StepStatus.IN_PROGRESS)])

    bus.publish(EventName.TASK_START, TaskStartEvent(job_id="j1", task_name="analysis", payload=PAYLOAD.to_wire()))
    await bus.drain(timeout=2)

    assert provider.calls == 2
    assert provider.requests[1].tool_exchanges[0].name == "tax_simulation"
    assert events["failed"] == []
    assert len(events["completed"]) == 1

    result = events["completed"][0].result_payload
    assert result["simulationResult"]["details"]["calculatedTax"] == 51340.0
    assert result["executiveSummary"]["simulationResult"] == result["simulationResult"]
    assert (await store.get("j1")).pipeline[0].status == StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_malformed_answer_fails_the_stage(bus, store, events):
    provider = ScriptedProvider(lambda request: InferenceResponse(text="not json at all"))
    stage, _ = _stage(bus, store, provider)
    stage.register()
    await store.create("j1", [PipelineStep(index=0, name="analysis", status=StepStatus.IN_PROGRESS)])

    bus.publish(EventName.TASK_START, TaskStartEvent(job_id="j1", task_name="analysis", payload=PAYLOAD.to_wire()))
    await bus.drain(timeout=1)

    assert events["completed"] == []
    assert events["failed"][0].error.startswith("AI analysis failed: ")


@pytest.mark.asyncio
async def test_missing_input_fails_with_field_name(bus, store, events):
    provider = ScriptedProvider(analysis_script(with_tool=False))
    stage, _ = _stage(bus, store, provider)
    stage.register()
    await store.create("j1", [PipelineStep(index=0, name="analysis", status=StepStatus.IN_PROGRESS)])

    bus.publish(EventName.TASK_START, TaskStartEvent(job_id="j1", task_name="analysis", payload={}))
    await bus.drain(timeout=1)

    assert provider.calls == 0
    assert "fileContents" in events["failed"][0].error


@pytest.mark.asyncio
async def test_start_for_other_stage_is_ignored(bus, store, events):
    provider = ScriptedProvider(analysis_script(with_tool=False))
    stage, _ = _stage(bus, store, provider)
    stage.register()
    await store.create("j1", [PipelineStep(index=0, name="audit", status=StepStatus.IN_PROGRESS)])

    bus.publish(EventName.TASK_START, TaskStartEvent(job_id="j1", task_name="audit", payload=PAYLOAD.to_wire()))
    await bus.drain(timeout=1)

    assert provider.calls == 0
    assert events == {"completed": [], "failed": []}


@pytest.mark.asyncio
async def test_tool_completion_without_stage_name_resumes_waiting_stage(bus, store, events):
    provider = ScriptedProvider(analysis_script(with_tool=True))
    stage, _ = _stage(bus, store, provider)
    stage.register()
    await store.create("j1", [PipelineStep(index=0, name="analysis", status=StepStatus.IN_PROGRESS)])

    # an out-of-process executor answering with the plain wire shape
    async def external_executor(event):
        bus.publish(EventName.TOOL_COMPLETED, {
            "jobId": event.job_id,
            "toolName": event.tool_call.name,
            "toolResult": {"success": True, "details": {"calculatedTax": 1234.5}},
            "originalPayload": event.payload,
            "prompt": event.prompt,
        })

    bus.subscribe(EventName.TOOL_RUN, external_executor)
    bus.publish(EventName.TASK_START, TaskStartEvent(job_id="j1", task_name="analysis", payload=PAYLOAD.to_wire()))
    await bus.drain(timeout=2)

    assert events["failed"] == []
    assert len(events["completed"]) == 1
    assert events["completed"][0].result_payload["simulationResult"]["details"]["calculatedTax"] == 1234.5
    assert stage.bridge.pending("j1") is None


@pytest.mark.asyncio
async def test_duplicate_start_while_awaiting_tool_is_ignored(bus, store, events):
    provider = ScriptedProvider(analysis_script(with_tool=True))
    stage, _ = _stage(bus, store, provider)
    stage.register()
    await store.create("j1", [PipelineStep(index=0, name="analysis", status=StepStatus.IN_PROGRESS)])
    start = TaskStartEvent(job_id="j1", task_name="analysis", payload=PAYLOAD.to_wire())

    bus.publish(EventName.TASK_START, start)
    await bus.drain(timeout=2)
    bus.publish(EventName.TASK_START, start)
    await bus.drain(timeout=2)

    assert provider.calls == 1
    assert events["failed"] == []
    assert stage.bridge.pending("j1").state == ToolCallState.AWAITING_TOOL

    bus.publish(EventName.TOOL_COMPLETED, {
        "jobId": "j1",
        "toolName": "tax_simulation",
        "toolResult": {"success": True},
        "originalPayload": PAYLOAD.to_wire(),
        "prompt": "",
    })
    await bus.drain(timeout=2)

    assert provider.calls == 2
    assert len(events["completed"]) == 1


@pytest.mark.asyncio
async def test_start_after_stage_completed_is_ignored(bus, store, events):
    provider = ScriptedProvider(analysis_script(with_tool=False))
    stage, _ = _stage(bus, store, provider)
    stage.register()
    await store.create("j1", [PipelineStep(index=0, name="analysis", status=StepStatus.IN_PROGRESS)])
    start = TaskStartEvent(job_id="j1", task_name="analysis", payload=PAYLOAD.to_wire())

    bus.publish(EventName.TASK_START, start)
    await bus.drain(timeout=2)
    bus.publish(EventName.TASK_START, start)
    await bus.drain(timeout=2)

    assert provider.calls == 1
    assert len(events["completed"]) == 1
    assert events["failed"] == []
