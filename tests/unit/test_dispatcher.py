import pytest

from fiscalflow.core.constants import EventName, JobStatus, StepStatus
from fiscalflow.events.models import TaskCompletedEvent, TaskFailedEvent
from fiscalflow.pipeline.dispatcher import PipelineDispatcher
from fiscalflow.pipeline.errors import FlowResolutionError
from fiscalflow.pipeline.flow_resolver import FlowResolver, StageDefinition


def _two_stage_resolver():
    return FlowResolver({
        "DEFAULT": lambda: [
            StageDefinition(name="extraction", label="1. Extraction"),
            StageDefinition(name="audit", label="2. Audit"),
        ],
    })


@pytest.fixture
def starts(bus):
    received = []

    async def on_start(event):
        received.append(event)

    bus.subscribe(EventName.TASK_START, on_start)
    return received


@pytest.fixture
def dispatcher(bus, store):
    d = PipelineDispatcher(bus, store, _two_stage_resolver(), job_ttl_seconds=60)
    d.register()
    return d


def _completed(task_name, result=None, payload=None):
    return TaskCompletedEvent(
        job_id="j1",
        task_name=task_name,
        result_payload=result or {},
        payload=payload or {},
    )


@pytest.mark.asyncio
async def test_submit_creates_job_and_starts_first_stage(dispatcher, store, bus, starts):
    job = await dispatcher.submit({"files": [{"fileName": "a.txt", "content": "x"}]}, job_id="j1")
    await bus.drain(timeout=1)

    assert job.id == "j1"
    assert [s.status for s in job.pipeline] == [StepStatus.IN_PROGRESS, StepStatus.PENDING]
    assert job.metadata["flow"] == "DEFAULT"
    assert "contextHash" in job.metadata
    assert [(e.task_name, e.payload["files"][0]["fileName"]) for e in starts] == [("extraction", "a.txt")]


@pytest.mark.asyncio
async def test_completion_advances_and_merges_result(dispatcher, store, bus, starts):
    await dispatcher.submit({"files": []}, job_id="j1")

    await dispatcher.on_task_completed(_completed(
        "extraction",
        result={"artifacts": []},
        payload={"files": [], "artifacts": []},
    ))
    await bus.drain(timeout=1)

    job = await store.get("j1")
    assert job.cursor == 1
    assert job.pipeline[0].status == StepStatus.COMPLETED
    assert job.pipeline[1].status == StepStatus.IN_PROGRESS
    assert job.result == {"artifacts": []}
    assert starts[-1].task_name == "audit"
    assert starts[-1].payload == {"files": [], "artifacts": []}


@pytest.mark.asyncio
async def test_duplicate_completion_is_ignored(dispatcher, store, bus, starts):
    await dispatcher.submit({"files": []}, job_id="j1")

    await dispatcher.on_task_completed(_completed("extraction"))
    await dispatcher.on_task_completed(_completed("extraction"))
    await bus.drain(timeout=1)

    job = await store.get("j1")
    assert job.cursor == 1
    assert [e.task_name for e in starts] == ["extraction", "audit"]


@pytest.mark.asyncio
async def test_completion_of_wrong_stage_is_ignored(dispatcher, store):
    await dispatcher.submit({"files": []}, job_id="j1")

    await dispatcher.on_task_completed(_completed("audit", result={"auditFindings": {}}))

    job = await store.get("j1")
    assert job.cursor == 0
    assert job.result is None


@pytest.mark.asyncio
async def test_last_completion_finishes_job_without_raw_files(dispatcher, store):
    await dispatcher.submit({"files": []}, job_id="j1")
    await dispatcher.on_task_completed(_completed("extraction", result={"artifacts": []}))
    await dispatcher.on_task_completed(_completed(
        "audit",
        result={"auditFindings": {"summary": {}}},
        payload={"files": [{"fileName": "a"}], "artifacts": [], "auditFindings": {"summary": {}}},
    ))

    job = await store.get("j1")
    assert job.status == JobStatus.COMPLETED
    assert all(s.status == StepStatus.COMPLETED for s in job.pipeline)
    assert "files" not in job.result
    assert job.result["auditFindings"] == {"summary": {}}


@pytest.mark.asyncio
async def test_failure_stops_pipeline(dispatcher, store, bus, starts):
    await dispatcher.submit({"files": []}, job_id="j1")

    await dispatcher.on_task_failed(TaskFailedEvent(job_id="j1", task_name="extraction", error="Extraction failed: boom"))
    await dispatcher.on_task_completed(_completed("extraction"))
    await bus.drain(timeout=1)

    job = await store.get("j1")
    assert job.status == JobStatus.FAILED
    assert job.error == "Extraction failed: boom"
    assert job.pipeline[0].status == StepStatus.FAILED
    assert job.pipeline[1].status == StepStatus.PENDING
    assert [e.task_name for e in starts] == ["extraction"]


@pytest.mark.asyncio
async def test_failure_of_non_current_stage_is_ignored(dispatcher, store):
    await dispatcher.submit({"files": []}, job_id="j1")

    await dispatcher.on_task_failed(TaskFailedEvent(job_id="j1", task_name="audit", error="late"))

    job = await store.get("j1")
    assert job.status == JobStatus.PROCESSING
    assert job.error is None


@pytest.mark.asyncio
async def test_events_for_unknown_job_are_ignored(dispatcher):
    await dispatcher.on_task_completed(_completed("extraction"))
    await dispatcher.on_task_failed(TaskFailedEvent(job_id="j1", task_name="extraction", error="x"))


def test_unknown_flow_falls_back_to_default():
    stages = FlowResolver().resolve("nonexistent")
    assert [s.name for s in stages][0] == "extraction"
    assert len(stages) == 6


def test_deterministic_flow_has_no_inference_stages():
    names = [s.name for s in FlowResolver().resolve("deterministic")]
    assert names == ["extraction", "validation", "audit", "classification"]


def test_resolver_without_default_raises():
    with pytest.raises(FlowResolutionError):
        FlowResolver({"ONLY": lambda: []}).resolve("other")
