import asyncio

import pytest
import structlog

from fiscalflow.core.constants import EventName
from fiscalflow.core.logging import setup_logging
from fiscalflow.events.bus import EventBus
from fiscalflow.events.models import TaskFailedEvent, TaskStartEvent


@pytest.mark.asyncio
async def test_handlers_start_in_subscription_order(bus):
    calls = []

    async def first(message):
        calls.append("first")

    async def second(message):
        calls.append("second")

    bus.subscribe(EventName.TASK_START, first)
    bus.subscribe(EventName.TASK_START, second)
    bus.publish(EventName.TASK_START, TaskStartEvent(job_id="j1", task_name="extraction"))
    await bus.drain(timeout=1)

    assert calls == ["first", "second"]


@pytest.mark.asyncio
async def test_failing_handler_does_not_affect_others(bus):
    received = []

    async def broken(message):
        raise RuntimeError("boom")

    async def healthy(message):
        received.append(message.job_id)

    bus.subscribe(EventName.TASK_FAILED, broken)
    bus.subscribe(EventName.TASK_FAILED, healthy)
    bus.publish(EventName.TASK_FAILED, TaskFailedEvent(job_id="j1", task_name="audit", error="x"))
    await bus.drain(timeout=1)

    assert received == ["j1"]


@pytest.mark.asyncio
async def test_subscribing_twice_delivers_once(bus):
    calls = []

    async def handler(message):
        calls.append(message.task_name)

    bus.subscribe(EventName.TASK_START, handler)
    bus.subscribe(EventName.TASK_START, handler)
    bus.publish(EventName.TASK_START, TaskStartEvent(job_id="j1", task_name="audit"))
    await bus.drain(timeout=1)

    assert calls == ["audit"]


@pytest.mark.asyncio
async def test_publish_does_not_wait_for_handlers(bus):
    gate = asyncio.Event()
    finished = []

    async def slow(message):
        await gate.wait()
        finished.append(True)

    bus.subscribe(EventName.TASK_START, slow)
    bus.publish(EventName.TASK_START, TaskStartEvent(job_id="j1", task_name="audit"))

    assert bus.pending == 1
    assert finished == []
    gate.set()
    await bus.drain(timeout=1)
    assert finished == [True]


@pytest.mark.asyncio
async def test_drain_waits_for_cascading_events(bus):
    seen = []

    async def on_start(message):
        await asyncio.sleep(0)
        bus.publish(
            EventName.TASK_FAILED,
            TaskFailedEvent(job_id=message.job_id, task_name=message.task_name, error="late"),
        )

    async def on_failed(message):
        seen.append(message.error)

    bus.subscribe(EventName.TASK_START, on_start)
    bus.subscribe(EventName.TASK_FAILED, on_failed)
    bus.publish(EventName.TASK_START, {"jobId": "j1", "taskName": "audit"})
    await bus.drain(timeout=1)

    assert seen == ["late"]


@pytest.mark.asyncio
async def test_dict_message_is_validated_against_event_model(bus):
    received = []

    async def handler(message):
        received.append(message)

    bus.subscribe(EventName.TASK_START, handler)
    bus.publish(EventName.TASK_START, {"jobId": "j9", "taskName": "indexing", "payload": {"a": 1}})
    await bus.drain(timeout=1)

    assert isinstance(received[0], TaskStartEvent)
    assert received[0].payload == {"a": 1}


@pytest.mark.asyncio
async def test_closed_bus_drops_publishes():
    bus = EventBus()
    calls = []

    async def handler(message):
        calls.append(message)

    bus.subscribe(EventName.TASK_START, handler)
    await bus.close()
    bus.publish(EventName.TASK_START, TaskStartEvent(job_id="j1", task_name="audit"))
    await bus.drain(timeout=1)

    assert calls == []


@pytest.fixture
def debug_logging():
    setup_logging("DEBUG", json_logs=True)
    yield
    structlog.reset_defaults()


@pytest.mark.asyncio
async def test_bus_logs_every_path_with_debug_logging(debug_logging, capsys):
    bus = EventBus(name="logged")
    received = []

    async def broken(message):
        raise RuntimeError("boom")

    async def healthy(message):
        received.append(message.job_id)

    bus.subscribe(EventName.TASK_FAILED, broken)
    bus.subscribe(EventName.TASK_FAILED, healthy)
    bus.publish(EventName.TASK_FAILED, TaskFailedEvent(job_id="j1", task_name="audit", error="x"))
    await bus.drain(timeout=1)
    await bus.close()
    bus.publish(EventName.TASK_FAILED, TaskFailedEvent(job_id="j2", task_name="audit", error="y"))

    assert received == ["j1"]
    out = capsys.readouterr().out
    assert "Handler subscribed" in out
    assert "Event handler failed" in out
    assert "Publish on closed bus dropped" in out
    assert '"event_name": "task:failed"' in out
