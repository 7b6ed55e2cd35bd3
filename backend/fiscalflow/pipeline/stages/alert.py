"""AlertAgent — passive observer of stage failures."""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from typing import Any

from fiscalflow.core.constants import EventName
from fiscalflow.core.logging import get_logger
from fiscalflow.events.bus import EventBus
from fiscalflow.events.models import TaskFailedEvent

logger = get_logger(__name__)


class AlertAgent:
    """
    Records every ``task:failed`` for out-of-band notification.

    Takes no part in recovery; the Dispatcher alone decides what a
    failure does to the job.
    """

    def __init__(self, bus: EventBus, max_alerts: int = 500) -> None:
        self.bus = bus
        self.alerts: deque[dict[str, Any]] = deque(maxlen=max_alerts)

    def register(self) -> None:
        self.bus.subscribe(EventName.TASK_FAILED, self.on_task_failed)

    async def on_task_failed(self, event: TaskFailedEvent) -> None:
        alert = {
            "jobId": event.job_id,
            "taskName": event.task_name,
            "error": event.error,
            "raisedAt": datetime.now(timezone.utc).isoformat(),
        }
        self.alerts.append(alert)
        logger.error("Pipeline alert", job_id=event.job_id, task_name=event.task_name, error=event.error)

    def for_job(self, job_id: str) -> list[dict[str, Any]]:
        return [a for a in self.alerts if a["jobId"] == job_id]
