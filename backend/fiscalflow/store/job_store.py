"""
Job Store — the durable, expiring record of every job's state.

The store exclusively owns Job records.  Stages, the Dispatcher and
follow-up writers hold only a job ID and change a job through atomic,
field-level operations (merge_result, update_step, mutate), never by
overwriting the whole record.  Every read-modify-write for one job ID is
serialised: an asyncio lock per job in memory, an optimistic
WATCH/MULTI/EXEC loop in Redis.

``get`` returns None for unknown or expired jobs; it never raises.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from redis.asyncio import Redis
from redis.exceptions import WatchError

from fiscalflow.core.config import settings
from fiscalflow.core.constants import JobStatus, StepStatus
from fiscalflow.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# pending → in-progress → {completed, failed}
_STEP_RANK: dict[str, int] = {
    StepStatus.PENDING: 0,
    StepStatus.IN_PROGRESS: 1,
    StepStatus.COMPLETED: 2,
    StepStatus.FAILED: 2,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════
#  Records
# ═══════════════════════════════════════════════════════════

class PipelineStep(BaseModel):
    """One stage of a job's pipeline as seen by the outside world."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    index: int
    name: str
    label: str = ""
    status: StepStatus = StepStatus.PENDING
    info: str | None = None

    def transition(self, status: StepStatus, info: str | None = None) -> bool:
        """
        Move to ``status`` if that is a forward move.

        Re-applying the current status only refreshes ``info``.  Any
        regression (or completed ↔ failed) is refused and returns False.
        """
        status = StepStatus(status)
        current_rank = _STEP_RANK[self.status]
        new_rank = _STEP_RANK[status]

        if status == self.status:
            if info is not None:
                self.info = info
            return True
        if new_rank <= current_rank:
            return False

        self.status = status
        if info is not None:
            self.info = info
        return True


class Job(BaseModel):
    """A submitted batch of documents and everything the pipeline learned about it."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    status: JobStatus = JobStatus.PROCESSING
    pipeline: list[PipelineStep] = Field(default_factory=list)
    cursor: int = 0
    result: dict[str, Any] | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status != JobStatus.PROCESSING

    @property
    def current_step(self) -> PipelineStep | None:
        """The step the Dispatcher is waiting on."""
        if 0 <= self.cursor < len(self.pipeline):
            return self.pipeline[self.cursor]
        return None

    @property
    def failed_step(self) -> PipelineStep | None:
        for step in self.pipeline:
            if step.status == StepStatus.FAILED:
                return step
        return None

    def step_index(self, name: str) -> int | None:
        for step in self.pipeline:
            if step.name == name:
                return step.index
        return None

    def merge_result(self, partial: dict[str, Any]) -> None:
        """Add or overwrite only the keys in ``partial``."""
        if not partial:
            return
        self.result = {**(self.result or {}), **partial}

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ═══════════════════════════════════════════════════════════
#  Store contract
# ═══════════════════════════════════════════════════════════

class JobStore(ABC):
    """
    Abstract job store.

    Backends implement create/get/mutate/expire/delete; every other
    operation is expressed as an atomic ``mutate`` so both backends share
    the same semantics.
    """

    def __init__(self, default_ttl: int | None = None) -> None:
        self.default_ttl = default_ttl if default_ttl is not None else settings.JOB_TTL_SECONDS

    @abstractmethod
    async def create(
        self,
        job_id: str,
        pipeline: list[PipelineStep],
        metadata: dict[str, Any] | None = None,
        ttl: int | None = None,
    ) -> Job:
        """Create (or replace) the record for ``job_id``."""
        ...

    @abstractmethod
    async def get(self, job_id: str) -> Job | None:
        """Return the job, or None when unknown or expired."""
        ...

    @abstractmethod
    async def mutate(self, job_id: str, mutator: Callable[[Job], T]) -> T | None:
        """
        Atomically apply ``mutator`` to the stored job and persist it.

        Returns the mutator's return value, or None when the job does not
        exist.  The mutator may run more than once under contention, so
        it must not have side effects outside the job it receives.
        """
        ...

    @abstractmethod
    async def expire(self, job_id: str, ttl: int) -> bool:
        """Make the job unreachable ``ttl`` seconds from now."""
        ...

    @abstractmethod
    async def delete(self, job_id: str) -> None:
        ...

    async def close(self) -> None:
        """Release backend resources."""
        return None

    # ─── Field-level operations ────────────────────────

    async def merge_result(self, job_id: str, partial: dict[str, Any]) -> bool:
        """Merge ``partial`` into the job result without touching sibling keys."""
        def _merge(job: Job) -> bool:
            job.merge_result(partial)
            return True

        return bool(await self.mutate(job_id, _merge))

    async def merge_metadata(self, job_id: str, partial: dict[str, Any]) -> bool:
        def _merge(job: Job) -> bool:
            job.metadata.update(partial)
            return True

        return bool(await self.mutate(job_id, _merge))

    async def update_step(
        self,
        job_id: str,
        index: int,
        status: StepStatus,
        info: str | None = None,
    ) -> bool:
        """
        Forward-only status update of one step.

        Returns False (and logs) when the job or step is unknown or the
        update would regress the step.
        """
        def _update(job: Job) -> bool:
            if not 0 <= index < len(job.pipeline):
                return False
            return job.pipeline[index].transition(status, info)

        applied = await self.mutate(job_id, _update)
        if not applied:
            logger.warning(
                "Step update ignored",
                job_id=job_id,
                step_index=index,
                status=str(status),
            )
        return bool(applied)


# ═══════════════════════════════════════════════════════════
#  In-memory backend
# ═══════════════════════════════════════════════════════════

class InMemoryJobStore(JobStore):
    """Process-local store with TTL support.  Used in tests and single-process runs."""

    def __init__(
        self,
        default_ttl: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(default_ttl)
        self._clock = clock
        self._jobs: dict[str, tuple[Job, float | None]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _expires_at(self, ttl: int | None) -> float | None:
        return self._clock() + ttl if ttl else None

    def _live(self, job_id: str) -> tuple[Job, float | None] | None:
        item = self._jobs.get(job_id)
        if item is None:
            return None
        _, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            self._jobs.pop(job_id, None)
            self._locks.pop(job_id, None)
            return None
        return item

    def _lock(self, job_id: str) -> asyncio.Lock | None:
        """Lock of a live job; None (and no lock kept) when it is unknown or expired."""
        if self._live(job_id) is None:
            return None
        return self._locks.setdefault(job_id, asyncio.Lock())

    def purge_expired(self) -> int:
        """Drop every expired job nobody asked for since it expired."""
        expired = [job_id for job_id in list(self._jobs) if self._live(job_id) is None]
        return len(expired)

    async def create(self, job_id, pipeline, metadata=None, ttl=None) -> Job:
        job = Job(id=job_id, pipeline=pipeline, metadata=dict(metadata or {}))
        self.purge_expired()
        async with self._locks.setdefault(job_id, asyncio.Lock()):
            self._jobs[job_id] = (job.model_copy(deep=True), self._expires_at(ttl or self.default_ttl))
        return job

    async def get(self, job_id: str) -> Job | None:
        item = self._live(job_id)
        if item is None:
            return None
        return item[0].model_copy(deep=True)

    async def mutate(self, job_id, mutator):
        lock = self._lock(job_id)
        if lock is None:
            return None
        async with lock:
            item = self._live(job_id)
            if item is None:
                return None
            stored, expires_at = item
            job = stored.model_copy(deep=True)
            outcome = mutator(job)
            job.updated_at = _utcnow()
            self._jobs[job_id] = (job, expires_at)
            return outcome

    async def expire(self, job_id: str, ttl: int) -> bool:
        lock = self._lock(job_id)
        if lock is None:
            return False
        async with lock:
            item = self._live(job_id)
            if item is None:
                return False
            self._jobs[job_id] = (item[0], self._expires_at(ttl) if ttl > 0 else self._clock())
            return True

    async def delete(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._locks.pop(job_id, None)


# ═══════════════════════════════════════════════════════════
#  Redis backend
# ═══════════════════════════════════════════════════════════

class RedisJobStore(JobStore):
    """
    Redis-backed store.  One JSON document per job at ``{prefix}:{job_id}``.

    Writes after creation keep the key's TTL (SET ... KEEPTTL) so only
    create/expire decide when a job disappears.
    """

    def __init__(
        self,
        client: Redis | None = None,
        key_prefix: str | None = None,
        default_ttl: int | None = None,
    ) -> None:
        super().__init__(default_ttl)
        self._client = client or Redis.from_url(settings.REDIS_URL)
        self._prefix = key_prefix or settings.JOB_KEY_PREFIX

    def _key(self, job_id: str) -> str:
        return f"{self._prefix}:{job_id}"

    async def create(self, job_id, pipeline, metadata=None, ttl=None) -> Job:
        job = Job(id=job_id, pipeline=pipeline, metadata=dict(metadata or {}))
        await self._client.set(
            self._key(job_id),
            job.model_dump_json(),
            ex=ttl or self.default_ttl or None,
        )
        return job

    async def get(self, job_id: str) -> Job | None:
        raw = await self._client.get(self._key(job_id))
        if raw is None:
            return None
        return Job.model_validate_json(raw)

    async def mutate(self, job_id, mutator):
        key = self._key(job_id)
        async with self._client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        await pipe.unwatch()
                        return None
                    job = Job.model_validate_json(raw)
                    outcome = mutator(job)
                    job.updated_at = _utcnow()
                    pipe.multi()
                    pipe.set(key, job.model_dump_json(), keepttl=True)
                    await pipe.execute()
                    return outcome
                except WatchError:
                    logger.debug("Concurrent job update, retrying", job_id=job_id)
                    continue

    async def expire(self, job_id: str, ttl: int) -> bool:
        return bool(await self._client.expire(self._key(job_id), ttl))

    async def delete(self, job_id: str) -> None:
        await self._client.delete(self._key(job_id))

    async def close(self) -> None:
        await self._client.aclose()


def build_job_store(backend: str | None = None) -> JobStore:
    """Instantiate the configured backend ("redis" or "memory")."""
    backend = (backend or settings.JOB_STORE_BACKEND).lower()
    if backend == "memory":
        return InMemoryJobStore()
    if backend == "redis":
        return RedisJobStore()
    raise ValueError(f"Unknown job store backend '{backend}'")
