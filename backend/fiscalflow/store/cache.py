"""
Semantic cache — structured inference results keyed by
``(job_id, stage_name, context_hash)``.

A hit lets a stage skip the inference provider and complete straight
from the cached result.  A miss is the normal path, not an error.
"""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

from redis.asyncio import Redis

from fiscalflow.core.config import settings
from fiscalflow.core.logging import get_logger

logger = get_logger(__name__)


class CacheBackend(ABC):
    """Byte-string key/value store with per-key TTL."""

    @abstractmethod
    async def get(self, key: str) -> str | bytes | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``; return how many went."""
        ...


class InMemoryCache(CacheBackend):
    """Simple in-memory cache with TTL support."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def get(self, key: str) -> str | None:
        async with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at is not None and expires_at <= self._clock():
                self._data.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        async with self._lock:
            expires_at = None
            if ttl:
                expires_at = self._clock() + ttl
            self._data[key] = (value, expires_at)

    async def delete_prefix(self, prefix: str) -> int:
        async with self._lock:
            doomed = [key for key in self._data if key.startswith(prefix)]
            for key in doomed:
                del self._data[key]
            return len(doomed)


class RedisCache(CacheBackend):
    """Redis backed cache implementation."""

    def __init__(self, client: Redis | None = None) -> None:
        self._client = client or Redis.from_url(settings.REDIS_URL)

    async def get(self, key: str) -> bytes | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        await self._client.set(key, value, ex=ttl)

    async def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        async for key in self._client.scan_iter(match=f"{prefix}*"):
            deleted += await self._client.delete(key)
        return deleted


class SemanticCache:
    """
    Write-through cache of decoded stage results.

    Usage::

        cache = SemanticCache(InMemoryCache())
        hit = await cache.get(job_id, "analysis", context_hash)
        if hit is None:
            result = await call_provider(...)
            await cache.set(job_id, "analysis", context_hash, result)
    """

    def __init__(
        self,
        backend: CacheBackend,
        ttl_seconds: int | None = None,
        namespace: str = "semantic",
    ) -> None:
        self.backend = backend
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.SEMANTIC_CACHE_TTL_SECONDS
        self.namespace = namespace

    def key(self, job_id: str, stage_name: str, context_hash: str) -> str:
        return f"{self.namespace}:{job_id}:{stage_name}:{context_hash}"

    async def get(self, job_id: str, stage_name: str, context_hash: str) -> dict[str, Any] | None:
        raw = await self.backend.get(self.key(job_id, stage_name, context_hash))
        if raw is None:
            logger.debug("Semantic cache miss", job_id=job_id, stage=stage_name)
            return None
        logger.info("Semantic cache hit", job_id=job_id, stage=stage_name)
        return json.loads(raw)

    async def set(
        self,
        job_id: str,
        stage_name: str,
        context_hash: str,
        result: dict[str, Any],
    ) -> None:
        await self.backend.set(
            self.key(job_id, stage_name, context_hash),
            json.dumps(result, ensure_ascii=False, default=str),
            ttl=self.ttl_seconds,
        )

    async def reset_job(self, job_id: str) -> int:
        """Drop every cached entry of one job."""
        return await self.backend.delete_prefix(f"{self.namespace}:{job_id}:")


def build_semantic_cache(backend: str | None = None) -> SemanticCache:
    backend = (backend or settings.JOB_STORE_BACKEND).lower()
    if backend == "memory":
        return SemanticCache(InMemoryCache())
    if backend == "redis":
        return SemanticCache(RedisCache())
    raise ValueError(f"Unknown cache backend '{backend}'")
