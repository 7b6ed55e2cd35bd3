"""Vector/RAG index collaborator: stores and queries content chunks per job."""

from __future__ import annotations

import asyncio
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Protocol

_TERM = re.compile(r"\w+", re.UNICODE)


@dataclass(frozen=True)
class DocumentChunk:
    job_id: str
    file_name: str
    content: str


class VectorIndex(Protocol):
    async def add_chunks(self, job_id: str, chunks: list[DocumentChunk]) -> int:
        ...

    async def query(self, job_id: str, text: str, limit: int = 5) -> list[DocumentChunk]:
        ...


class InMemoryVectorIndex:
    """
    Process-local index scoped by job ID.

    Ranking is plain term overlap, enough for a single-process deployment
    and for tests.
    """

    def __init__(self) -> None:
        self._chunks: dict[str, list[DocumentChunk]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def add_chunks(self, job_id: str, chunks: list[DocumentChunk]) -> int:
        async with self._lock:
            self._chunks[job_id].extend(chunks)
        return len(chunks)

    async def query(self, job_id: str, text: str, limit: int = 5) -> list[DocumentChunk]:
        terms = {t.lower() for t in _TERM.findall(text)}
        if not terms:
            return []
        scored = []
        for chunk in self._chunks.get(job_id, []):
            overlap = len(terms & {t.lower() for t in _TERM.findall(chunk.content)})
            if overlap:
                scored.append((overlap, chunk))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [chunk for _, chunk in scored[:limit]]

    def count(self, job_id: str) -> int:
        return len(self._chunks.get(job_id, []))
