"""IndexingStage — chunks the extracted content into the vector index."""

from __future__ import annotations

from fiscalflow.core.config import settings
from fiscalflow.core.constants import StageName
from fiscalflow.core.logging import get_logger
from fiscalflow.integrations.vector_index import DocumentChunk, VectorIndex
from fiscalflow.pipeline.context import PipelinePayload, StageOutcome
from fiscalflow.pipeline.stage import StageAgent
from fiscalflow.processing.entities import chunk_text

logger = get_logger(__name__)


class IndexingStage(StageAgent):
    name = StageName.INDEXING
    description = "Index document chunks for retrieval"
    requires = ("file_contents",)
    failure_label = "Indexing failed"
    progress_note = "Indexing content for retrieval..."

    def __init__(self, bus, store, vector_index: VectorIndex, chunk_size: int | None = None) -> None:
        super().__init__(bus, store)
        self.vector_index = vector_index
        self.chunk_size = chunk_size or settings.INDEX_CHUNK_SIZE

    async def run(self, job_id: str, payload: PipelinePayload) -> StageOutcome:
        if not payload.file_contents:
            logger.warning("No content to index, skipping", job_id=job_id)
            return StageOutcome(
                contributions={"indexing": {"chunksIndexed": 0, "files": 0}},
                info="No content to index.",
            )

        chunks = [
            DocumentChunk(job_id=job_id, file_name=f.get("fileName") or "unnamed", content=piece)
            for f in payload.file_contents
            for piece in chunk_text(str(f.get("content") or ""), self.chunk_size)
        ]
        indexed = await self.vector_index.add_chunks(job_id, chunks)

        logger.info("Content indexed", job_id=job_id, chunks=indexed)
        return StageOutcome(
            contributions={"indexing": {"chunksIndexed": indexed, "files": len(payload.file_contents)}},
            info=f"{indexed} chunk(s) indexed.",
        )
