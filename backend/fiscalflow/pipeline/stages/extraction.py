"""
ExtractionStage — reads the submitted documents.

Runs the processing pipeline over ``files``: format detection, text
extraction, entity detection, data-quality report and metrics.  Later
stages work from ``fileContents`` and ``artifacts``.
"""

from __future__ import annotations

from fiscalflow.core.config import settings
from fiscalflow.core.constants import StageName
from fiscalflow.core.logging import get_logger
from fiscalflow.pipeline.context import PipelinePayload, StageOutcome
from fiscalflow.pipeline.errors import StageExecutionError
from fiscalflow.pipeline.stage import StageAgent
from fiscalflow.processing.pipeline import ingest_documents

logger = get_logger(__name__)


class ExtractionStage(StageAgent):
    name = StageName.EXTRACTION
    description = "Extract text, entities and data quality from submitted documents"
    requires = ("files",)
    failure_label = "Extraction failed"
    progress_note = "Reading submitted documents..."

    def __init__(self, bus, store, chunk_size: int | None = None) -> None:
        super().__init__(bus, store)
        self.chunk_size = chunk_size or settings.INDEX_CHUNK_SIZE

    async def run(self, job_id: str, payload: PipelinePayload) -> StageOutcome:
        files = [f.model_dump(by_alias=True) for f in payload.files]
        if not files:
            raise StageExecutionError("No files submitted", job_id=job_id, stage_name=self.name)

        await self.mark_in_progress(job_id, f"Reading {len(files)} file(s)...")
        result = ingest_documents(files, self.chunk_size)

        logger.info(
            "Documents extracted",
            job_id=job_id,
            files=len(files),
            with_text=len(result.file_contents),
        )
        return StageOutcome(
            contributions={
                "artifacts": result.artifacts,
                "file_contents": result.file_contents,
                "data_quality_report": result.data_quality_report,
                "processing_metrics": result.processing_metrics,
            },
            info=f"{len(result.artifacts)} document(s) extracted.",
        )
