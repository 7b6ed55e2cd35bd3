"""
Processing Pipeline — turns submitted documents into searchable artifacts.

Two passes over the batch:
    1. Inspection: size, duplicates (by content hash), unknown formats.
       Produces the data-quality report.
    2. Extraction: detect format → run extractor → detect entities →
       summary and chunk count.  Produces artifacts, the plain
       (fileName, content) list later stages analyse, and processing
       metrics.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fiscalflow.core.config import settings
from fiscalflow.core.constants import FileFormat
from fiscalflow.core.logging import get_logger
from fiscalflow.ingestion.file_fingerprint import compute_content_hash
from fiscalflow.processing.entities import build_summary, chunk_text, detect_entities
from fiscalflow.processing.extractors.base import BaseExtractor
from fiscalflow.processing.extractors.csv_extractor import CsvExtractor
from fiscalflow.processing.extractors.json_extractor import JsonExtractor
from fiscalflow.processing.extractors.text_extractor import TextExtractor, XmlExtractor
from fiscalflow.processing.format_detector import detect_format

logger = get_logger(__name__)

EXTRACTORS: list[BaseExtractor] = [
    XmlExtractor(),
    JsonExtractor(),
    CsvExtractor(),
    TextExtractor(),
]


def get_extractor(format_type: FileFormat) -> BaseExtractor:
    for extractor in EXTRACTORS:
        if extractor.supports_format(format_type):
            return extractor
    return TextExtractor()


@dataclass
class IngestionResult:
    artifacts: list[dict[str, Any]] = field(default_factory=list)
    file_contents: list[dict[str, str]] = field(default_factory=list)
    data_quality_report: dict[str, Any] = field(default_factory=dict)
    processing_metrics: dict[str, Any] = field(default_factory=dict)


def inspect_documents(files: list[dict[str, Any]]) -> dict[str, Any]:
    """Data-quality report of a batch.  Issues are errors; warnings are not."""
    seen_hashes: dict[str, str] = {}
    reports = []

    for file in files:
        name = file.get("fileName") or "unnamed"
        content = file.get("content") or ""
        content_hash = compute_content_hash(content)
        format_type = detect_format(name, file.get("mimeType"), content)

        issues: list[str] = []
        warnings: list[str] = []
        if not content.strip():
            issues.append("File has no content.")
        if content_hash in seen_hashes:
            warnings.append(f"Duplicate content of {seen_hashes[content_hash]}.")
        else:
            seen_hashes[content_hash] = name
        if format_type == FileFormat.UNKNOWN:
            warnings.append("Unrecognised extension, content treated as plain text.")

        reports.append({
            "fileName": name,
            "hash": content_hash,
            "size": len(content.encode("utf-8")),
            "format": str(format_type),
            "issues": issues,
            "warnings": warnings,
        })

    return {
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "files": reports,
        "totals": {
            "files": len(reports),
            "structured": sum(1 for r in reports if r["format"] != FileFormat.UNKNOWN),
            "warnings": sum(len(r["warnings"]) for r in reports),
            "errors": sum(len(r["issues"]) for r in reports),
        },
    }


def extract_document(file: dict[str, Any], chunk_size: int) -> dict[str, Any]:
    name = file.get("fileName") or "unnamed"
    content = file.get("content") or ""
    format_type = detect_format(name, file.get("mimeType"), content)
    text = get_extractor(format_type).extract(content)

    return {
        "fileName": name,
        "format": str(format_type),
        "text": text,
        "entities": detect_entities(text),
        "summary": build_summary(text),
        "chunkCount": len(chunk_text(text, chunk_size)),
        "hash": compute_content_hash(content),
    }


def ingest_documents(files: list[dict[str, Any]], chunk_size: int | None = None) -> IngestionResult:
    """Inspect then extract every document of a batch."""
    chunk_size = chunk_size or settings.INDEX_CHUNK_SIZE
    if not files:
        return IngestionResult()

    inspection_start = time.perf_counter()
    report = inspect_documents(files)
    inspection_ms = int((time.perf_counter() - inspection_start) * 1000)

    logger.info(
        "Document inspection finished",
        files=len(files),
        warnings=report["totals"]["warnings"],
        errors=report["totals"]["errors"],
    )

    extraction_start = time.perf_counter()
    artifacts = [extract_document(file, chunk_size) for file in files]
    extraction_ms = int((time.perf_counter() - extraction_start) * 1000)

    file_contents = [
        {"fileName": a["fileName"], "content": a["text"]}
        for a in artifacts
        if a["text"]
    ]

    metrics = {
        "filesReceived": len(files),
        "artifactsWithText": len(file_contents),
        "totalCharacters": sum(len(a["text"]) for a in artifacts),
        "totalChunks": sum(a["chunkCount"] for a in artifacts),
        "entityCounts": {
            key: sum(len(a["entities"][key]) for a in artifacts)
            for key in ("cnpjs", "emails", "monetaryValues")
        },
        "timeline": [
            {"step": "inspection", "durationMs": inspection_ms},
            {"step": "extraction", "durationMs": extraction_ms},
        ],
    }

    return IngestionResult(
        artifacts=artifacts,
        file_contents=file_contents,
        data_quality_report=report,
        processing_metrics=metrics,
    )
