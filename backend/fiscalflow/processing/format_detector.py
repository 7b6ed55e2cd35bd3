"""
Format Detector — identifies a document's format from its name, MIME
type and first characters.
"""

from __future__ import annotations

from pathlib import PurePosixPath

from fiscalflow.core.constants import FileFormat

EXTENSION_FORMATS: dict[str, FileFormat] = {
    ".txt": FileFormat.TEXT,
    ".md": FileFormat.TEXT,
    ".log": FileFormat.TEXT,
    ".xml": FileFormat.XML,
    ".json": FileFormat.JSON,
    ".csv": FileFormat.CSV,
    ".tsv": FileFormat.CSV,
}

MIME_FORMATS: dict[str, FileFormat] = {
    "text/plain": FileFormat.TEXT,
    "application/xml": FileFormat.XML,
    "text/xml": FileFormat.XML,
    "application/json": FileFormat.JSON,
    "text/csv": FileFormat.CSV,
}


def detect_format(file_name: str, mime_type: str | None = None, content: str = "") -> FileFormat:
    """
    Detect the document format.

    Lookup order: extension, MIME type, then a sniff of the content
    (``<`` → XML, ``{``/``[`` → JSON).  Returns FileFormat.UNKNOWN when
    nothing matches; unknown documents are still read as plain text.
    """
    extension = PurePosixPath(file_name or "").suffix.lower()
    if extension in EXTENSION_FORMATS:
        return EXTENSION_FORMATS[extension]

    if mime_type:
        base_mime = mime_type.split(";", 1)[0].strip().lower()
        if base_mime in MIME_FORMATS:
            return MIME_FORMATS[base_mime]

    head = (content or "").lstrip()[:1]
    if head == "<":
        return FileFormat.XML
    if head in ("{", "["):
        return FileFormat.JSON
    return FileFormat.UNKNOWN
