"""Plain-text and XML extractors."""

import re

from fiscalflow.core.constants import FileFormat
from fiscalflow.processing.extractors.base import BaseExtractor

_BLANK_RUNS = re.compile(r"\n{3,}")


class TextExtractor(BaseExtractor):
    """Plain text, normalised line endings.  Also the fallback for unknown formats."""

    def extract(self, content: str) -> str:
        text = (content or "").replace("\r\n", "\n").replace("\r", "\n")
        return _BLANK_RUNS.sub("\n\n", text).strip()

    def supports_format(self, format_type):
        return format_type in (FileFormat.TEXT, FileFormat.UNKNOWN)


class XmlExtractor(TextExtractor):
    """
    NF-e XML is kept as markup: the fiscal rules read tags such as
    ``<CFOP>``, ``<vBC>`` and ``<vICMS>`` directly.
    """

    def supports_format(self, format_type):
        return format_type == FileFormat.XML
