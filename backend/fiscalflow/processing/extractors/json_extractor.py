"""JSON extractor — pretty-printed so labelled values sit on their own lines."""

import json

from fiscalflow.core.constants import FileFormat
from fiscalflow.processing.extractors.base import BaseExtractor


class JsonExtractor(BaseExtractor):
    def extract(self, content):
        try:
            data = json.loads(content or "")
        except json.JSONDecodeError:
            # Broken JSON is still searchable as text
            return (content or "").strip()
        return json.dumps(data, indent=2, ensure_ascii=False)

    def supports_format(self, format_type):
        return format_type == FileFormat.JSON
