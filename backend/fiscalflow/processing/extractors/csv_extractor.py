"""CSV extractor — renders rows as a Markdown table."""

import csv
import io

from fiscalflow.core.constants import FileFormat
from fiscalflow.processing.extractors.base import BaseExtractor


def format_as_markdown_table(rows: list[list[str]]) -> str:
    if not rows:
        return ""
    header, body = rows[0], rows[1:]
    divider = ["---"] * len(header)
    return "\n".join(f"| {' | '.join(row)} |" for row in [header, divider, *body])


class CsvExtractor(BaseExtractor):
    def extract(self, content):
        content = content or ""
        try:
            dialect = csv.Sniffer().sniff(content[:2048], delimiters=",;\t|")
        except csv.Error:
            dialect = csv.excel
        rows = [
            [cell.strip() for cell in row]
            for row in csv.reader(io.StringIO(content), dialect)
            if any(cell.strip() for cell in row)
        ]
        return format_as_markdown_table(rows)

    def supports_format(self, format_type):
        return format_type == FileFormat.CSV
