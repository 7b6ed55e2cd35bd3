"""
Entity detection and text helpers shared by the extraction, validation
and indexing stages.
"""

from __future__ import annotations

import re

CNPJ_PATTERN = re.compile(r"\b\d{2}\.?\d{3}\.?\d{3}/?\d{4}-?\d{2}\b")
EMAIL_PATTERN = re.compile(r"\b[\w.%+-]+@[\w.-]+\.[A-Za-z]{2,}\b")
MONEY_PATTERN = re.compile(r"R?\$ ?\d{1,3}(?:\.\d{3})*(?:,\d{2})?")
_FENCED_JSON = re.compile(r"```json\n[\s\S]*?\n```")


def _unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


def normalize_cnpj(value: str | None) -> str | None:
    """Digits of a CNPJ, or None unless exactly 14 digits remain."""
    if not value:
        return None
    digits = re.sub(r"\D", "", str(value))
    return digits if len(digits) == 14 else None


def find_cnpjs(text: str) -> list[str]:
    """CNPJs as written in the text, de-duplicated in first-seen order."""
    return _unique(CNPJ_PATTERN.findall(text or ""))


def detect_entities(text: str) -> dict[str, list[str]]:
    text = text or ""
    return {
        "cnpjs": find_cnpjs(text),
        "emails": _unique(EMAIL_PATTERN.findall(text)),
        "monetaryValues": _unique(MONEY_PATTERN.findall(text)),
    }


def chunk_text(text: str, size: int) -> list[str]:
    """Fixed-size slices of ``text``; the last one may be shorter."""
    if not text:
        return []
    return [text[i:i + size] for i in range(0, len(text), size)]


def build_summary(text: str, max_length: int = 500) -> str:
    if not text:
        return ""
    trimmed = _FENCED_JSON.sub("[JSON content]", text.strip())
    if len(trimmed) <= max_length:
        return trimmed
    return f"{trimmed[:max_length]}…"
