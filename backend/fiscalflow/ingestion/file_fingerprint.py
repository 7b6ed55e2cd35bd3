"""
Fingerprinting — content hashes for duplicate detection and cache keys.
"""

import hashlib
import json
from typing import Any


def compute_content_hash(content: str | bytes, algorithm: str = "md5") -> str:
    """Hash of a document's raw content, used to spot duplicate uploads."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.new(algorithm, content).hexdigest()


def compute_context_hash(data: Any) -> str:
    """
    SHA-256 of the canonical JSON form of ``data``.

    Key order does not matter, so two payloads with the same fields and
    values always hash the same.
    """
    canonical = json.dumps(
        data,
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
