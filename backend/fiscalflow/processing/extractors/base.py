"""
Abstract base class for all text extractors.
"""

from abc import ABC, abstractmethod

from fiscalflow.core.constants import FileFormat


class BaseExtractor(ABC):
    """Base interface for document text extractors."""

    @abstractmethod
    def extract(self, content: str) -> str:
        """Return the document as plain text suitable for pattern matching."""
        ...

    @abstractmethod
    def supports_format(self, format_type: FileFormat) -> bool:
        """Return True if this extractor handles the given format type."""
        ...
