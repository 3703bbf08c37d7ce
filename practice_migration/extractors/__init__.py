"""Extractors for reading the legacy database."""

from .base import BaseExtractor, ExtractionResult
from .legacy_connection import LegacyConnectionManager
from .legacy_queries import LegacyQueries

__all__ = [
    "BaseExtractor",
    "ExtractionResult",
    "LegacyConnectionManager",
    "LegacyQueries",
]
