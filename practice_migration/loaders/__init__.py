"""Data loaders for the target store."""

from .base import BaseLoader, BatchResult, LoadResult
from .batch_loader import BatchLoader

__all__ = [
    "BaseLoader",
    "BatchResult",
    "LoadResult",
    "BatchLoader",
]
