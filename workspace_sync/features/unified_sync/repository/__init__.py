"""
Storage adapters for the unified sync feature.
"""

from .base import StorageAdapter, StorageConfigurationError, StorageError
from .null_adapter import NullStorageAdapter
from .postgres_adapter import PostgresStorageAdapter

__all__ = [
    "NullStorageAdapter",
    "PostgresStorageAdapter",
    "StorageAdapter",
    "StorageConfigurationError",
    "StorageError",
]
