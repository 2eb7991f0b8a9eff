"""
Domain subpackage for the unified sync feature.
"""

from .config import StalenessPolicy, SyncConfig
from .models import (
    ContactRecord,
    EmailRecord,
    EntityKind,
    FolderRecord,
    LoadingProgress,
    MeetingRecord,
    StorageRecord,
    SyncStatus,
    UnifiedSnapshot,
)

__all__ = [
    "ContactRecord",
    "EmailRecord",
    "EntityKind",
    "FolderRecord",
    "LoadingProgress",
    "MeetingRecord",
    "StalenessPolicy",
    "StorageRecord",
    "SyncConfig",
    "SyncStatus",
    "UnifiedSnapshot",
]
