"""
Service layer for the unified sync feature.
"""

from .orchestrator import SyncError, UnifiedSyncService, WeekResult
from .subscribers import SnapshotCallback, SubscriberRegistry

__all__ = [
    "SnapshotCallback",
    "SubscriberRegistry",
    "SyncError",
    "UnifiedSyncService",
    "WeekResult",
]
