"""
One-shot unified sync job.

Runs a forced sync cycle for SYNC_USER_ID, waits for the background
backfill to reach the configured horizon, then logs what ended up cached.
"""

from workspace_sync.config import Settings, settings
from workspace_sync.db.pool import db_pool
from workspace_sync.features.unified_sync.domain.models import UnifiedSnapshot
from workspace_sync.features.unified_sync.services.factory import (
    create_graph_client,
    create_unified_sync_service,
)
from workspace_sync.features.unified_sync.services.subscribers import SnapshotCallback
from workspace_sync.infrastructure.observability.logging import get_logger, setup_logging
from workspace_sync.services.graph.client import static_token

logger = get_logger(__name__)


class UnifiedSyncJobError(Exception):
    """Custom exception for unified sync job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


def _progress_logger(user_id: str) -> SnapshotCallback:
    """Snapshot callback that logs once per loaded week."""
    last_seen = {"weeks_loaded": -1}

    def _log(snapshot: UnifiedSnapshot) -> None:
        progress = snapshot.progress
        if progress.weeks_loaded == last_seen["weeks_loaded"]:
            return
        last_seen["weeks_loaded"] = progress.weeks_loaded
        logger.info(
            "Sync progress",
            user_id=user_id,
            weeks_loaded=progress.weeks_loaded,
            total_weeks=progress.total_weeks,
            current_week=progress.current_week,
            emails=len(snapshot.emails),
            meetings=len(snapshot.meetings),
        )

    return _log


async def run_unified_sync_job(
    user_id: str | None = None, app_settings: Settings = settings
) -> UnifiedSnapshot:
    """Run a full sync for one user and return the final snapshot."""
    setup_logging(app_settings.LOG_LEVEL)

    user_id = user_id or app_settings.SYNC_USER_ID
    if not user_id:
        raise UnifiedSyncJobError(
            "SYNC_USER_ID is not configured", operation="configure", recoverable=False
        )
    if not app_settings.GRAPH_ACCESS_TOKEN:
        raise UnifiedSyncJobError(
            "GRAPH_ACCESS_TOKEN is not configured", operation="configure", recoverable=False
        )

    logger.info("Unified sync job started", user_id=user_id)
    client = create_graph_client(static_token(app_settings.GRAPH_ACCESS_TOKEN), app_settings)
    pool_started = False

    try:
        if app_settings.persistence_configured():
            await db_pool.initialize(app_settings.SUPABASE_DB_URL)
            pool_started = True
            health = await db_pool.health_check()
            if not health.get("healthy"):
                raise UnifiedSyncJobError(
                    f"Database unhealthy: {health.get('error', 'unknown')}",
                    operation="health_check",
                )

        service = create_unified_sync_service(client, app_settings)
        await service.initialize(user_id)
        service.subscribe("unified-sync-job", _progress_logger(user_id))

        await service.get_data(force_refresh=True)
        await service.wait_for_backfill()

        snapshot = service.snapshot
        logger.info(
            "Unified sync job finished",
            user_id=user_id,
            emails=len(snapshot.emails),
            contacts=len(snapshot.contacts),
            meetings=len(snapshot.meetings),
            folders=len(snapshot.folders),
            weeks_loaded=snapshot.progress.weeks_loaded,
            has_more_data=snapshot.progress.has_more_data,
            last_error=snapshot.last_error,
        )
        await service.close()
        return snapshot

    finally:
        await client.close()
        if pool_started:
            await db_pool.close()
