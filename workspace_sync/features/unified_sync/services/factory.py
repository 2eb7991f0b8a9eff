"""Builders wiring settings into the unified sync service."""

from workspace_sync.config import Settings, settings
from workspace_sync.features.unified_sync.repository.base import (
    StorageAdapter,
    StorageConfigurationError,
)
from workspace_sync.features.unified_sync.repository.null_adapter import NullStorageAdapter
from workspace_sync.features.unified_sync.repository.postgres_adapter import (
    PostgresStorageAdapter,
)
from workspace_sync.features.unified_sync.services.orchestrator import UnifiedSyncService
from workspace_sync.infrastructure.observability.logging import get_logger
from workspace_sync.services.graph.client import GraphClient, TokenProvider, WorkspaceApi

logger = get_logger(__name__)


def create_storage_adapter(app_settings: Settings = settings) -> StorageAdapter:
    """
    Pick the storage adapter for the configured persistence mode.

    Raises:
        StorageConfigurationError: persistence enabled without SUPABASE_DB_URL
    """
    if not app_settings.SYNC_PERSISTENCE_ENABLED:
        logger.info("Persistence disabled, using null storage adapter")
        return NullStorageAdapter()

    if not app_settings.SUPABASE_DB_URL:
        raise StorageConfigurationError(
            "SYNC_PERSISTENCE_ENABLED is set but SUPABASE_DB_URL is not configured"
        )

    return PostgresStorageAdapter(
        batch_size=app_settings.SYNC_UPSERT_BATCH_SIZE,
        load_limits=app_settings.get_load_limits(),
    )


def create_graph_client(
    token_provider: TokenProvider, app_settings: Settings = settings
) -> GraphClient:
    return GraphClient(
        token_provider,
        base_url=app_settings.GRAPH_API_BASE_URL,
        timeout=app_settings.GRAPH_REQUEST_TIMEOUT,
        max_retries=app_settings.GRAPH_MAX_RETRIES,
        backoff_factor=app_settings.GRAPH_BACKOFF_FACTOR,
        page_size=app_settings.GRAPH_PAGE_SIZE,
        max_pages=app_settings.GRAPH_MAX_PAGES,
    )


def create_unified_sync_service(
    api: WorkspaceApi,
    app_settings: Settings = settings,
    adapter: StorageAdapter | None = None,
) -> UnifiedSyncService:
    """Build a service for one user session; call ``initialize(user_id)`` next."""
    return UnifiedSyncService(
        api,
        adapter or create_storage_adapter(app_settings),
        app_settings.get_sync_config(),
    )
