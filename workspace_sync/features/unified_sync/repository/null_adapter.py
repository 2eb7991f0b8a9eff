"""Storage adapter used when persistence is disabled."""

from collections.abc import Sequence
from datetime import datetime

from workspace_sync.features.unified_sync.domain.models import (
    ContactRecord,
    EmailRecord,
    EntityKind,
    FolderRecord,
    MeetingRecord,
    SyncStatus,
)
from workspace_sync.features.unified_sync.repository.base import StorageAdapter
from workspace_sync.infrastructure.observability.logging import get_logger
from workspace_sync.models.domain.workspace_domain import ContactSource

logger = get_logger(__name__)


class NullStorageAdapter(StorageAdapter):
    """Loads nothing and writes nothing, so every get_data call performs a full sync."""

    async def load_emails(self, user_id: str) -> list[EmailRecord]:
        return []

    async def load_contacts(self, user_id: str) -> list[ContactRecord]:
        return []

    async def load_meetings(self, user_id: str) -> list[MeetingRecord]:
        return []

    async def load_folders(self, user_id: str) -> list[FolderRecord]:
        return []

    async def save_emails(self, user_id: str, raw_records: Sequence[dict]) -> int:
        return 0

    async def save_contacts(
        self,
        user_id: str,
        raw_records: Sequence[dict],
        source: ContactSource = ContactSource.DIRECTORY_CONTACT,
    ) -> int:
        return 0

    async def save_meetings(self, user_id: str, raw_records: Sequence[dict]) -> int:
        return 0

    async def save_folders(self, user_id: str, raw_records: Sequence[dict]) -> int:
        return 0

    async def get_sync_status(self, user_id: str) -> SyncStatus | None:
        return None

    async def update_sync_status(
        self, user_id: str, updates: dict[EntityKind, datetime], sync_enabled: bool | None = None
    ) -> None:
        logger.debug("Persistence disabled, sync status not stored", user_id=user_id)

    async def clear(self, user_id: str) -> dict[str, int | None]:
        return {}
