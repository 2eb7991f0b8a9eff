"""Abstract storage adapter for the unified sync engine."""

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from typing import Any, TypeVar

from workspace_sync.db.helpers import DatabaseError
from workspace_sync.features.unified_sync.domain.models import (
    ContactRecord,
    EmailRecord,
    EntityKind,
    FolderRecord,
    MeetingRecord,
    SyncStatus,
)
from workspace_sync.features.unified_sync.pipeline.transformer import (
    dedupe_by_remote_id,
    partition_valid,
)
from workspace_sync.infrastructure.observability.logging import get_logger
from workspace_sync.models.domain.workspace_domain import ContactSource

logger = get_logger(__name__)

R = TypeVar("R", EmailRecord, ContactRecord, MeetingRecord, FolderRecord)


class StorageError(DatabaseError):
    """A storage adapter operation failed."""

    def __init__(
        self,
        message: str,
        operation: str = "unknown",
        recoverable: bool = True,
        *,
        entity: str | None = None,
        batch_index: int | None = None,
        batch_size: int | None = None,
    ):
        super().__init__(message, operation=operation, recoverable=recoverable)
        self.entity = entity
        self.batch_index = batch_index
        self.batch_size = batch_size


class StorageConfigurationError(StorageError):
    """The adapter cannot operate (missing database configuration or pool)."""

    def __init__(self, message: str):
        super().__init__(message, operation="configure", recoverable=False)


class StorageAdapter(ABC):
    """
    Typed load/save per entity collection plus sync-status tracking.

    Loads return storage records, most recent first for emails and meetings,
    name-sorted for contacts and folders. Saves take raw remote payloads,
    transform, validate and upsert them, and return the number of rows written.
    """

    async def ensure_ready(self) -> None:
        """Raise StorageConfigurationError if the adapter cannot serve requests."""

    @abstractmethod
    async def load_emails(self, user_id: str) -> list[EmailRecord]: ...

    @abstractmethod
    async def load_contacts(self, user_id: str) -> list[ContactRecord]: ...

    @abstractmethod
    async def load_meetings(self, user_id: str) -> list[MeetingRecord]: ...

    @abstractmethod
    async def load_folders(self, user_id: str) -> list[FolderRecord]: ...

    @abstractmethod
    async def save_emails(self, user_id: str, raw_records: Sequence[dict]) -> int: ...

    @abstractmethod
    async def save_contacts(
        self,
        user_id: str,
        raw_records: Sequence[dict],
        source: ContactSource = ContactSource.DIRECTORY_CONTACT,
    ) -> int: ...

    @abstractmethod
    async def save_meetings(self, user_id: str, raw_records: Sequence[dict]) -> int: ...

    @abstractmethod
    async def save_folders(self, user_id: str, raw_records: Sequence[dict]) -> int: ...

    @abstractmethod
    async def get_sync_status(self, user_id: str) -> SyncStatus | None: ...

    @abstractmethod
    async def update_sync_status(
        self, user_id: str, updates: dict[EntityKind, datetime], sync_enabled: bool | None = None
    ) -> None:
        """Upsert the user's status row; timestamps never move backwards."""

    @abstractmethod
    async def clear(self, user_id: str) -> dict[str, int | None]:
        """Best-effort wipe of every table for the user; None marks a failed table."""

    @staticmethod
    def prepare_records(
        entity: EntityKind,
        user_id: str,
        raw_records: Iterable[Any],
        to_storage: Callable[[Any], R],
    ) -> list[R]:
        """Transform raw payloads and drop invalid ones, logging each rejection."""
        transformed = [to_storage(raw) for raw in raw_records]
        valid, rejected = partition_valid(transformed)

        for record, missing in rejected:
            logger.warning(
                "Dropping invalid record before save",
                user_id=user_id,
                entity=str(entity),
                remote_id=record.remote_id or None,
                missing_fields=missing,
            )

        return dedupe_by_remote_id(valid)
