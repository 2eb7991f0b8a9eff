"""
Domain models for the unified sync feature.

Storage records mirror the rows of the unified_* tables. The snapshot and
loading progress are the only state the orchestrator exposes to
subscribers, so both are frozen and replaced as a whole.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from workspace_sync.features.unified_sync.domain.config import StalenessPolicy
from workspace_sync.models.domain.workspace_domain import (
    Contact,
    ContactSource,
    Email,
    Folder,
    FolderType,
    Meeting,
)


class EntityKind(StrEnum):
    EMAILS = "emails"
    CONTACTS = "contacts"
    MEETINGS = "meetings"
    FOLDERS = "folders"


@dataclass(slots=True)
class EmailRecord:
    """Represents a unified_emails row."""

    user_id: str
    graph_message_id: str
    folder_id: str
    sender_name: str
    sender_email: str
    subject: str
    body_preview: str
    received_at: datetime | None
    is_read: bool
    is_flagged: bool
    has_attachments: bool
    importance: str
    web_link: str | None
    raw_data: dict[str, Any] = field(default_factory=dict)

    @property
    def remote_id(self) -> str:
        return self.graph_message_id

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.graph_message_id:
            missing.append("graph_message_id")
        if self.received_at is None:
            missing.append("received_date_time")
        return missing


@dataclass(slots=True)
class ContactRecord:
    """Represents a unified_contacts row."""

    user_id: str
    graph_contact_id: str
    name: str
    email: str
    phone: str
    company: str
    position: str
    location: str
    source: ContactSource
    graph_type: str
    last_interaction: datetime | None = None
    interaction_count: int = 0
    raw_data: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None

    @property
    def remote_id(self) -> str:
        return self.graph_contact_id

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.graph_contact_id:
            missing.append("graph_contact_id")
        if not self.name:
            missing.append("name")
        return missing


@dataclass(slots=True)
class MeetingRecord:
    """Represents a unified_meetings row."""

    user_id: str
    graph_event_id: str
    subject: str
    start_time: datetime | None
    end_time: datetime | None
    attendees: list[dict[str, Any]]
    organizer_email: str
    location: str
    is_online_meeting: bool
    raw_data: dict[str, Any] = field(default_factory=dict)

    @property
    def remote_id(self) -> str:
        return self.graph_event_id

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.graph_event_id:
            missing.append("graph_event_id")
        if self.start_time is None:
            missing.append("start_time")
        return missing


@dataclass(slots=True)
class FolderRecord:
    """Represents a unified_folders row."""

    user_id: str
    graph_folder_id: str
    display_name: str
    unread_count: int
    total_count: int
    folder_type: FolderType
    is_system_folder: bool

    @property
    def remote_id(self) -> str:
        return self.graph_folder_id

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.graph_folder_id:
            missing.append("graph_folder_id")
        if not self.display_name:
            missing.append("display_name")
        return missing


StorageRecord = EmailRecord | ContactRecord | MeetingRecord | FolderRecord


@dataclass(slots=True)
class SyncStatus:
    """Represents the single unified_sync_status row of a user."""

    user_id: str
    last_emails_sync: datetime | None = None
    last_contacts_sync: datetime | None = None
    last_meetings_sync: datetime | None = None
    last_folders_sync: datetime | None = None
    sync_enabled: bool = True
    updated_at: datetime | None = None

    def timestamps(self) -> dict[EntityKind, datetime | None]:
        return {
            EntityKind.EMAILS: self.last_emails_sync,
            EntityKind.CONTACTS: self.last_contacts_sync,
            EntityKind.MEETINGS: self.last_meetings_sync,
            EntityKind.FOLDERS: self.last_folders_sync,
        }

    def is_stale(
        self,
        now: datetime,
        timeout: timedelta,
        policy: StalenessPolicy = StalenessPolicy.PER_ENTITY,
    ) -> bool:
        """
        Decide whether the cache needs a remote sync.

        PER_ENTITY: stale when any kind was never synced or synced longer
        ago than ``timeout``.
        MOST_RECENT: stale when the newest of the timestamps is older than
        ``timeout`` (or none is set).
        """
        values = list(self.timestamps().values())
        present = [value for value in values if value is not None]

        if policy is StalenessPolicy.MOST_RECENT:
            if not present:
                return True
            return now - max(present) > timeout

        if len(present) != len(values):
            return True
        return now - min(present) > timeout


@dataclass(frozen=True, slots=True)
class LoadingProgress:
    weeks_loaded: int = 0
    total_weeks: int = 0
    current_week: str = ""
    is_loading_week: bool = False
    has_more_data: bool = True


@dataclass(frozen=True, slots=True)
class UnifiedSnapshot:
    """Everything subscribers see: the four cached collections plus loading state."""

    emails: tuple[Email, ...] = ()
    contacts: tuple[Contact, ...] = ()
    meetings: tuple[Meeting, ...] = ()
    folders: tuple[Folder, ...] = ()
    is_loading: bool = False
    progress: LoadingProgress = field(default_factory=LoadingProgress)
    last_sync: datetime | None = None
    last_error: str | None = None

    def evolve(self, **changes: Any) -> "UnifiedSnapshot":
        return replace(self, **changes)

    @property
    def total_records(self) -> int:
        return len(self.emails) + len(self.contacts) + len(self.meetings) + len(self.folders)

    @property
    def is_empty(self) -> bool:
        return self.total_records == 0
