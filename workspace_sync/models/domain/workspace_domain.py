"""
Workspace Domain Models
UI-facing records published to snapshot subscribers.

Built by the record transformer from stored rows; frozen so consumers
cannot mutate what the orchestrator hands out.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class ContactSource(StrEnum):
    """Provenance of a contact row, stored in unified_contacts.source."""

    DIRECTORY_CONTACT = "contacts"
    SUGGESTED_PERSON = "people"
    WORKSPACE_USER = "users"

    @property
    def graph_type(self) -> str:
        return _GRAPH_TYPES[self]


_GRAPH_TYPES = {
    ContactSource.DIRECTORY_CONTACT: "contact",
    ContactSource.SUGGESTED_PERSON: "person",
    ContactSource.WORKSPACE_USER: "user",
}


class FolderType(StrEnum):
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    JUNK = "junk"
    CUSTOM = "custom"


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, tuple):
        return [_serialize(item) for item in value]
    return value


class _DomainRecord:
    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict (datetimes as ISO strings)."""
        return {key: _serialize(value) for key, value in asdict(self).items()}


@dataclass(frozen=True, slots=True)
class Email(_DomainRecord):
    """A cached mailbox message."""

    id: str
    sender_name: str
    sender_email: str
    subject: str
    preview: str
    received_at: datetime
    display_time: str
    folder_id: str
    is_read: bool = False
    is_flagged: bool = False
    has_attachments: bool = False
    importance: str = "normal"
    web_link: str | None = None
    avatar_url: str = ""
    raw_data: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_unread(self) -> bool:
        return not self.is_read


@dataclass(frozen=True, slots=True)
class Contact(_DomainRecord):
    """A cached contact with derived status and avatar."""

    id: str
    name: str
    email: str
    phone: str
    company: str
    position: str
    location: str
    source: ContactSource
    status: str
    avatar_url: str = ""
    last_interaction: datetime | None = None
    interaction_count: int = 0
    raw_data: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class Meeting(_DomainRecord):
    """A cached calendar event."""

    id: str
    subject: str
    start_time: datetime
    end_time: datetime
    display_time: str
    attendees: tuple[dict[str, Any], ...] = ()
    organizer_email: str = ""
    location: str = ""
    is_online_meeting: bool = False
    raw_data: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def duration_minutes(self) -> int:
        """Get meeting duration in minutes."""
        return max(0, int((self.end_time - self.start_time).total_seconds() // 60))

    @property
    def attendee_emails(self) -> list[str]:
        return [a["email"] for a in self.attendees if a.get("email")]


@dataclass(frozen=True, slots=True)
class Folder(_DomainRecord):
    """A mail folder with type classification."""

    id: str
    name: str
    unread_count: int
    total_count: int
    folder_type: FolderType
    is_system_folder: bool
    icon: str
