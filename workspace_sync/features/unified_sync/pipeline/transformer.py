"""
Record transformer for the unified sync pipeline.

Pure mapping functions between three shapes:

* raw Microsoft Graph payloads (loosely typed dicts),
* storage records written to the unified_* tables,
* UI-facing domain records published in snapshots.

``*_to_storage`` never raises: a field that cannot be resolved through its
fallback chain becomes an empty string or ``None``, and ``partition_valid``
decides later whether the record is usable.
"""

import hashlib
import re
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from workspace_sync.features.unified_sync.domain.models import (
    ContactRecord,
    EmailRecord,
    FolderRecord,
    MeetingRecord,
    StorageRecord,
)
from workspace_sync.models.domain.workspace_domain import (
    Contact,
    ContactSource,
    Email,
    Folder,
    FolderType,
    Meeting,
)

AVATAR_BASE_URL = "https://ui-avatars.com/api/"
AVATAR_PALETTE = (
    "3B82F6",
    "8B5CF6",
    "10B981",
    "F59E0B",
    "EF4444",
    "6366F1",
    "14B8A6",
    "F97316",
)

WELL_KNOWN_FOLDERS = {
    "inbox": FolderType.INBOX,
    "sent items": FolderType.SENT,
    "drafts": FolderType.DRAFTS,
    "deleted items": FolderType.TRASH,
    "junk email": FolderType.JUNK,
}

FOLDER_ICONS = {
    FolderType.INBOX: "Inbox",
    FolderType.SENT: "Send",
    FolderType.DRAFTS: "Mail",
    FolderType.TRASH: "Trash",
}

CONTACT_STATUS = {
    ContactSource.WORKSPACE_USER: "employee",
    ContactSource.SUGGESTED_PERSON: "partner",
}

# Graph returns up to 7 fractional digits; fromisoformat wants at most 6
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")

R = TypeVar("R", EmailRecord, ContactRecord, MeetingRecord, FolderRecord)


# ---------------------------------------------------------------------------
# Field extraction helpers
# ---------------------------------------------------------------------------


def _get(raw: Any, *path: str | int) -> Any:
    """Walk dict keys / list indexes, returning None on any miss."""
    current = raw
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
            current = current[key]
        else:
            if not isinstance(current, Mapping):
                return None
            current = current.get(key)
        if current is None:
            return None
    return current


def first_non_empty(*values: Any) -> str:
    """First value that is a non-blank string, stripped; empty string otherwise."""
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _resolve_zone(name: Any) -> ZoneInfo | None:
    if not isinstance(name, str) or not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def parse_datetime(value: Any, tz_name: str | None = None) -> datetime | None:
    """Parse a Graph timestamp; naive values are read in ``tz_name`` (default UTC)."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        text = _FRACTION_RE.sub(r"\1", value.strip().replace("Z", "+00:00"))
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_resolve_zone(tz_name) or UTC)
    return parsed.astimezone(UTC)


def _as_dict(raw: Any) -> dict[str, Any]:
    return dict(raw) if isinstance(raw, Mapping) else {}


# ---------------------------------------------------------------------------
# Derivation rules
# ---------------------------------------------------------------------------


def classify_folder(display_name: str | None) -> tuple[FolderType, bool]:
    """Return (folder_type, is_system_folder) from an exact case-insensitive name match."""
    name = (display_name or "").strip().lower()
    folder_type = WELL_KNOWN_FOLDERS.get(name)
    if folder_type is None:
        return FolderType.CUSTOM, False
    return folder_type, True


def folder_icon(folder_type: FolderType | str) -> str:
    return FOLDER_ICONS.get(folder_type, "Folder")


def contact_status(source: ContactSource | str) -> str:
    """users → employee, people → partner, anything else → prospect."""
    return CONTACT_STATUS.get(source, "prospect")


def avatar_url(name: str | None) -> str:
    """Initials avatar whose background colour is a stable function of ``name``."""
    display = (name or "").strip() or "?"
    digest = hashlib.sha256(display.encode("utf-8")).digest()
    background = AVATAR_PALETTE[digest[0] % len(AVATAR_PALETTE)]
    return (
        f"{AVATAR_BASE_URL}?name={quote(display, safe='')}"
        f"&size=64&background={background}&color=fff&bold=true&format=png"
    )


def format_display_time(
    timestamp: datetime | None, now: datetime | None = None, tz: str = "UTC"
) -> str:
    """
    Human display time for lists.

    Under 24 hours old: ``HH:MM``; under 7 days: short weekday (``Tue``);
    otherwise month and day (``Mar 4``).
    """
    if timestamp is None:
        return ""

    zone = _resolve_zone(tz) or UTC
    current = now or datetime.now(UTC)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=UTC)
    age = current - timestamp
    local = timestamp.astimezone(zone)

    if age < timedelta(hours=24):
        return local.strftime("%H:%M")
    if age < timedelta(days=7):
        return local.strftime("%a")
    return f"{local:%b} {local.day}"


# ---------------------------------------------------------------------------
# Raw → storage
# ---------------------------------------------------------------------------


def _email_address(raw: dict, field_name: str) -> dict:
    address = _get(raw, field_name, "emailAddress")
    return address if isinstance(address, Mapping) else {}


def email_to_storage(raw: Any, user_id: str) -> EmailRecord:
    data = _as_dict(raw)
    sender = _email_address(data, "sender")
    from_ = _email_address(data, "from")

    return EmailRecord(
        user_id=user_id,
        graph_message_id=first_non_empty(data.get("id")),
        folder_id=first_non_empty(data.get("parentFolderId")) or "inbox",
        sender_name=first_non_empty(sender.get("name"), from_.get("name")),
        sender_email=first_non_empty(sender.get("address"), from_.get("address")),
        subject=first_non_empty(data.get("subject")),
        body_preview=first_non_empty(data.get("bodyPreview")),
        received_at=parse_datetime(data.get("receivedDateTime")),
        is_read=bool(data.get("isRead", False)),
        is_flagged=_get(data, "flag", "flagStatus") == "flagged",
        has_attachments=bool(data.get("hasAttachments", False)),
        importance=first_non_empty(data.get("importance")) or "normal",
        web_link=first_non_empty(data.get("webLink")) or None,
        raw_data=data,
    )


def contact_to_storage(
    raw: Any, user_id: str, source: ContactSource = ContactSource.DIRECTORY_CONTACT
) -> ContactRecord:
    data = _as_dict(raw)
    source = ContactSource(source)

    full_name = f"{first_non_empty(data.get('givenName'))} {first_non_empty(data.get('surname'))}"

    return ContactRecord(
        user_id=user_id,
        graph_contact_id=first_non_empty(data.get("id")),
        name=first_non_empty(data.get("displayName"), full_name),
        email=first_non_empty(
            _get(data, "emailAddresses", 0, "address"),
            data.get("mail"),
            data.get("userPrincipalName"),
            _get(data, "scoredEmailAddresses", 0, "address"),
        ),
        phone=first_non_empty(
            data.get("mobilePhone"),
            _get(data, "businessPhones", 0),
            _get(data, "phones", 0, "number"),
        ),
        company=first_non_empty(data.get("companyName"), data.get("department")),
        position=first_non_empty(data.get("jobTitle")),
        location=first_non_empty(data.get("officeLocation"), data.get("city")),
        source=source,
        graph_type=source.graph_type,
        raw_data=data,
    )


def _normalize_attendee(attendee: Any) -> dict[str, Any]:
    return {
        "name": first_non_empty(_get(attendee, "emailAddress", "name")),
        "email": first_non_empty(_get(attendee, "emailAddress", "address")),
        "type": first_non_empty(_get(attendee, "type")) or "required",
        "response": first_non_empty(_get(attendee, "status", "response")) or "none",
    }


def meeting_to_storage(raw: Any, user_id: str) -> MeetingRecord:
    data = _as_dict(raw)
    start = parse_datetime(_get(data, "start", "dateTime"), _get(data, "start", "timeZone"))
    end = parse_datetime(_get(data, "end", "dateTime"), _get(data, "end", "timeZone"))
    attendees = data.get("attendees")

    return MeetingRecord(
        user_id=user_id,
        graph_event_id=first_non_empty(data.get("id")),
        subject=first_non_empty(data.get("subject")) or "No Subject",
        start_time=start,
        end_time=end or start,
        attendees=[_normalize_attendee(a) for a in attendees] if isinstance(attendees, list) else [],
        organizer_email=first_non_empty(_get(data, "organizer", "emailAddress", "address")),
        location=first_non_empty(_get(data, "location", "displayName")),
        is_online_meeting=bool(data.get("isOnlineMeeting", False)),
        raw_data=data,
    )


def folder_to_storage(raw: Any, user_id: str) -> FolderRecord:
    data = _as_dict(raw)
    display_name = first_non_empty(data.get("displayName"))
    folder_type, is_system = classify_folder(display_name)

    return FolderRecord(
        user_id=user_id,
        graph_folder_id=first_non_empty(data.get("id")),
        display_name=display_name,
        unread_count=_as_int(data.get("unreadItemCount")),
        total_count=_as_int(data.get("totalItemCount")),
        folder_type=folder_type,
        is_system_folder=is_system,
    )


# ---------------------------------------------------------------------------
# Storage → domain
# ---------------------------------------------------------------------------


def email_from_storage(record: EmailRecord, now: datetime | None = None, tz: str = "UTC") -> Email:
    sender_name = record.sender_name or "Unknown Sender"
    received_at = record.received_at or datetime.now(UTC)
    return Email(
        id=record.graph_message_id,
        sender_name=sender_name,
        sender_email=record.sender_email or "",
        subject=record.subject or "(No Subject)",
        preview=record.body_preview or "",
        received_at=received_at,
        display_time=format_display_time(received_at, now, tz),
        folder_id=record.folder_id,
        is_read=record.is_read,
        is_flagged=record.is_flagged,
        has_attachments=record.has_attachments,
        importance=record.importance or "normal",
        web_link=record.web_link,
        avatar_url=avatar_url(record.sender_name),
        raw_data=record.raw_data or {},
    )


def contact_from_storage(record: ContactRecord) -> Contact:
    source = ContactSource(record.source)
    return Contact(
        id=record.graph_contact_id,
        name=record.name,
        email=record.email or "",
        phone=record.phone or "",
        company=record.company or "",
        position=record.position or "",
        location=record.location or "",
        source=source,
        status=contact_status(source),
        avatar_url=avatar_url(record.name),
        last_interaction=record.last_interaction or record.updated_at,
        interaction_count=record.interaction_count or 0,
        raw_data=record.raw_data or {},
    )


def meeting_from_storage(
    record: MeetingRecord, now: datetime | None = None, tz: str = "UTC"
) -> Meeting:
    start = record.start_time or datetime.now(UTC)
    return Meeting(
        id=record.graph_event_id,
        subject=record.subject or "No Subject",
        start_time=start,
        end_time=record.end_time or start,
        display_time=format_display_time(start, now, tz),
        attendees=tuple(record.attendees or ()),
        organizer_email=record.organizer_email or "",
        location=record.location or "",
        is_online_meeting=record.is_online_meeting,
        raw_data=record.raw_data or {},
    )


def folder_from_storage(record: FolderRecord) -> Folder:
    folder_type = FolderType(record.folder_type)
    return Folder(
        id=record.graph_folder_id,
        name=record.display_name,
        unread_count=record.unread_count,
        total_count=record.total_count,
        folder_type=folder_type,
        is_system_folder=record.is_system_folder,
        icon=folder_icon(folder_type),
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def partition_valid(records: Iterable[R]) -> tuple[list[R], list[tuple[R, list[str]]]]:
    """Split records into (valid, rejected) where rejected carries the missing field names."""
    valid: list[R] = []
    rejected: list[tuple[R, list[str]]] = []
    for record in records:
        missing = record.missing_fields()
        if missing:
            rejected.append((record, missing))
        else:
            valid.append(record)
    return valid, rejected


def dedupe_by_remote_id(records: Iterable[StorageRecord]) -> list[StorageRecord]:
    """Keep the last occurrence of each remote id, preserving first-seen order."""
    by_id: dict[str, StorageRecord] = {}
    for record in records:
        by_id[record.remote_id] = record
    return list(by_id.values())
