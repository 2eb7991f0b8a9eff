import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

import pytest

from workspace_sync.features.unified_sync.domain import (
    ContactRecord,
    EmailRecord,
    EntityKind,
    FolderRecord,
    MeetingRecord,
    SyncConfig,
    SyncStatus,
)
from workspace_sync.features.unified_sync.pipeline import transformer
from workspace_sync.features.unified_sync.repository.base import StorageAdapter, StorageError
from workspace_sync.features.unified_sync.services.orchestrator import UnifiedSyncService
from workspace_sync.models.domain.workspace_domain import ContactSource

# A Wednesday; week 0 runs Sun 2024-10-13 .. Sat 2024-10-19
FIXED_NOW = datetime(2024, 10, 16, 12, 0, tzinfo=UTC)


def make_message(message_id: str, received: datetime, **extra) -> dict:
    payload = {
        "id": message_id,
        "subject": f"Subject {message_id}",
        "bodyPreview": "Preview text",
        "receivedDateTime": received.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "isRead": False,
        "hasAttachments": False,
        "parentFolderId": "folder-inbox",
        "sender": {"emailAddress": {"name": "Ada Lovelace", "address": "ada@example.com"}},
        "flag": {"flagStatus": "notFlagged"},
    }
    payload.update(extra)
    return payload


def make_event(event_id: str, start: datetime, **extra) -> dict:
    payload = {
        "id": event_id,
        "subject": f"Meeting {event_id}",
        "start": {"dateTime": start.strftime("%Y-%m-%dT%H:%M:%S.0000000"), "timeZone": "UTC"},
        "end": {
            "dateTime": (start + timedelta(hours=1)).strftime("%Y-%m-%dT%H:%M:%S.0000000"),
            "timeZone": "UTC",
        },
        "attendees": [
            {
                "emailAddress": {"name": "Grace Hopper", "address": "grace@example.com"},
                "type": "required",
                "status": {"response": "accepted"},
            }
        ],
        "organizer": {"emailAddress": {"address": "ada@example.com"}},
        "location": {"displayName": "Room 1"},
        "isOnlineMeeting": True,
    }
    payload.update(extra)
    return payload


def weeks_ago(weeks: int) -> datetime:
    return FIXED_NOW - timedelta(weeks=weeks)


class FakeWorkspaceApi:
    """Recording stand-in for the Graph client with injectable failures."""

    def __init__(
        self,
        *,
        folders: Sequence[dict] = (),
        contacts: Sequence[dict] = (),
        people: Sequence[dict] = (),
        users: Sequence[dict] = (),
        messages: Sequence[dict] = (),
        events: Sequence[dict] = (),
    ):
        self.folders = list(folders)
        self.contacts = list(contacts)
        self.people = list(people)
        self.users = list(users)
        self.messages = list(messages)
        self.events = list(events)
        self.calls: list[tuple] = []
        self._failures: dict[str, list] = {}

    def fail(self, method: str, error: Exception | None = None, times: int | None = None) -> None:
        """Make ``method`` raise; ``times=None`` means on every call."""
        self._failures[method] = [error or RuntimeError(f"{method} unavailable"), times]

    @property
    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    async def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        await asyncio.sleep(0)
        failure = self._failures.get(name)
        if failure is None:
            return
        error, remaining = failure
        if remaining is not None:
            if remaining <= 0:
                return
            failure[1] = remaining - 1
        raise error

    async def list_folders(self) -> list[dict]:
        await self._record("list_folders")
        return list(self.folders)

    async def list_contacts(self, top: int) -> list[dict]:
        await self._record("list_contacts", top)
        return self.contacts[:top]

    async def list_people(self, top: int) -> list[dict]:
        await self._record("list_people", top)
        return self.people[:top]

    async def list_users(self, top: int) -> list[dict]:
        await self._record("list_users", top)
        return self.users[:top]

    async def list_messages(self, start: datetime, end: datetime, top: int) -> list[dict]:
        await self._record("list_messages", start, end)
        matches = [
            m
            for m in self.messages
            if start <= transformer.parse_datetime(m["receivedDateTime"]) <= end
        ]
        return matches[:top]

    async def list_events(self, start: datetime, end: datetime, top: int) -> list[dict]:
        await self._record("list_events", start, end)
        matches = [
            e
            for e in self.events
            if start <= transformer.parse_datetime(e["start"]["dateTime"]) <= end
        ]
        return matches[:top]


class InMemoryStorageAdapter(StorageAdapter):
    """Dict-backed adapter keyed by (user_id, remote id) with upsert semantics."""

    def __init__(self, batch_size: int = 50):
        self.batch_size = batch_size
        self.rows: dict[EntityKind, dict[tuple[str, str], object]] = {
            kind: {} for kind in EntityKind
        }
        self.statuses: dict[str, SyncStatus] = {}
        self.save_calls: list[tuple[EntityKind, int]] = []
        self.fail_loads: set[EntityKind] = set()
        self.fail_saves: set[EntityKind] = set()
        self.fail_status_update = False
        self.fail_status_read = False

    def count(self, kind: EntityKind, user_id: str | None = None) -> int:
        return sum(1 for key in self.rows[kind] if user_id is None or key[0] == user_id)

    def _records(self, kind: EntityKind, user_id: str) -> list:
        if kind in self.fail_loads:
            raise StorageError(f"load {kind} failed", operation=f"load_{kind}")
        return [record for key, record in self.rows[kind].items() if key[0] == user_id]

    def _save(self, kind: EntityKind, user_id: str, raw_records, to_storage) -> int:
        if kind in self.fail_saves:
            raise StorageError(f"save {kind} failed", operation=f"save_{kind}")
        records = self.prepare_records(kind, user_id, raw_records, to_storage)
        for record in records:
            self.rows[kind][(user_id, record.remote_id)] = record
        self.save_calls.append((kind, len(records)))
        return len(records)

    async def load_emails(self, user_id: str) -> list[EmailRecord]:
        records = self._records(EntityKind.EMAILS, user_id)
        return sorted(records, key=lambda r: r.received_at, reverse=True)[:100]

    async def load_contacts(self, user_id: str) -> list[ContactRecord]:
        return sorted(self._records(EntityKind.CONTACTS, user_id), key=lambda r: r.name)[:200]

    async def load_meetings(self, user_id: str) -> list[MeetingRecord]:
        records = self._records(EntityKind.MEETINGS, user_id)
        return sorted(records, key=lambda r: r.start_time, reverse=True)[:100]

    async def load_folders(self, user_id: str) -> list[FolderRecord]:
        return sorted(self._records(EntityKind.FOLDERS, user_id), key=lambda r: r.display_name)

    async def save_emails(self, user_id: str, raw_records) -> int:
        return self._save(
            EntityKind.EMAILS,
            user_id,
            raw_records,
            lambda raw: transformer.email_to_storage(raw, user_id),
        )

    async def save_contacts(
        self, user_id: str, raw_records, source: ContactSource = ContactSource.DIRECTORY_CONTACT
    ) -> int:
        return self._save(
            EntityKind.CONTACTS,
            user_id,
            raw_records,
            lambda raw: transformer.contact_to_storage(raw, user_id, source),
        )

    async def save_meetings(self, user_id: str, raw_records) -> int:
        return self._save(
            EntityKind.MEETINGS,
            user_id,
            raw_records,
            lambda raw: transformer.meeting_to_storage(raw, user_id),
        )

    async def save_folders(self, user_id: str, raw_records) -> int:
        return self._save(
            EntityKind.FOLDERS,
            user_id,
            raw_records,
            lambda raw: transformer.folder_to_storage(raw, user_id),
        )

    async def get_sync_status(self, user_id: str) -> SyncStatus | None:
        if self.fail_status_read:
            raise StorageError("status read failed", operation="get_sync_status")
        return self.statuses.get(user_id)

    async def update_sync_status(self, user_id: str, updates, sync_enabled=None) -> None:
        if self.fail_status_update:
            raise StorageError("status update failed", operation="update_sync_status")
        status = self.statuses.setdefault(user_id, SyncStatus(user_id=user_id))
        for kind, value in updates.items():
            attr = f"last_{kind}_sync"
            current = getattr(status, attr)
            if current is None or value > current:
                setattr(status, attr, value)
        if sync_enabled is not None:
            status.sync_enabled = sync_enabled

    async def clear(self, user_id: str) -> dict[str, int | None]:
        summary = {}
        for kind, rows in self.rows.items():
            keys = [key for key in rows if key[0] == user_id]
            for key in keys:
                del rows[key]
            summary[str(kind)] = len(keys)
        summary["sync_status"] = 1 if self.statuses.pop(user_id, None) else 0
        return summary


def default_dataset() -> dict:
    return {
        "folders": [
            {"id": "folder-inbox", "displayName": "Inbox", "unreadItemCount": 3, "totalItemCount": 10},
            {"id": "folder-sent", "displayName": "Sent Items", "unreadItemCount": 0, "totalItemCount": 4},
            {"id": "folder-projects", "displayName": "Projects", "totalItemCount": 2},
        ],
        "contacts": [
            {
                "id": "contact-1",
                "displayName": "Alan Turing",
                "emailAddresses": [{"address": "alan@example.com"}],
                "companyName": "Bletchley",
            },
            {"id": "contact-2", "givenName": "Joan", "surname": "Clarke", "mobilePhone": "555-0100"},
        ],
        "people": [
            {
                "id": "person-1",
                "displayName": "Katherine Johnson",
                "scoredEmailAddresses": [{"address": "katherine@example.com"}],
            }
        ],
        "users": [
            {"id": "user-1", "displayName": "Dorothy Vaughan", "mail": "dorothy@example.com"}
        ],
        "messages": [
            make_message("msg-w0-a", weeks_ago(0)),
            make_message("msg-w0-b", weeks_ago(0) - timedelta(hours=3)),
            make_message("msg-w1", weeks_ago(1)),
            make_message("msg-w3", weeks_ago(3)),
        ],
        "events": [
            make_event("evt-w0", weeks_ago(0)),
            make_event("evt-w2", weeks_ago(2)),
        ],
    }


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def fake_api() -> FakeWorkspaceApi:
    return FakeWorkspaceApi(**default_dataset())


@pytest.fixture
def memory_adapter() -> InMemoryStorageAdapter:
    return InMemoryStorageAdapter()


@pytest.fixture
def fast_config() -> SyncConfig:
    return SyncConfig(
        weeks_to_load_initially=2,
        max_weeks_to_load=6,
        auto_load_older_data=False,
        background_throttle_ms=0,
        background_start_delay_ms=0,
        cache_refresh_every_weeks=3,
    )


@pytest.fixture
def make_service(fake_api, memory_adapter, fast_config):
    def _make(api=None, adapter=None, config=None) -> UnifiedSyncService:
        return UnifiedSyncService(
            api or fake_api,
            adapter or memory_adapter,
            config or fast_config,
            clock=lambda: FIXED_NOW,
        )

    return _make
