"""
Postgres-backed storage adapter for the unified sync feature.

Every entity table is keyed by (user_id, graph_*_id) so repeated syncs of
the same window refresh rows in place. Saves run in fixed-size batches,
each in its own transaction.
"""

import asyncio
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from psycopg.types.json import Jsonb

from workspace_sync.db.helpers import (
    DatabaseError,
    execute_many,
    execute_query,
    fetch_all,
    fetch_one,
)
from workspace_sync.db.pool import db_pool
from workspace_sync.features.unified_sync.domain.models import (
    ContactRecord,
    EmailRecord,
    EntityKind,
    FolderRecord,
    MeetingRecord,
    StorageRecord,
    SyncStatus,
)
from workspace_sync.features.unified_sync.pipeline import transformer
from workspace_sync.features.unified_sync.repository.base import (
    StorageAdapter,
    StorageConfigurationError,
    StorageError,
)
from workspace_sync.infrastructure.observability.logging import get_logger
from workspace_sync.models.domain.workspace_domain import ContactSource, FolderType

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_LOAD_LIMITS = {
    EntityKind.EMAILS: 100,
    EntityKind.CONTACTS: 200,
    EntityKind.MEETINGS: 100,
    EntityKind.FOLDERS: 200,
}

CLEAR_TABLES = (
    "unified_emails",
    "unified_contacts",
    "unified_meetings",
    "unified_folders",
    "unified_sync_status",
)

EMAIL_UPSERT = """
    INSERT INTO unified_emails (
        user_id, graph_message_id, folder_id, sender_name, sender_email,
        subject, body_preview, received_date_time, is_read, is_flagged,
        has_attachments, importance, web_link, raw_data
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (user_id, graph_message_id) DO UPDATE SET
        folder_id = EXCLUDED.folder_id,
        sender_name = EXCLUDED.sender_name,
        sender_email = EXCLUDED.sender_email,
        subject = EXCLUDED.subject,
        body_preview = EXCLUDED.body_preview,
        received_date_time = EXCLUDED.received_date_time,
        is_read = EXCLUDED.is_read,
        is_flagged = EXCLUDED.is_flagged,
        has_attachments = EXCLUDED.has_attachments,
        importance = EXCLUDED.importance,
        web_link = EXCLUDED.web_link,
        raw_data = EXCLUDED.raw_data,
        updated_at = NOW()
"""

CONTACT_UPSERT = """
    INSERT INTO unified_contacts (
        user_id, graph_contact_id, name, email, phone, company, position,
        location, source, graph_type, raw_data
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (user_id, graph_contact_id) DO UPDATE SET
        name = EXCLUDED.name,
        email = EXCLUDED.email,
        phone = EXCLUDED.phone,
        company = EXCLUDED.company,
        position = EXCLUDED.position,
        location = EXCLUDED.location,
        source = EXCLUDED.source,
        graph_type = EXCLUDED.graph_type,
        raw_data = EXCLUDED.raw_data,
        updated_at = NOW()
"""

MEETING_UPSERT = """
    INSERT INTO unified_meetings (
        user_id, graph_event_id, subject, start_time, end_time, attendees,
        organizer_email, location, is_online_meeting, raw_data
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (user_id, graph_event_id) DO UPDATE SET
        subject = EXCLUDED.subject,
        start_time = EXCLUDED.start_time,
        end_time = EXCLUDED.end_time,
        attendees = EXCLUDED.attendees,
        organizer_email = EXCLUDED.organizer_email,
        location = EXCLUDED.location,
        is_online_meeting = EXCLUDED.is_online_meeting,
        raw_data = EXCLUDED.raw_data,
        updated_at = NOW()
"""

FOLDER_UPSERT = """
    INSERT INTO unified_folders (
        user_id, graph_folder_id, display_name, unread_count, total_count,
        folder_type, is_system_folder
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (user_id, graph_folder_id) DO UPDATE SET
        display_name = EXCLUDED.display_name,
        unread_count = EXCLUDED.unread_count,
        total_count = EXCLUDED.total_count,
        folder_type = EXCLUDED.folder_type,
        is_system_folder = EXCLUDED.is_system_folder,
        updated_at = NOW()
"""

SYNC_STATUS_UPSERT = """
    INSERT INTO unified_sync_status (
        user_id, last_emails_sync, last_contacts_sync,
        last_meetings_sync, last_folders_sync, sync_enabled
    )
    VALUES (%s, %s::timestamptz, %s::timestamptz, %s::timestamptz, %s::timestamptz,
            COALESCE(%s::boolean, true))
    ON CONFLICT (user_id) DO UPDATE SET
        last_emails_sync = GREATEST(unified_sync_status.last_emails_sync, EXCLUDED.last_emails_sync),
        last_contacts_sync = GREATEST(unified_sync_status.last_contacts_sync, EXCLUDED.last_contacts_sync),
        last_meetings_sync = GREATEST(unified_sync_status.last_meetings_sync, EXCLUDED.last_meetings_sync),
        last_folders_sync = GREATEST(unified_sync_status.last_folders_sync, EXCLUDED.last_folders_sync),
        sync_enabled = COALESCE(%s::boolean, unified_sync_status.sync_enabled),
        updated_at = NOW()
"""


def _email_params(record: EmailRecord) -> tuple:
    return (
        record.user_id,
        record.graph_message_id,
        record.folder_id,
        record.sender_name,
        record.sender_email,
        record.subject,
        record.body_preview,
        record.received_at,
        record.is_read,
        record.is_flagged,
        record.has_attachments,
        record.importance,
        record.web_link,
        Jsonb(record.raw_data),
    )


def _contact_params(record: ContactRecord) -> tuple:
    return (
        record.user_id,
        record.graph_contact_id,
        record.name,
        record.email,
        record.phone,
        record.company,
        record.position,
        record.location,
        str(record.source),
        record.graph_type,
        Jsonb(record.raw_data),
    )


def _meeting_params(record: MeetingRecord) -> tuple:
    return (
        record.user_id,
        record.graph_event_id,
        record.subject,
        record.start_time,
        record.end_time,
        Jsonb(record.attendees),
        record.organizer_email,
        record.location,
        record.is_online_meeting,
        Jsonb(record.raw_data),
    )


def _folder_params(record: FolderRecord) -> tuple:
    return (
        record.user_id,
        record.graph_folder_id,
        record.display_name,
        record.unread_count,
        record.total_count,
        str(record.folder_type),
        record.is_system_folder,
    )


def _sample(record: StorageRecord) -> dict[str, Any]:
    """Loggable excerpt of a record: scalar fields only, strings truncated."""
    sample = {}
    for name in record.__slots__:
        if name in ("raw_data", "attendees"):
            continue
        value = getattr(record, name)
        if isinstance(value, str):
            value = value[:80]
        elif isinstance(value, datetime):
            value = value.isoformat()
        sample[name] = value
    return sample


class PostgresStorageAdapter(StorageAdapter):
    """Storage adapter writing to the unified_* tables through the shared pool."""

    def __init__(
        self,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        load_limits: dict[EntityKind | str, int] | None = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_size = batch_size
        self.load_limits = dict(DEFAULT_LOAD_LIMITS)
        for kind, limit in (load_limits or {}).items():
            self.load_limits[EntityKind(kind)] = limit

    async def ensure_ready(self) -> None:
        if not db_pool.is_initialized:
            raise StorageConfigurationError(
                "Persistent storage requires an initialized database pool"
            )

    # ------------------------------------------------------------------
    # Loads
    # ------------------------------------------------------------------

    async def _load(self, entity: EntityKind, user_id: str, query: str) -> list[dict[str, Any]]:
        try:
            return await fetch_all(query, (user_id, self.load_limits[entity]))
        except DatabaseError as e:
            logger.error("Failed to load cached records", user_id=user_id, entity=str(entity), error=str(e))
            raise StorageError(
                f"Failed to load {entity}: {e}", operation=f"load_{entity}", entity=str(entity)
            ) from e

    async def load_emails(self, user_id: str) -> list[EmailRecord]:
        rows = await self._load(
            EntityKind.EMAILS,
            user_id,
            """
            SELECT user_id, graph_message_id, folder_id, sender_name, sender_email,
                   subject, body_preview, received_date_time, is_read, is_flagged,
                   has_attachments, importance, web_link, raw_data
            FROM unified_emails
            WHERE user_id = %s
            ORDER BY received_date_time DESC
            LIMIT %s
            """,
        )
        return [
            EmailRecord(
                user_id=row["user_id"],
                graph_message_id=row["graph_message_id"],
                folder_id=row["folder_id"],
                sender_name=row.get("sender_name") or "",
                sender_email=row.get("sender_email") or "",
                subject=row.get("subject") or "",
                body_preview=row.get("body_preview") or "",
                received_at=row["received_date_time"],
                is_read=bool(row.get("is_read")),
                is_flagged=bool(row.get("is_flagged")),
                has_attachments=bool(row.get("has_attachments")),
                importance=row.get("importance") or "normal",
                web_link=row.get("web_link"),
                raw_data=row.get("raw_data") or {},
            )
            for row in rows
        ]

    async def load_contacts(self, user_id: str) -> list[ContactRecord]:
        rows = await self._load(
            EntityKind.CONTACTS,
            user_id,
            """
            SELECT user_id, graph_contact_id, name, email, phone, company, position,
                   location, source, graph_type, last_interaction, interaction_count,
                   raw_data, updated_at
            FROM unified_contacts
            WHERE user_id = %s
            ORDER BY name ASC
            LIMIT %s
            """,
        )
        return [
            ContactRecord(
                user_id=row["user_id"],
                graph_contact_id=row["graph_contact_id"],
                name=row["name"],
                email=row.get("email") or "",
                phone=row.get("phone") or "",
                company=row.get("company") or "",
                position=row.get("position") or "",
                location=row.get("location") or "",
                source=ContactSource(row["source"]),
                graph_type=row["graph_type"],
                last_interaction=row.get("last_interaction"),
                interaction_count=row.get("interaction_count") or 0,
                raw_data=row.get("raw_data") or {},
                updated_at=row.get("updated_at"),
            )
            for row in rows
        ]

    async def load_meetings(self, user_id: str) -> list[MeetingRecord]:
        rows = await self._load(
            EntityKind.MEETINGS,
            user_id,
            """
            SELECT user_id, graph_event_id, subject, start_time, end_time, attendees,
                   organizer_email, location, is_online_meeting, raw_data
            FROM unified_meetings
            WHERE user_id = %s
            ORDER BY start_time DESC
            LIMIT %s
            """,
        )
        return [
            MeetingRecord(
                user_id=row["user_id"],
                graph_event_id=row["graph_event_id"],
                subject=row["subject"],
                start_time=row["start_time"],
                end_time=row["end_time"],
                attendees=row.get("attendees") or [],
                organizer_email=row.get("organizer_email") or "",
                location=row.get("location") or "",
                is_online_meeting=bool(row.get("is_online_meeting")),
                raw_data=row.get("raw_data") or {},
            )
            for row in rows
        ]

    async def load_folders(self, user_id: str) -> list[FolderRecord]:
        rows = await self._load(
            EntityKind.FOLDERS,
            user_id,
            """
            SELECT user_id, graph_folder_id, display_name, unread_count, total_count,
                   folder_type, is_system_folder
            FROM unified_folders
            WHERE user_id = %s
            ORDER BY display_name ASC
            LIMIT %s
            """,
        )
        return [
            FolderRecord(
                user_id=row["user_id"],
                graph_folder_id=row["graph_folder_id"],
                display_name=row["display_name"],
                unread_count=row.get("unread_count") or 0,
                total_count=row.get("total_count") or 0,
                folder_type=FolderType(row["folder_type"]),
                is_system_folder=bool(row.get("is_system_folder")),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Saves
    # ------------------------------------------------------------------

    async def _upsert_in_batches(
        self,
        entity: EntityKind,
        user_id: str,
        query: str,
        records: Sequence[StorageRecord],
        to_params: Callable[[Any], tuple],
    ) -> int:
        saved = 0
        for batch_index, start in enumerate(range(0, len(records), self.batch_size)):
            batch = records[start : start + self.batch_size]
            try:
                await execute_many(query, [to_params(record) for record in batch])
            except DatabaseError as e:
                logger.error(
                    "Batch upsert failed",
                    user_id=user_id,
                    entity=str(entity),
                    batch_index=batch_index,
                    batch_size=len(batch),
                    saved_before_failure=saved,
                    sample_record=_sample(batch[0]),
                    error=str(e),
                )
                raise StorageError(
                    f"Failed to save {entity} batch {batch_index}: {e}",
                    operation=f"save_{entity}",
                    entity=str(entity),
                    batch_index=batch_index,
                    batch_size=len(batch),
                ) from e
            saved += len(batch)

        if saved:
            logger.info("Records saved", user_id=user_id, entity=str(entity), count=saved)
        return saved

    async def save_emails(self, user_id: str, raw_records: Sequence[dict]) -> int:
        records = self.prepare_records(
            EntityKind.EMAILS,
            user_id,
            raw_records,
            lambda raw: transformer.email_to_storage(raw, user_id),
        )
        return await self._upsert_in_batches(
            EntityKind.EMAILS, user_id, EMAIL_UPSERT, records, _email_params
        )

    async def save_contacts(
        self,
        user_id: str,
        raw_records: Sequence[dict],
        source: ContactSource = ContactSource.DIRECTORY_CONTACT,
    ) -> int:
        records = self.prepare_records(
            EntityKind.CONTACTS,
            user_id,
            raw_records,
            lambda raw: transformer.contact_to_storage(raw, user_id, source),
        )
        return await self._upsert_in_batches(
            EntityKind.CONTACTS, user_id, CONTACT_UPSERT, records, _contact_params
        )

    async def save_meetings(self, user_id: str, raw_records: Sequence[dict]) -> int:
        records = self.prepare_records(
            EntityKind.MEETINGS,
            user_id,
            raw_records,
            lambda raw: transformer.meeting_to_storage(raw, user_id),
        )
        return await self._upsert_in_batches(
            EntityKind.MEETINGS, user_id, MEETING_UPSERT, records, _meeting_params
        )

    async def save_folders(self, user_id: str, raw_records: Sequence[dict]) -> int:
        records = self.prepare_records(
            EntityKind.FOLDERS,
            user_id,
            raw_records,
            lambda raw: transformer.folder_to_storage(raw, user_id),
        )
        return await self._upsert_in_batches(
            EntityKind.FOLDERS, user_id, FOLDER_UPSERT, records, _folder_params
        )

    # ------------------------------------------------------------------
    # Sync status
    # ------------------------------------------------------------------

    async def get_sync_status(self, user_id: str) -> SyncStatus | None:
        query = """
            SELECT user_id, last_emails_sync, last_contacts_sync, last_meetings_sync,
                   last_folders_sync, sync_enabled, updated_at
            FROM unified_sync_status
            WHERE user_id = %s
        """
        try:
            row = await fetch_one(query, (user_id,))
        except DatabaseError as e:
            raise StorageError(
                f"Failed to read sync status: {e}", operation="get_sync_status"
            ) from e

        if not row:
            return None

        return SyncStatus(
            user_id=row["user_id"],
            last_emails_sync=row.get("last_emails_sync"),
            last_contacts_sync=row.get("last_contacts_sync"),
            last_meetings_sync=row.get("last_meetings_sync"),
            last_folders_sync=row.get("last_folders_sync"),
            sync_enabled=row.get("sync_enabled", True),
            updated_at=row.get("updated_at"),
        )

    async def update_sync_status(
        self, user_id: str, updates: dict[EntityKind, datetime], sync_enabled: bool | None = None
    ) -> None:
        params = (
            user_id,
            updates.get(EntityKind.EMAILS),
            updates.get(EntityKind.CONTACTS),
            updates.get(EntityKind.MEETINGS),
            updates.get(EntityKind.FOLDERS),
            sync_enabled,
            sync_enabled,
        )
        try:
            await execute_query(SYNC_STATUS_UPSERT, params)
        except DatabaseError as e:
            raise StorageError(
                f"Failed to update sync status: {e}", operation="update_sync_status"
            ) from e

        logger.debug(
            "Sync status updated",
            user_id=user_id,
            entities=sorted(str(kind) for kind in updates),
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def clear(self, user_id: str) -> dict[str, int | None]:
        results = await asyncio.gather(
            *(
                execute_query(f"DELETE FROM {table} WHERE user_id = %s", (user_id,))
                for table in CLEAR_TABLES
            ),
            return_exceptions=True,
        )

        summary: dict[str, int | None] = {}
        for table, result in zip(CLEAR_TABLES, results):
            if isinstance(result, BaseException):
                logger.error("Failed to clear table", user_id=user_id, table=table, error=str(result))
                summary[table] = None
            else:
                summary[table] = result

        logger.info(
            "Unified cache cleared",
            user_id=user_id,
            deleted={table: count for table, count in summary.items() if count is not None},
            failed_tables=[table for table, count in summary.items() if count is None],
        )
        return summary

    async def get_stats(self, user_id: str) -> dict[str, Any] | None:
        """Per-user counts from the unified_sync_stats view."""
        return await fetch_one("SELECT * FROM unified_sync_stats WHERE user_id = %s", (user_id,))
