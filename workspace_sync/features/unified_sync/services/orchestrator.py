"""
Unified sync orchestration service.

One instance per user session. ``get_data`` serves the cached snapshot at
once, then (when the cache is stale) syncs folders and contacts, backfills
emails and meetings week by week starting from the current week, and hands
older weeks to a cancellable background task. Subscribers receive a new
frozen snapshot after every visible state change.
"""

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Any

from workspace_sync.features.unified_sync.domain.config import SyncConfig
from workspace_sync.features.unified_sync.domain.models import (
    EntityKind,
    LoadingProgress,
    UnifiedSnapshot,
)
from workspace_sync.features.unified_sync.pipeline import transformer
from workspace_sync.features.unified_sync.pipeline.weeks import WeekWindow, week_window
from workspace_sync.features.unified_sync.repository.base import StorageAdapter
from workspace_sync.features.unified_sync.services.subscribers import (
    SnapshotCallback,
    SubscriberRegistry,
)
from workspace_sync.infrastructure.observability.logging import get_logger
from workspace_sync.models.domain.workspace_domain import ContactSource
from workspace_sync.services.graph.client import WorkspaceApi

logger = get_logger(__name__)

STATIC_CONTACT_SOURCES = (
    ContactSource.DIRECTORY_CONTACT,
    ContactSource.SUGGESTED_PERSON,
    ContactSource.WORKSPACE_USER,
)


class SyncError(Exception):
    """Raised for misuse of the sync service (e.g. missing user id)."""

    def __init__(self, message: str, operation: str = "unknown"):
        super().__init__(message)
        self.operation = operation


@dataclass(slots=True)
class WeekResult:
    window: WeekWindow
    emails: int = 0
    meetings: int = 0
    failed: bool = False

    @property
    def record_count(self) -> int:
        return self.emails + self.meetings


class UnifiedSyncService:
    """Progressive sync engine for a single user's workspace data."""

    def __init__(
        self,
        api: WorkspaceApi,
        adapter: StorageAdapter,
        config: SyncConfig | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self._api = api
        self._adapter = adapter
        self.config = config or SyncConfig()
        self._clock = clock or (lambda: datetime.now(UTC))

        self.user_id: str | None = None
        self._snapshot = self._empty_snapshot()
        self._registry: SubscriberRegistry | None = None
        self._inflight: set[str] = set()
        self._background_task: asyncio.Task | None = None
        self._foreground_done: asyncio.Event | None = None
        self._failed_kinds: set[EntityKind] = set()
        self._reload_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, user_id: str) -> None:
        """
        Bind the service to ``user_id`` and create its subscriber registry.

        Re-initializing waits for a running sync and cancels backfill before
        the snapshot is reset; switching users also drops the subscribers.

        Raises:
            SyncError: if ``user_id`` is empty
            StorageConfigurationError: if the storage adapter cannot operate
        """
        if not user_id or not user_id.strip():
            raise SyncError("initialize() requires a user id", operation="initialize")

        await self._adapter.ensure_ready()

        if self.user_id is not None and self.user_id != user_id:
            await self.close()
        else:
            await self._stop_sync_work()

        self.user_id = user_id
        self._snapshot = self._empty_snapshot()
        if self._registry is None:
            self._registry = SubscriberRegistry(lambda: self._snapshot)

        logger.info(
            "Unified sync service initialized",
            user_id=user_id,
            adapter=type(self._adapter).__name__,
            weeks_to_load_initially=self.config.weeks_to_load_initially,
            max_weeks_to_load=self.config.max_weeks_to_load,
        )

    async def close(self) -> None:
        """Cancel background work and drop every subscriber."""
        await self._stop_sync_work()
        if self._registry is not None:
            self._registry.clear()
            self._registry = None
        logger.info("Unified sync service closed", user_id=self.user_id)
        self.user_id = None

    @property
    def is_initialized(self) -> bool:
        return self.user_id is not None and self._registry is not None

    @property
    def snapshot(self) -> UnifiedSnapshot:
        return self._snapshot

    @property
    def is_syncing(self) -> bool:
        return self.user_id in self._inflight

    @property
    def is_backfilling(self) -> bool:
        return self._background_task is not None and not self._background_task.done()

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, subscriber_id: str, callback: SnapshotCallback) -> Callable[[], None]:
        """Register a snapshot callback; it is called once immediately with the current snapshot."""
        if self._registry is None:
            raise SyncError("Call initialize() before subscribe()", operation="subscribe")
        return self._registry.subscribe(subscriber_id, callback)

    def unsubscribe(self, subscriber_id: str) -> bool:
        if self._registry is None:
            return False
        return self._registry.unsubscribe(subscriber_id)

    def _notify(self) -> None:
        if self._registry is not None:
            self._registry.notify_all()

    # ------------------------------------------------------------------
    # Snapshot state
    # ------------------------------------------------------------------

    def _empty_snapshot(self) -> UnifiedSnapshot:
        return UnifiedSnapshot(
            progress=LoadingProgress(total_weeks=self.config.weeks_to_load_initially)
        )

    def _update_snapshot(self, **changes: Any) -> None:
        self._snapshot = self._snapshot.evolve(**changes)

    def _update_progress(self, **changes: Any) -> None:
        self._snapshot = self._snapshot.evolve(progress=replace(self._snapshot.progress, **changes))

    def _record_failure(
        self, step: str, error: BaseException, kind: EntityKind | None = None
    ) -> None:
        logger.warning("Sync step degraded", user_id=self.user_id, step=step, error=str(error))
        if kind is not None:
            self._failed_kinds.add(kind)
        self._update_snapshot(last_error=f"{step}: {error}")

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def get_data(self, force_refresh: bool = False) -> UnifiedSnapshot:
        """
        Serve the cache, then sync from the remote workspace if it is stale.

        Never raises: failures are logged and recorded in ``last_error``
        while the cached collections stay in place. Returns immediately
        with the current snapshot when a sync for this user is already
        running.
        """
        if not self.is_initialized:
            logger.warning("get_data called before initialize")
            return self._snapshot

        user_id = self.user_id
        if user_id in self._inflight:
            logger.debug("Sync already in progress, serving current snapshot", user_id=user_id)
            return self._snapshot

        self._inflight.add(user_id)
        done = self._foreground_done = asyncio.Event()
        handed_off = False
        try:
            self._update_snapshot(is_loading=True)
            self._notify()

            await self._reload_cache()
            self._notify()

            if await self._should_sync(force_refresh):
                handed_off = await self._run_sync_cycle()
            else:
                logger.info("Cache is fresh, skipping remote sync", user_id=user_id)

        except Exception as e:
            logger.exception("Sync cycle failed", user_id=user_id)
            self._update_snapshot(last_error=str(e))
        finally:
            self._update_snapshot(is_loading=False)
            if not handed_off:
                self._inflight.discard(user_id)
            done.set()
            self._notify()

        return self._snapshot

    async def load_more_weeks(self, weeks: int = 4) -> UnifiedSnapshot:
        """
        Extend the backfill horizon by ``weeks`` older weeks, capped at the maximum.

        Waits for a running background backfill first, then continues from
        wherever it stopped.
        """
        if not self.is_initialized or weeks < 1:
            return self._snapshot

        task = self._background_task
        if task is not None and not task.done():
            await asyncio.gather(asyncio.shield(task), return_exceptions=True)

        user_id = self.user_id
        if not self._snapshot.progress.has_more_data:
            logger.info("No more weeks to load", user_id=user_id)
            return self._snapshot

        if user_id in self._inflight:
            logger.debug("Sync already in progress, ignoring load_more_weeks", user_id=user_id)
            return self._snapshot

        self._inflight.add(user_id)
        done = self._foreground_done = asyncio.Event()
        try:
            start = self._snapshot.progress.weeks_loaded
            new_total = min(start + weeks, self.config.max_weeks_to_load)
            self._update_progress(total_weeks=new_total)
            self._notify()

            logger.info(
                "Loading more weeks",
                user_id=user_id,
                from_offset=start,
                new_total=new_total,
            )
            await self._load_week_range(start, new_total)

            if self._snapshot.progress.weeks_loaded >= self.config.max_weeks_to_load:
                self._update_progress(has_more_data=False)
            await self._reload_cache()

        except Exception as e:
            logger.exception("Loading more weeks failed", user_id=user_id)
            self._update_snapshot(last_error=str(e))
        finally:
            self._inflight.discard(user_id)
            done.set()
            self._notify()

        return self._snapshot

    async def clear_cache(self) -> None:
        """
        Wipe every stored row for the user and reset the snapshot.

        A running foreground sync is allowed to finish and background
        backfill is cancelled first, so nothing is written after the wipe.
        Calls to ``get_data`` made while the wipe runs serve the current
        snapshot without syncing.
        """
        if not self.is_initialized:
            return

        await self._stop_sync_work()
        user_id = self.user_id
        self._inflight.add(user_id)
        try:
            await self._adapter.clear(user_id)
        except Exception:
            logger.exception("Failed to clear stored cache", user_id=user_id)
        finally:
            self._inflight.discard(user_id)

        self._snapshot = self._empty_snapshot()
        self._notify()
        logger.info("Unified cache cleared", user_id=user_id)

    async def _stop_sync_work(self) -> None:
        """Wait for the running foreground sync, if any, and cancel background backfill."""
        while True:
            await self.cancel_backfill()
            done = self._foreground_done
            if done is None or done.is_set():
                return
            logger.debug("Waiting for running sync to finish", user_id=self.user_id)
            await done.wait()

    async def cancel_backfill(self) -> bool:
        """Cancel the background backfill; returns False if none was running."""
        task = self._background_task
        if task is None or task.done():
            return False

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        if self._background_task is task:
            # cancelled before its first step, so its own cleanup never ran
            self._background_task = None
            self._inflight.discard(self.user_id)
            self._update_progress(
                is_loading_week=False, total_weeks=self._snapshot.progress.weeks_loaded
            )
            self._notify()
        return True

    async def wait_for_backfill(self) -> None:
        """Block until the background backfill (if any) finishes."""
        task = self._background_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Sync cycle
    # ------------------------------------------------------------------

    async def _should_sync(self, force_refresh: bool) -> bool:
        if force_refresh:
            return True

        try:
            status = await self._adapter.get_sync_status(self.user_id)
        except Exception as e:
            logger.warning("Could not read sync status, syncing", user_id=self.user_id, error=str(e))
            return True

        if status is None:
            return True
        if not status.sync_enabled:
            logger.info("Automatic sync disabled for user", user_id=self.user_id)
            return False

        return status.is_stale(
            self._clock(),
            timedelta(seconds=self.config.cache_timeout_seconds),
            self.config.staleness_policy,
        )

    async def _run_sync_cycle(self) -> bool:
        """Static sync, initial weeks, status update. True if backfill continues in background."""
        logger.info("Starting remote sync", user_id=self.user_id)
        self._update_snapshot(last_error=None)
        self._failed_kinds.clear()

        await self._sync_static_data()
        await self._load_initial_weeks()
        await self._mark_synced()

        self._update_snapshot(last_sync=self._clock())
        return self._start_background_backfill()

    async def _sync_static_data(self) -> None:
        user_id = self.user_id
        cfg = self.config

        # folders before anything that references them
        try:
            folders = await self._api.list_folders()
            saved = await self._adapter.save_folders(user_id, folders)
            logger.info("Folders synced", user_id=user_id, fetched=len(folders), saved=saved)
        except Exception as e:
            self._record_failure("folders", e, EntityKind.FOLDERS)

        results = await asyncio.gather(
            self._api.list_contacts(cfg.contacts_fetch_cap),
            self._api.list_people(cfg.people_fetch_cap),
            self._api.list_users(cfg.users_fetch_cap),
            return_exceptions=True,
        )

        for source, result in zip(STATIC_CONTACT_SOURCES, results):
            if isinstance(result, BaseException):
                self._record_failure(f"contacts:{source}", result, EntityKind.CONTACTS)
                continue
            try:
                saved = await self._adapter.save_contacts(user_id, result, source)
                logger.info(
                    "Contacts synced",
                    user_id=user_id,
                    source=str(source),
                    fetched=len(result),
                    saved=saved,
                )
            except Exception as e:
                self._record_failure(f"contacts:{source}", e, EntityKind.CONTACTS)

        await self._reload_cache()
        self._notify()

    async def _load_initial_weeks(self) -> None:
        initial = self.config.weeks_to_load_initially
        self._update_progress(
            weeks_loaded=0,
            total_weeks=initial,
            current_week="",
            is_loading_week=False,
            has_more_data=initial < self.config.max_weeks_to_load,
        )
        self._notify()

        for offset in range(initial):
            await self._load_week(offset)
            if offset == 0:
                # first paint: current week visible before older weeks load
                await self._reload_cache()
                self._notify()

        if initial > 1:
            await self._reload_cache()
            self._notify()

    async def _mark_synced(self) -> None:
        """Stamp every entity kind whose steps all succeeded this cycle."""
        now = self._clock()
        updates = {kind: now for kind in EntityKind if kind not in self._failed_kinds}
        if self._failed_kinds:
            logger.info(
                "Leaving failed entities stale",
                user_id=self.user_id,
                entities=sorted(str(kind) for kind in self._failed_kinds),
            )
        if not updates:
            return
        try:
            await self._adapter.update_sync_status(self.user_id, updates)
        except Exception as e:
            self._record_failure("sync_status", e)

    async def _load_week(self, offset: int) -> WeekResult:
        """Fetch and persist one week of emails and meetings; never raises for fetch/save errors."""
        user_id = self.user_id
        cfg = self.config
        window = week_window(offset, self._clock(), cfg.timezone)
        result = WeekResult(window=window)

        self._update_progress(current_week=window.label, is_loading_week=True)
        self._notify()

        fetched = await asyncio.gather(
            self._api.list_messages(window.start_utc, window.end_utc, cfg.messages_per_week_cap),
            self._api.list_events(window.start_utc, window.end_utc, cfg.events_per_week_cap),
            return_exceptions=True,
        )

        savers = (
            (EntityKind.EMAILS, self._adapter.save_emails),
            (EntityKind.MEETINGS, self._adapter.save_meetings),
        )
        for (kind, save), records in zip(savers, fetched):
            if isinstance(records, BaseException):
                result.failed = True
                self._record_failure(f"{kind}:{window.label}", records, kind)
                continue
            if kind is EntityKind.EMAILS:
                result.emails = len(records)
            else:
                result.meetings = len(records)
            if not records:
                continue
            try:
                await save(user_id, records)
            except Exception as e:
                result.failed = True
                self._record_failure(f"{kind}:{window.label}", e, kind)

        progress = self._snapshot.progress
        self._update_progress(
            weeks_loaded=min(progress.weeks_loaded + 1, progress.total_weeks),
            is_loading_week=False,
        )
        logger.info(
            "Week loaded",
            user_id=user_id,
            week_label=window.label,
            week_offset=offset,
            emails=result.emails,
            meetings=result.meetings,
            failed=result.failed,
        )
        self._notify()
        return result

    async def _load_week_range(self, start: int, stop: int) -> bool:
        """
        Load weeks ``start`` to ``stop - 1`` with throttling and periodic cache refresh.

        Returns False if it stopped early after consecutive empty weeks.
        """
        cfg = self.config
        empty_streak = 0

        for loaded, offset in enumerate(range(start, stop), start=1):
            result = await self._load_week(offset)

            if result.failed or result.record_count:
                empty_streak = 0
            else:
                empty_streak += 1

            if loaded % cfg.cache_refresh_every_weeks == 0:
                await self._reload_cache()
                self._notify()

            if cfg.stop_after_empty_weeks and empty_streak >= cfg.stop_after_empty_weeks:
                logger.info(
                    "No older data found, stopping backfill",
                    user_id=self.user_id,
                    empty_weeks=empty_streak,
                    last_week=result.window.label,
                )
                weeks_loaded = self._snapshot.progress.weeks_loaded
                self._update_progress(has_more_data=False, total_weeks=weeks_loaded)
                return False

            if offset + 1 < stop:
                await asyncio.sleep(cfg.background_throttle_ms / 1000)

        return True

    def _start_background_backfill(self) -> bool:
        progress = self._snapshot.progress
        if not progress.has_more_data or not self.config.auto_load_older_data:
            return False

        self._update_progress(total_weeks=self.config.max_weeks_to_load)
        self._background_task = asyncio.create_task(
            self._run_background_backfill(self.user_id, progress.weeks_loaded),
            name=f"unified-sync-backfill-{self.user_id}",
        )
        return True

    async def _run_background_backfill(self, user_id: str, start_offset: int) -> None:
        cfg = self.config
        try:
            await asyncio.sleep(cfg.background_start_delay_ms / 1000)
            logger.info(
                "Background backfill started",
                user_id=user_id,
                from_offset=start_offset,
                max_weeks=cfg.max_weeks_to_load,
            )

            completed = await self._load_week_range(start_offset, cfg.max_weeks_to_load)
            if completed:
                self._update_progress(has_more_data=False)

            await self._reload_cache()
            logger.info(
                "Background backfill finished",
                user_id=user_id,
                weeks_loaded=self._snapshot.progress.weeks_loaded,
            )

        except asyncio.CancelledError:
            weeks_loaded = self._snapshot.progress.weeks_loaded
            self._update_progress(is_loading_week=False, total_weeks=weeks_loaded)
            logger.info("Background backfill cancelled", user_id=user_id, weeks_loaded=weeks_loaded)
            raise
        except Exception as e:
            logger.exception("Background backfill failed", user_id=user_id)
            self._update_snapshot(last_error=str(e))
        finally:
            self._inflight.discard(user_id)
            if self._background_task is asyncio.current_task():
                self._background_task = None
            self._notify()

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    async def _reload_cache(self) -> None:
        """Replace each collection with what the adapter holds; keep the old one on failure."""
        async with self._reload_lock:
            user_id = self.user_id
            cfg = self.config
            now = self._clock()

            loaders = (
                (
                    EntityKind.EMAILS,
                    self._adapter.load_emails,
                    lambda r: transformer.email_from_storage(r, now, cfg.timezone),
                ),
                (EntityKind.CONTACTS, self._adapter.load_contacts, transformer.contact_from_storage),
                (
                    EntityKind.MEETINGS,
                    self._adapter.load_meetings,
                    lambda r: transformer.meeting_from_storage(r, now, cfg.timezone),
                ),
                (EntityKind.FOLDERS, self._adapter.load_folders, transformer.folder_from_storage),
            )

            results = await asyncio.gather(
                *(load(user_id) for _, load, _ in loaders), return_exceptions=True
            )

            changes: dict[str, tuple] = {}
            for (kind, _, to_domain), records in zip(loaders, results):
                if isinstance(records, BaseException):
                    logger.warning(
                        "Failed to load cached collection",
                        user_id=user_id,
                        entity=str(kind),
                        error=str(records),
                    )
                    continue
                converted = self._convert(kind, records, to_domain)
                if converted is not None:
                    changes[str(kind)] = converted

            self._update_snapshot(**changes)

    def _convert(
        self, kind: EntityKind, records: Sequence[Any], to_domain: Callable[[Any], Any]
    ) -> tuple | None:
        try:
            return tuple(to_domain(record) for record in records)
        except Exception as e:
            logger.warning(
                "Failed to convert cached collection",
                user_id=self.user_id,
                entity=str(kind),
                error=str(e),
            )
            return None
