import asyncio
import dataclasses
from datetime import timedelta
from types import SimpleNamespace

import pytest

from tests.conftest import FIXED_NOW, FakeWorkspaceApi, make_message, weeks_ago
from workspace_sync.features.unified_sync.domain import (
    EntityKind,
    StalenessPolicy,
    SyncConfig,
    SyncStatus,
)
from workspace_sync.features.unified_sync.pipeline.weeks import week_window
from workspace_sync.features.unified_sync.repository import (
    PostgresStorageAdapter,
    StorageConfigurationError,
)
from workspace_sync.features.unified_sync.services import SyncError

USER = "user-1"


def status_synced_at(when, **overrides) -> SyncStatus:
    values = {
        "last_emails_sync": when,
        "last_contacts_sync": when,
        "last_meetings_sync": when,
        "last_folders_sync": when,
    }
    values.update(overrides)
    return SyncStatus(user_id=USER, **values)


async def started(service, user_id=USER):
    await service.initialize(user_id)
    return service


@pytest.mark.asyncio
async def test_first_sync_fetches_static_data_then_weeks_newest_first(make_service, fake_api, memory_adapter):
    service = await started(make_service())

    snapshot = await service.get_data()

    assert fake_api.call_names[:4] == ["list_folders", "list_contacts", "list_people", "list_users"]
    week_starts = [call[1] for call in fake_api.calls if call[0] == "list_messages"]
    assert week_starts == [week_window(0, FIXED_NOW).start_utc, week_window(1, FIXED_NOW).start_utc]
    assert fake_api.call_names.index("list_events") < 6

    status = memory_adapter.statuses[USER]
    assert all(value == FIXED_NOW for value in status.timestamps().values())
    assert snapshot.last_sync == FIXED_NOW
    assert snapshot.is_loading is False
    assert snapshot.last_error is None


@pytest.mark.asyncio
async def test_first_sync_exposes_every_collection(make_service):
    service = await started(make_service())

    snapshot = await service.get_data()

    assert {e.id for e in snapshot.emails} == {"msg-w0-a", "msg-w0-b", "msg-w1"}
    assert [m.id for m in snapshot.meetings] == ["evt-w0"]
    assert {c.name for c in snapshot.contacts} == {
        "Alan Turing",
        "Joan Clarke",
        "Katherine Johnson",
        "Dorothy Vaughan",
    }
    assert [f.name for f in snapshot.folders] == ["Inbox", "Projects", "Sent Items"]
    assert snapshot.progress.weeks_loaded == 2
    assert snapshot.progress.total_weeks == 2
    assert snapshot.progress.has_more_data is True


@pytest.mark.asyncio
async def test_repeated_sync_does_not_duplicate_rows(make_service, memory_adapter):
    service = await started(make_service())

    await service.get_data(force_refresh=True)
    first = {kind: memory_adapter.count(kind) for kind in EntityKind}
    await service.get_data(force_refresh=True)
    second = {kind: memory_adapter.count(kind) for kind in EntityKind}

    assert first == second
    assert first == {
        EntityKind.EMAILS: 3,
        EntityKind.CONTACTS: 4,
        EntityKind.MEETINGS: 1,
        EntityKind.FOLDERS: 3,
    }


@pytest.mark.asyncio
async def test_fresh_cache_skips_remote_fetch(make_service, fake_api, memory_adapter):
    memory_adapter.statuses[USER] = status_synced_at(FIXED_NOW - timedelta(minutes=2))
    service = await started(make_service())

    await service.get_data()
    assert fake_api.calls == []

    await service.get_data(force_refresh=True)
    assert fake_api.calls


@pytest.mark.asyncio
async def test_expired_cache_syncs(make_service, fake_api, memory_adapter):
    memory_adapter.statuses[USER] = status_synced_at(FIXED_NOW - timedelta(minutes=31))
    service = await started(make_service())

    await service.get_data()

    assert "list_folders" in fake_api.call_names


@pytest.mark.asyncio
async def test_per_entity_policy_syncs_when_any_kind_missing(make_service, fake_api, memory_adapter):
    memory_adapter.statuses[USER] = status_synced_at(
        FIXED_NOW - timedelta(minutes=2), last_contacts_sync=None
    )
    service = await started(make_service())

    await service.get_data()

    assert fake_api.calls


@pytest.mark.asyncio
async def test_most_recent_policy_uses_newest_timestamp(make_service, fake_api, memory_adapter):
    memory_adapter.statuses[USER] = status_synced_at(
        FIXED_NOW - timedelta(minutes=2), last_contacts_sync=None
    )
    config = SyncConfig(
        staleness_policy=StalenessPolicy.MOST_RECENT,
        background_throttle_ms=0,
        background_start_delay_ms=0,
        auto_load_older_data=False,
    )
    service = await started(make_service(config=config))

    await service.get_data()

    assert fake_api.calls == []


@pytest.mark.asyncio
async def test_disabled_sync_only_runs_when_forced(make_service, fake_api, memory_adapter):
    memory_adapter.statuses[USER] = status_synced_at(
        FIXED_NOW - timedelta(days=3), sync_enabled=False
    )
    service = await started(make_service())

    await service.get_data()
    assert fake_api.calls == []

    await service.get_data(force_refresh=True)
    assert fake_api.calls


@pytest.mark.asyncio
async def test_unreadable_status_triggers_sync(make_service, fake_api, memory_adapter):
    memory_adapter.fail_status_read = True
    service = await started(make_service())

    await service.get_data()

    assert fake_api.calls


@pytest.mark.asyncio
async def test_cached_data_is_published_before_any_remote_call(make_service, fake_api, memory_adapter):
    await memory_adapter.save_emails(USER, [make_message("cached", weeks_ago(5))])
    service = await started(make_service())
    observed = []
    service.subscribe("ui", lambda s: observed.append((len(fake_api.calls), len(s.emails), s.is_loading)))

    await service.get_data()

    assert (0, 1, True) in observed


@pytest.mark.asyncio
async def test_current_week_is_painted_before_older_weeks(make_service, fake_api):
    service = await started(make_service())
    snapshots = []
    service.subscribe("ui", snapshots.append)

    await service.get_data()

    first_with_email = next(s for s in snapshots if s.emails)
    assert first_with_email.progress.weeks_loaded == 1
    assert {e.id for e in first_with_email.emails} == {"msg-w0-a", "msg-w0-b"}
    assert first_with_email.contacts
    assert first_with_email.folders


@pytest.mark.asyncio
async def test_contacts_failure_keeps_cached_contacts(make_service, fake_api, memory_adapter):
    await memory_adapter.save_contacts(USER, [{"id": "old-1", "displayName": "Previously Cached"}])
    fake_api.fail("list_contacts")
    service = await started(make_service())

    snapshot = await service.get_data()

    names = {c.name for c in snapshot.contacts}
    assert "Previously Cached" in names
    assert {"Katherine Johnson", "Dorothy Vaughan"} <= names
    assert "Alan Turing" not in names
    assert len(snapshot.folders) == 3
    assert snapshot.emails
    assert "contacts" in snapshot.last_error


@pytest.mark.asyncio
async def test_failed_week_does_not_stop_older_weeks(make_service, fake_api):
    fake_api.fail("list_messages", times=1)
    service = await started(make_service())

    snapshot = await service.get_data()

    assert {e.id for e in snapshot.emails} == {"msg-w1"}
    assert [m.id for m in snapshot.meetings] == ["evt-w0"]
    assert snapshot.progress.weeks_loaded == 2
    assert snapshot.last_error.startswith("emails:")


@pytest.mark.asyncio
async def test_failed_entity_stays_stale_and_is_retried(make_service, fake_api, memory_adapter):
    fake_api.fail("list_contacts", times=1)
    service = await started(make_service())

    await service.get_data()

    status = memory_adapter.statuses[USER]
    assert status.last_contacts_sync is None
    assert status.last_emails_sync == FIXED_NOW
    assert status.last_meetings_sync == FIXED_NOW
    assert status.last_folders_sync == FIXED_NOW

    fake_api.calls.clear()
    snapshot = await service.get_data()

    assert "list_contacts" in fake_api.call_names
    assert memory_adapter.statuses[USER].last_contacts_sync == FIXED_NOW
    assert "Alan Turing" in {c.name for c in snapshot.contacts}
    assert snapshot.last_error is None


@pytest.mark.asyncio
async def test_failed_week_leaves_its_entity_unstamped(make_service, fake_api, memory_adapter):
    fake_api.fail("list_events", times=1)
    service = await started(make_service())

    await service.get_data()

    status = memory_adapter.statuses[USER]
    assert status.last_meetings_sync is None
    assert status.last_emails_sync == FIXED_NOW


@pytest.mark.asyncio
async def test_failed_cache_load_keeps_previous_collection(make_service, memory_adapter):
    service = await started(make_service())
    await service.get_data()

    memory_adapter.fail_loads.add(EntityKind.EMAILS)
    snapshot = await service.get_data(force_refresh=True)

    assert len(snapshot.emails) == 3


@pytest.mark.asyncio
async def test_get_data_never_raises(make_service, memory_adapter):
    memory_adapter.fail_status_update = True
    memory_adapter.fail_saves.add(EntityKind.FOLDERS)
    service = await started(make_service())

    snapshot = await service.get_data()

    assert snapshot.is_loading is False
    assert snapshot.folders == ()
    assert snapshot.emails
    assert snapshot.last_error.startswith("sync_status")


@pytest.mark.asyncio
async def test_load_more_weeks_reaches_horizon(make_service, fake_api):
    service = await started(make_service())
    snapshots = []
    service.subscribe("ui", snapshots.append)

    await service.get_data()
    snapshot = await service.load_more_weeks(4)

    assert snapshot.progress.weeks_loaded == 6
    assert snapshot.progress.total_weeks == 6
    assert snapshot.progress.has_more_data is False
    assert "msg-w3" in {e.id for e in snapshot.emails}
    assert {m.id for m in snapshot.meetings} == {"evt-w0", "evt-w2"}
    assert all(s.progress.weeks_loaded <= s.progress.total_weeks for s in snapshots)

    calls_before = len(fake_api.calls)
    await service.load_more_weeks(4)
    assert len(fake_api.calls) == calls_before


@pytest.mark.asyncio
async def test_load_more_weeks_is_capped_at_max(make_service):
    service = await started(make_service())
    await service.get_data()

    partial = await service.load_more_weeks(2)
    assert partial.progress.weeks_loaded == 4
    assert partial.progress.has_more_data is True

    final = await service.load_more_weeks(10)
    assert final.progress.weeks_loaded == 6
    assert final.progress.has_more_data is False


@pytest.mark.asyncio
@pytest.mark.parametrize(("refresh_every", "expected_reloads"), [(3, 2), (1, 5)])
async def test_cache_refresh_cadence_during_backfill(
    make_service, memory_adapter, refresh_every, expected_reloads
):
    config = SyncConfig(
        weeks_to_load_initially=2,
        max_weeks_to_load=6,
        auto_load_older_data=False,
        background_throttle_ms=0,
        cache_refresh_every_weeks=refresh_every,
    )
    service = await started(make_service(config=config))
    await service.get_data()

    reloads = []
    real_load = memory_adapter.load_emails

    async def counting_load(user_id):
        reloads.append(user_id)
        return await real_load(user_id)

    memory_adapter.load_emails = counting_load
    await service.load_more_weeks(4)

    assert len(reloads) == expected_reloads


@pytest.mark.asyncio
async def test_background_backfill_continues_to_max(make_service, fake_api):
    config = SyncConfig(
        weeks_to_load_initially=2,
        max_weeks_to_load=6,
        background_throttle_ms=0,
        background_start_delay_ms=0,
    )
    service = await started(make_service(config=config))
    snapshots = []
    service.subscribe("ui", snapshots.append)

    await service.get_data()
    await service.wait_for_backfill()

    snapshot = service.snapshot
    assert snapshot.progress.weeks_loaded == 6
    assert snapshot.progress.has_more_data is False
    assert "msg-w3" in {e.id for e in snapshot.emails}
    starts = [call[1] for call in fake_api.calls if call[0] == "list_messages"]
    assert starts == sorted(starts, reverse=True)
    assert len(starts) == 6
    assert service.is_syncing is False
    assert service.is_backfilling is False
    loaded = [s.progress.weeks_loaded for s in snapshots]
    assert loaded[-1] == 6
    assert all(s.progress.weeks_loaded <= s.progress.total_weeks for s in snapshots)


@pytest.mark.asyncio
async def test_backfill_stops_after_consecutive_empty_weeks(make_service):
    api = FakeWorkspaceApi(messages=[make_message("only", weeks_ago(0))])
    config = SyncConfig(
        weeks_to_load_initially=2,
        max_weeks_to_load=10,
        background_throttle_ms=0,
        background_start_delay_ms=0,
        stop_after_empty_weeks=2,
    )
    service = await started(make_service(api=api, config=config))

    await service.get_data()
    await service.wait_for_backfill()

    progress = service.snapshot.progress
    assert progress.weeks_loaded == 4
    assert progress.total_weeks == 4
    assert progress.has_more_data is False
    assert api.call_names.count("list_messages") == 4


@pytest.mark.asyncio
async def test_concurrent_get_data_is_single_flight(make_service, fake_api):
    config = SyncConfig(
        weeks_to_load_initially=2,
        max_weeks_to_load=6,
        background_throttle_ms=0,
        background_start_delay_ms=10_000,
    )
    service = await started(make_service(config=config))

    await service.get_data()
    assert service.is_backfilling is True
    assert service.is_syncing is True
    calls_before = len(fake_api.calls)

    snapshot = await service.get_data(force_refresh=True)

    assert len(fake_api.calls) == calls_before
    assert snapshot is service.snapshot

    assert await service.cancel_backfill() is True
    assert service.is_syncing is False


@pytest.mark.asyncio
async def test_cancel_backfill_leaves_resumable_progress(make_service):
    config = SyncConfig(
        weeks_to_load_initially=2,
        max_weeks_to_load=6,
        auto_load_older_data=True,
        background_throttle_ms=0,
        background_start_delay_ms=10_000,
    )
    service = await started(make_service(config=config))
    await service.get_data()
    assert service.snapshot.progress.total_weeks == 6

    assert await service.cancel_backfill() is True
    assert await service.cancel_backfill() is False

    progress = service.snapshot.progress
    assert progress.weeks_loaded == 2
    assert progress.total_weeks == 2
    assert progress.has_more_data is True

    resumed = await service.load_more_weeks(4)
    assert resumed.progress.weeks_loaded == 6


@pytest.mark.asyncio
async def test_reinitialize_same_user_stops_running_backfill(make_service):
    config = SyncConfig(
        weeks_to_load_initially=2,
        max_weeks_to_load=8,
        auto_load_older_data=True,
        background_throttle_ms=0,
        background_start_delay_ms=0,
    )
    service = await started(make_service(config=config))
    await service.get_data()
    for _ in range(3):
        await asyncio.sleep(0)
    assert service.is_backfilling is True

    await service.initialize(USER)

    assert service.is_backfilling is False
    assert service.is_syncing is False
    progress = service.snapshot.progress
    assert progress.weeks_loaded == 0
    assert progress.total_weeks == 2
    assert progress.has_more_data is True

    await service.get_data(force_refresh=True)
    await service.wait_for_backfill()

    progress = service.snapshot.progress
    assert progress.weeks_loaded == 8
    assert progress.total_weeks == 8
    assert progress.has_more_data is False
    assert "msg-w3" in {e.id for e in service.snapshot.emails}


@pytest.mark.asyncio
async def test_late_subscriber_gets_current_snapshot_immediately(make_service):
    service = await started(make_service())
    await service.get_data()
    seen = []

    service.subscribe("late", seen.append)

    assert len(seen) == 1
    assert seen[0] is service.snapshot
    assert not seen[0].is_empty


@pytest.mark.asyncio
async def test_published_snapshots_are_immutable(make_service):
    service = await started(make_service())
    seen = []
    service.subscribe("ui", seen.append)

    await service.get_data()

    assert seen[0].is_empty
    with pytest.raises(dataclasses.FrozenInstanceError):
        seen[-1].is_loading = True


@pytest.mark.asyncio
async def test_clear_cache_wipes_storage_and_snapshot(make_service, memory_adapter, fake_api):
    service = await started(make_service())
    seen = []
    service.subscribe("ui", seen.append)
    await service.get_data()

    await service.clear_cache()

    assert seen[-1].is_empty
    assert seen[-1].progress.weeks_loaded == 0
    assert all(memory_adapter.count(kind) == 0 for kind in EntityKind)
    assert USER not in memory_adapter.statuses

    fake_api.calls.clear()
    await service.get_data()
    assert "list_folders" in fake_api.call_names


@pytest.mark.asyncio
async def test_clear_cache_during_sync_forces_next_sync(make_service, memory_adapter, fake_api):
    service = await started(make_service())
    sync = asyncio.create_task(service.get_data())
    while "list_contacts" not in fake_api.call_names:
        await asyncio.sleep(0)

    await service.clear_cache()
    await sync

    assert USER not in memory_adapter.statuses
    assert all(memory_adapter.count(kind) == 0 for kind in EntityKind)
    assert service.snapshot.is_empty
    assert service.is_syncing is False

    fake_api.calls.clear()
    snapshot = await service.get_data()

    assert "list_folders" in fake_api.call_names
    assert len(snapshot.folders) == 3
    assert memory_adapter.statuses[USER].last_folders_sync == FIXED_NOW


@pytest.mark.asyncio
async def test_initialize_requires_user_id(make_service):
    service = make_service()

    with pytest.raises(SyncError):
        await service.initialize("  ")


@pytest.mark.asyncio
async def test_initialize_fails_when_persistent_storage_unavailable(make_service, monkeypatch):
    monkeypatch.setattr(
        "workspace_sync.features.unified_sync.repository.postgres_adapter.db_pool",
        SimpleNamespace(is_initialized=False),
    )
    service = make_service(adapter=PostgresStorageAdapter())

    with pytest.raises(StorageConfigurationError):
        await service.initialize(USER)


@pytest.mark.asyncio
async def test_operations_before_initialize(make_service, fake_api):
    service = make_service()

    snapshot = await service.get_data()

    assert snapshot.is_empty
    assert fake_api.calls == []
    with pytest.raises(SyncError):
        service.subscribe("ui", lambda s: None)


@pytest.mark.asyncio
async def test_switching_users_drops_old_subscribers(make_service):
    service = await started(make_service())
    old_seen = []
    service.subscribe("ui", old_seen.append)
    await service.get_data()
    delivered = len(old_seen)

    await service.initialize("user-2")
    await service.get_data()

    assert len(old_seen) == delivered
    assert service.user_id == "user-2"
