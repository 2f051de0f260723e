import asyncio
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from fieldsync.agro_api import AgroApiClient, polygon_name
from fieldsync.config import settings
from fieldsync.errors import InvalidTransitionError, ProviderNotConfiguredError
from fieldsync.models import SyncStatus
from fieldsync.repositories import PolygonSyncRepository
from fieldsync.sync import ALLOWED_TRANSITIONS, PolygonSyncService, check_transition


@pytest.fixture
def repository(database):
    return PolygonSyncRepository(database)


@pytest.fixture
def service(repository, agro, clock):
    return PolygonSyncService(repository, agro.client(), clock=clock)


@pytest.mark.parametrize("current,target", sorted(ALLOWED_TRANSITIONS))
def test_allowed_transitions_pass(current, target):
    check_transition(current, target)


@pytest.mark.parametrize("current,target", [
    (SyncStatus.NOT_SYNCED, SyncStatus.SYNCED),
    (SyncStatus.NOT_SYNCED, SyncStatus.ERROR),
    (SyncStatus.SYNCED, SyncStatus.PENDING),
    (SyncStatus.ERROR, SyncStatus.SYNCED),
    (SyncStatus.PENDING, SyncStatus.NOT_SYNCED),
])
def test_other_transitions_rejected(current, target):
    with pytest.raises(InvalidTransitionError):
        check_transition(current, target)


def test_get_sync_status_is_read_only(service, repository, field, agro):
    assert service.get_sync_status(field.id) == SyncStatus.NOT_SYNCED
    assert repository.get(field.id) is None
    assert agro.calls == []


def test_ensure_synced_registers_polygon(service, field, agro):
    record = asyncio.run(service.ensure_synced(field))

    assert record.sync_status == SyncStatus.SYNCED
    assert record.provider_polygon_id in agro.polygons
    created = agro.polygons[record.provider_polygon_id]
    assert created["name"] == polygon_name(field.id)
    assert created["geo_json"]["geometry"]["type"] == "Polygon"
    assert record.attempts == 0
    assert record.last_synced_at is not None


def test_synced_field_is_not_registered_again(service, field, agro):
    asyncio.run(service.ensure_synced(field))
    asyncio.run(service.ensure_synced(field))

    assert agro.count("POST", "/polygons") == 1


def test_existing_polygon_is_reused_instead_of_created(service, field, agro):
    agro.polygons["poly-legacy"] = {"id": "poly-legacy", "name": polygon_name(field.id), "area": 12.5}

    record = asyncio.run(service.ensure_synced(field))

    assert record.provider_polygon_id == "poly-legacy"
    assert agro.count("POST", "/polygons") == 0


def test_provider_failure_records_error_without_inline_retry(service, field, agro, clock):
    agro.fail_status = 500

    record = asyncio.run(service.ensure_synced(field))

    assert record.sync_status == SyncStatus.ERROR
    assert record.provider_polygon_id is None
    assert record.attempts == 1
    assert record.next_retry_at == clock() + timedelta(seconds=60)
    assert "500" in record.error_message
    assert len(agro.calls) == 1


def test_error_waits_for_backoff_then_retries(service, field, agro, clock):
    agro.fail_status = 503
    asyncio.run(service.ensure_synced(field))
    agro.fail_status = None
    calls_after_failure = len(agro.calls)

    deferred = asyncio.run(service.ensure_synced(field))
    assert deferred.sync_status == SyncStatus.ERROR
    assert len(agro.calls) == calls_after_failure

    clock.advance(seconds=61)
    record = asyncio.run(service.ensure_synced(field))
    assert record.sync_status == SyncStatus.SYNCED
    assert record.error_message is None


def test_force_ignores_backoff(service, field, agro):
    agro.fail_status = 500
    asyncio.run(service.ensure_synced(field))
    agro.fail_status = None

    record = asyncio.run(service.ensure_synced(field, force=True))

    assert record.sync_status == SyncStatus.SYNCED


def test_repeated_failures_back_off_exponentially(service, field, agro, clock):
    agro.fail_status = 500
    asyncio.run(service.ensure_synced(field))
    record = asyncio.run(service.ensure_synced(field, force=True))

    assert record.attempts == 2
    assert record.next_retry_at == clock() + timedelta(seconds=120)


def test_backoff_is_capped():
    service = PolygonSyncService(repository=None, client=None)
    assert service.backoff_seconds(1) == 60
    assert service.backoff_seconds(3) == 240
    assert service.backoff_seconds(30) == settings.SYNC_RETRY_MAX_SECONDS


def test_pending_field_is_observed_not_retriggered(service, repository, field, agro, clock):
    assert repository.create_pending(field.id)
    clock.set(datetime.now(timezone.utc))

    record = asyncio.run(service.ensure_synced(field))

    assert record.sync_status == SyncStatus.PENDING
    assert agro.calls == []


def test_concurrent_triggers_register_one_polygon(service, field, agro):
    async def both():
        return await asyncio.gather(service.ensure_synced(field), service.ensure_synced(field))

    first, second = asyncio.run(both())

    assert agro.count("POST", "/polygons") == 1
    assert {first.sync_status, second.sync_status} <= {SyncStatus.PENDING, SyncStatus.SYNCED}
    assert service.get_sync_status(field.id) == SyncStatus.SYNCED


def test_free_tier_polygon_limit_moves_to_error(service, field, agro):
    for i in range(settings.PROVIDER_MAX_POLYGONS):
        agro.polygons[f"other-{i}"] = {"id": f"other-{i}", "name": f"someone-{i}", "area": 1}

    record = asyncio.run(service.ensure_synced(field))

    assert record.sync_status == SyncStatus.ERROR
    assert "Polygon limit" in record.error_message
    assert agro.count("POST", "/polygons") == 0


def test_not_configured_raises_before_any_write(repository, field, monkeypatch):
    monkeypatch.setattr(settings, "AGRO_API_KEY", None)
    service = PolygonSyncService(repository, AgroApiClient())

    with pytest.raises(ProviderNotConfiguredError):
        asyncio.run(service.ensure_synced(field))
    assert repository.get(field.id) is None


def test_mark_invalid_moves_synced_to_error(service, field):
    asyncio.run(service.ensure_synced(field))

    assert service.mark_invalid(field.id, "Polygon no longer exists at provider")

    record = service.get_sync(field.id)
    assert record.sync_status == SyncStatus.ERROR
    assert record.provider_polygon_id is None
    assert record.next_retry_at is None


def test_mark_invalid_ignores_unsynced_field(service, field):
    assert not service.mark_invalid(field.id, "gone")
    assert service.get_sync_status(field.id) == SyncStatus.NOT_SYNCED


def test_unsync_deletes_polygon_and_row(service, field, agro):
    record = asyncio.run(service.ensure_synced(field))

    assert asyncio.run(service.unsync(field))

    assert record.provider_polygon_id not in agro.polygons
    assert service.get_sync_status(field.id) == SyncStatus.NOT_SYNCED


def test_unsync_tolerates_polygon_already_gone(service, field, agro):
    asyncio.run(service.ensure_synced(field))
    agro.polygons.clear()

    assert asyncio.run(service.unsync(field))
    assert service.get_sync_status(field.id) == SyncStatus.NOT_SYNCED


def test_stale_compare_and_set_is_rejected(repository, field):
    repository.create_pending(field.id)

    assert repository.compare_and_set(field.id, SyncStatus.PENDING, SyncStatus.SYNCED, provider_polygon_id="p-1")
    assert not repository.compare_and_set(field.id, SyncStatus.PENDING, SyncStatus.ERROR, provider_polygon_id=None)
    assert repository.get(field.id).sync_status == SyncStatus.SYNCED


def test_synced_row_requires_provider_id(repository, field):
    repository.create_pending(field.id)

    with pytest.raises(sqlite3.IntegrityError):
        repository.compare_and_set(field.id, SyncStatus.PENDING, SyncStatus.SYNCED)


def test_cancelled_registration_does_not_leave_field_pending(service, field, agro, monkeypatch):
    real_lookup = service.client.find_polygon_by_name

    async def scenario():
        started = asyncio.Event()

        async def hang(name):
            started.set()
            await asyncio.Event().wait()

        monkeypatch.setattr(service.client, "find_polygon_by_name", hang)
        task = asyncio.create_task(service.ensure_synced(field))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        interrupted = service.get_sync(field.id)
        monkeypatch.setattr(service.client, "find_polygon_by_name", real_lookup)
        return interrupted, await service.ensure_synced(field, force=True)

    interrupted, retried = asyncio.run(scenario())

    assert interrupted.sync_status == SyncStatus.ERROR
    assert interrupted.error_message == "Sync cancelled"
    assert retried.sync_status == SyncStatus.SYNCED
    assert retried.provider_polygon_id in agro.polygons


def test_stale_pending_claim_is_reclaimed(service, repository, field, agro, clock):
    assert repository.create_pending(field.id)

    clock.set(datetime.now(timezone.utc))
    fresh = asyncio.run(service.ensure_synced(field, force=True))
    assert fresh.sync_status == SyncStatus.PENDING

    clock.set(datetime.now(timezone.utc) + timedelta(seconds=settings.SYNC_PENDING_TIMEOUT_SECONDS + 1))
    record = asyncio.run(service.ensure_synced(field))

    assert record.sync_status == SyncStatus.SYNCED
    assert agro.count("POST", "/polygons") == 1
