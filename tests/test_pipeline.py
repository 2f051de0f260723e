import asyncio
from datetime import date

import pytest

from fieldsync.agro_api import AgroApiClient
from fieldsync.alerts import ThresholdEvaluator
from fieldsync.config import settings
from fieldsync.errors import ProviderNotConfiguredError
from fieldsync.models import (
    NotificationBulkDismiss,
    NotificationBulkRead,
    PushKeys,
    PushSubscriptionCreate,
    Severity,
    SyncStatus,
)
from fieldsync.notifications import NotificationService
from fieldsync.pipeline import FieldPipeline
from fieldsync.repositories import (
    FieldRepository,
    NotificationRepository,
    ObservationRepository,
    PolygonSyncRepository,
    PushSubscriptionRepository,
)
from fieldsync.sync import PolygonSyncService

from conftest import ndvi_item


def june(day: int) -> date:
    return date(2025, 6, day)


@pytest.fixture
def build_pipeline(database, agro, clock, push_sender, email_client, make_dispatcher):
    def _build(evaluator=None, client=None):
        client = client or agro.client()
        return FieldPipeline(
            fields=FieldRepository(database),
            observations=ObservationRepository(database),
            sync_service=PolygonSyncService(PolygonSyncRepository(database), client, clock=clock),
            client=client,
            dispatcher=make_dispatcher(push_sender, email_client),
            evaluator=evaluator,
            clock=clock,
            delay_seconds=0,
        )
    return _build


@pytest.fixture
def pipeline(build_pipeline):
    return build_pipeline()


def alerts_for(database, user):
    notifications, _ = NotificationRepository(database).list_for_user(user.id, limit=100)
    return sorted(notifications, key=lambda n: n.episode_start)


def test_field_without_readings_creates_no_alert(pipeline, field, database, user):
    result = asyncio.run(pipeline.refresh_field(field))

    assert result.sync_status == SyncStatus.SYNCED
    assert result.readings == 0
    assert not result.alert_created
    assert alerts_for(database, user) == []


def test_first_breach_creates_one_mild_alert(pipeline, field, agro, database, user, push_sender, email_client):
    PushSubscriptionRepository(database).save(
        user.id, PushSubscriptionCreate(endpoint="https://push.test/a", keys=PushKeys(p256dh="k", auth="s"))
    )
    agro.ndvi = [ndvi_item(june(1), 0.25)]

    result = asyncio.run(pipeline.refresh_field(field))

    assert result.alert_created
    assert result.inserted == 1
    [alert] = alerts_for(database, user)
    assert alert.severity == Severity.MILD
    assert alert.episode_start == june(1)
    assert alert.id == result.notification_id
    assert len(push_sender.sent) == 1
    assert len(email_client.sent) == 1


def test_sustained_breach_alerts_once_per_episode(pipeline, field, agro, database, user):
    agro.ndvi = [ndvi_item(june(1), 0.25)]
    asyncio.run(pipeline.refresh_field(field))

    agro.ndvi.append(ndvi_item(june(2), 0.20))
    second = asyncio.run(pipeline.refresh_field(field))
    assert not second.alert_created
    assert len(alerts_for(database, user)) == 1

    agro.ndvi.append(ndvi_item(june(3), 0.35))
    recovered = asyncio.run(pipeline.refresh_field(field))
    assert not recovered.alert_created

    agro.ndvi.append(ndvi_item(june(4), 0.22))
    fourth = asyncio.run(pipeline.refresh_field(field))
    assert fourth.alert_created
    assert [a.episode_start for a in alerts_for(database, user)] == [june(1), june(4)]


def test_read_or_dismissed_alert_still_blocks_same_episode(pipeline, field, agro, database, user):
    agro.ndvi = [ndvi_item(june(1), 0.25)]
    asyncio.run(pipeline.refresh_field(field))
    inbox = NotificationService(NotificationRepository(database))
    inbox.mark_read(user.id, NotificationBulkRead(mark_all=True))
    inbox.dismiss(user.id, NotificationBulkDismiss(dismiss_all=True))

    agro.ndvi.append(ndvi_item(june(2), 0.21))
    result = asyncio.run(pipeline.refresh_field(field))

    assert not result.alert_created


def test_reingesting_is_a_no_op(pipeline, field, agro):
    agro.ndvi = [ndvi_item(june(1), 0.6), ndvi_item(june(2), 0.62)]

    first = asyncio.run(pipeline.refresh_field(field))
    second = asyncio.run(pipeline.refresh_field(field))

    assert first.inserted == 2
    assert second.readings == 2
    assert second.inserted == 0


def test_cloudy_reading_does_not_alert(pipeline, field, agro, database, user):
    agro.ndvi = [ndvi_item(june(1), 0.6), ndvi_item(june(2), 0.1, cloud=80)]

    result = asyncio.run(pipeline.refresh_field(field))

    assert result.inserted == 2
    assert not result.alert_created


def test_vanished_polygon_marks_field_invalid(pipeline, field, agro):
    asyncio.run(pipeline.refresh_field(field))
    agro.polygons.clear()

    result = asyncio.run(pipeline.refresh_field(field))

    assert result.sync_status == SyncStatus.ERROR
    assert result.needs_sync
    assert pipeline.sync_service.get_sync(field.id).provider_polygon_id is None


def test_polygon_without_history_is_not_invalidated(pipeline, field, agro):
    asyncio.run(pipeline.refresh_field(field))
    agro.ndvi_missing = True

    result = asyncio.run(pipeline.refresh_field(field))

    assert result.sync_status == SyncStatus.SYNCED
    assert result.readings == 0


def test_registration_failure_reports_needs_sync(pipeline, field, agro):
    agro.fail_status = 503

    result = asyncio.run(pipeline.refresh_field(field))

    assert result.needs_sync
    assert result.sync_status == SyncStatus.ERROR
    assert "503" in result.error


class ExplodingEvaluator(ThresholdEvaluator):
    def __init__(self, field_id):
        self.field_id = field_id

    def evaluate(self, field, observations):
        if field.id == self.field_id:
            raise RuntimeError("evaluation crashed")
        return super().evaluate(field, observations)


def test_batch_survives_a_failing_field(build_pipeline, make_field, agro, database, user):
    broken = make_field("Broken")
    healthy = make_field("Healthy")
    agro.ndvi = [ndvi_item(june(1), 0.1)]
    pipeline = build_pipeline(evaluator=ExplodingEvaluator(broken.id))

    batch = asyncio.run(pipeline.run_all())

    assert batch.failed == 1
    assert batch.processed == 1
    assert batch.alerts_created == 1
    failed = [d for d in batch.details if d.error]
    assert failed[0].field_id == broken.id
    assert "evaluation crashed" in failed[0].error
    assert [a.field_id for a in alerts_for(database, user)] == [healthy.id]


def test_batch_counts_unsynced_fields_as_skipped(pipeline, field, agro):
    agro.fail_status = 500

    batch = asyncio.run(pipeline.run_all())

    assert batch.skipped == 1
    assert batch.failed == 0


def test_batch_requires_configured_provider(build_pipeline, field, monkeypatch):
    monkeypatch.setattr(settings, "AGRO_API_KEY", None)

    with pytest.raises(ProviderNotConfiguredError):
        asyncio.run(build_pipeline(client=AgroApiClient()).run_all())
