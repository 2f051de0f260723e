"""
Refresh pipeline: sync -> ingest -> evaluate -> dispatch, per field.

Both the periodic job (POST /cron/ndvi) and on-demand refreshes go through
FieldPipeline. A failure inside one field is logged and counted; it never
stops the rest of a batch.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

from .agro_api import AgroApiClient
from .alerts import ThresholdEvaluator
from .config import settings
from .database import utcnow
from .errors import PolygonNotFoundError, ProviderNotConfiguredError
from .logging_config import get_logger
from .models import BatchResult, Field, FieldRunResult, SyncStatus
from .notifications import NotificationDispatcher
from .repositories import FieldRepository, ObservationRepository
from .statistics import filter_by_cloud_coverage, resolve_days
from .sync import PolygonSyncService

logger = get_logger(__name__)


class FieldPipeline:
    def __init__(
        self,
        fields: FieldRepository,
        observations: ObservationRepository,
        sync_service: PolygonSyncService,
        client: AgroApiClient,
        dispatcher: NotificationDispatcher,
        evaluator: Optional[ThresholdEvaluator] = None,
        clock: Callable[[], datetime] = utcnow,
        delay_seconds: Optional[float] = None,
    ):
        self.fields = fields
        self.observations = observations
        self.sync_service = sync_service
        self.client = client
        self.dispatcher = dispatcher
        self.evaluator = evaluator or ThresholdEvaluator()
        self.clock = clock
        self.delay_seconds = settings.PROVIDER_CALL_DELAY_SECONDS if delay_seconds is None else delay_seconds

    async def refresh_field(self, field: Field, days: Optional[int] = None) -> FieldRunResult:
        record = await self.sync_service.ensure_synced(field)
        result = FieldRunResult(field_id=field.id, sync_status=record.sync_status)
        if record.sync_status != SyncStatus.SYNCED:
            result.needs_sync = True
            result.error = record.error_message
            return result

        end = self.clock()
        start = end - timedelta(days=resolve_days(days))
        try:
            readings = await self.client.ndvi_history(record.provider_polygon_id, field.id, start, end)
        except PolygonNotFoundError:
            # History 404s both for an unknown polygon and for one without data yet
            try:
                await self.client.get_polygon(record.provider_polygon_id)
            except PolygonNotFoundError:
                self.sync_service.mark_invalid(field.id, "Polygon no longer exists at provider")
                result.sync_status = SyncStatus.ERROR
                result.needs_sync = True
                result.error = "Polygon no longer exists at provider"
                return result
            readings = []

        result.readings = len(readings)
        result.inserted = self.observations.upsert_many(readings)

        history = filter_by_cloud_coverage(self.observations.list_for_field(field.id))
        decision = self.evaluator.evaluate(field, history)
        if decision is not None:
            dispatch = await self.dispatcher.dispatch(decision)
            result.alert_created = dispatch.created
            result.notification_id = dispatch.notification_id
            result.partial_failure = dispatch.partial_failure

        logger.info(
            "Field refreshed",
            extra={"extra": {
                "field_id": field.id,
                "readings": result.readings,
                "inserted": result.inserted,
                "alert_created": result.alert_created,
            }},
        )
        return result

    async def run_all(self, days: Optional[int] = None) -> BatchResult:
        """Refresh every field, pacing provider calls"""
        if not self.client.configured:
            raise ProviderNotConfiguredError()

        batch = BatchResult()
        for index, field in enumerate(self.fields.list_all()):
            if index and self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)

            try:
                result = await self.refresh_field(field, days)
            except Exception as e:
                logger.error(
                    "Field refresh failed",
                    extra={"extra": {"field_id": field.id, "error": str(e)}},
                    exc_info=True,
                )
                batch.failed += 1
                batch.details.append(FieldRunResult(
                    field_id=field.id,
                    sync_status=self.sync_service.get_sync_status(field.id),
                    error=str(e),
                ))
                continue

            if result.needs_sync:
                batch.skipped += 1
            else:
                batch.processed += 1
            if result.alert_created:
                batch.alerts_created += 1
            batch.details.append(result)

        logger.info(
            "Field batch finished",
            extra={"extra": {
                "processed": batch.processed,
                "failed": batch.failed,
                "skipped": batch.skipped,
                "alerts_created": batch.alerts_created,
            }},
        )
        return batch
