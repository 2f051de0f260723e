"""
Vegetation statistics over a day window.

Snapshots are derived on every request from the cached observations plus, when
asked for, a fresh imagery search. Nothing here is persisted.
"""

import math
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Sequence

from .agro_api import AgroApiClient
from .config import settings
from .database import utcnow
from .errors import ProviderNotConfiguredError, ValidationError
from .logging_config import get_logger
from .models import (
    Classification,
    Field,
    FieldStatistics,
    Observation,
    StatisticsSnapshot,
    SyncStatus,
    Trend,
)
from .repositories import ObservationRepository
from .sync import PolygonSyncService

logger = get_logger(__name__)


def resolve_days(days: Optional[int]) -> int:
    if days is None:
        return settings.DEFAULT_DAYS
    if days < 1:
        raise ValidationError("days must be a positive integer")
    return min(days, settings.MAX_DAYS)


def filter_by_cloud_coverage(items: Iterable, max_cloud: Optional[float] = None) -> List:
    """Keep items whose cloud_coverage is at most max_cloud (20.0 passes at max=20)"""
    limit = settings.MAX_CLOUD_COVERAGE if max_cloud is None else max_cloud
    return [item for item in items if item.cloud_coverage <= limit]


def classify_value(value: Optional[float]) -> Optional[Classification]:
    if value is None:
        return None
    if value < settings.CRITICAL_CUTOFF:
        return Classification.CRITICAL
    if value < settings.OPTIMAL_CUTOFF:
        return Classification.WATCH
    return Classification.OPTIMAL


def compute_trend(values: Sequence[float], epsilon: Optional[float] = None) -> Trend:
    """
    Direction of the current (last) value against the earliest third of the window

    Args:
        values: Index values in ascending date order
        epsilon: Dead band around zero change
    """
    epsilon = settings.TREND_EPSILON if epsilon is None else epsilon
    if len(values) < 2:
        return Trend.STABLE

    head = values[:math.ceil(len(values) / 3)]
    delta = values[-1] - sum(head) / len(head)
    if delta > epsilon:
        return Trend.RISING
    if delta < -epsilon:
        return Trend.FALLING
    return Trend.STABLE


def summarize(observations: Iterable[Observation]) -> StatisticsSnapshot:
    ordered = sorted(observations, key=lambda obs: (obs.observation_date, obs.source))
    if not ordered:
        return StatisticsSnapshot()

    values = [obs.mean_index for obs in ordered]
    current = values[-1]
    return StatisticsSnapshot(
        count=len(values),
        mean=round(sum(values) / len(values), 3),
        min=min(values),
        max=max(values),
        current_value=current,
        current_classification=classify_value(current),
        trend=compute_trend(values),
        start_date=ordered[0].observation_date,
        end_date=ordered[-1].observation_date,
    )


def vegetation_status(value: Optional[float]) -> str:
    """Five-level NDVI health label"""
    if value is None:
        return "unknown"
    if value >= 0.6:
        return "excellent"
    if value >= 0.4:
        return "good"
    if value >= 0.2:
        return "moderate"
    return "poor"


class StatisticsEngine:
    def __init__(
        self,
        sync_service: PolygonSyncService,
        client: AgroApiClient,
        observations: ObservationRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sync_service = sync_service
        self.client = client
        self.observations = observations
        self.clock = clock

    async def get_field_statistics(
        self, field: Field, days: Optional[int] = None, include_images: bool = True
    ) -> FieldStatistics:
        """
        Statistics for one field over the last `days` days

        A field that is not synced yields needs_sync=True with empty data rather
        than an error. Provider outages propagate as ProviderUnavailableError.
        """
        days = resolve_days(days)
        record = self.sync_service.get_sync(field.id)
        status = record.sync_status if record else SyncStatus.NOT_SYNCED

        if status != SyncStatus.SYNCED:
            return FieldStatistics(
                field_id=field.id,
                field_name=field.name,
                days=days,
                sync_status=status,
                needs_sync=True,
            )

        end = self.clock()
        start = end - timedelta(days=days)

        images = []
        if include_images:
            if not self.client.configured:
                raise ProviderNotConfiguredError()
            found = await self.client.search_images(record.provider_polygon_id, start, end)
            images = filter_by_cloud_coverage(found)
            logger.info(
                "Satellite images filtered",
                extra={"extra": {"field_id": field.id, "found": len(found), "kept": len(images)}},
            )

        readings = filter_by_cloud_coverage(
            self.observations.list_for_field(field.id, start.date(), end.date(), descending=True)
        )
        snapshot = summarize(readings)

        return FieldStatistics(
            field_id=field.id,
            field_name=field.name,
            days=days,
            sync_status=status,
            needs_sync=False,
            images=images,
            total_images=len(images),
            readings=readings,
            snapshot=snapshot,
            vegetation_status=vegetation_status(snapshot.current_value),
            provider_polygon_id=record.provider_polygon_id,
        )
