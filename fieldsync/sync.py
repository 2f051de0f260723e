"""
Polygon sync state machine.

A field moves not_synced -> pending -> synced, may fall to error from pending
or synced, and error is always retriable back to pending. "not_synced" is the
absence of a polygon_syncs row. Every status write is a compare-and-set on the
row, so concurrent triggers for the same field cannot both register a polygon
through the same claim. A pending claim that outlives
SYNC_PENDING_TIMEOUT_SECONDS is failed and retried by the next trigger.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

from .agro_api import AgroApiClient, polygon_name
from .config import settings
from .database import utcnow
from .errors import FieldSyncError, InvalidTransitionError, ProviderNotConfiguredError
from .logging_config import get_logger
from .models import Field, PolygonSync, SyncStatus
from .repositories import PolygonSyncRepository

logger = get_logger(__name__)

ALLOWED_TRANSITIONS = {
    (SyncStatus.NOT_SYNCED, SyncStatus.PENDING),
    (SyncStatus.PENDING, SyncStatus.SYNCED),
    (SyncStatus.PENDING, SyncStatus.ERROR),
    (SyncStatus.SYNCED, SyncStatus.ERROR),
    (SyncStatus.ERROR, SyncStatus.PENDING),
}


def check_transition(current: SyncStatus, target: SyncStatus):
    if (current, target) not in ALLOWED_TRANSITIONS:
        raise InvalidTransitionError(current.value, target.value)


class PolygonSyncService:
    def __init__(
        self,
        repository: PolygonSyncRepository,
        client: AgroApiClient,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.client = client
        self.clock = clock

    def backoff_seconds(self, attempts: int) -> int:
        """Delay before the next retry after `attempts` consecutive failures"""
        exponent = max(attempts - 1, 0)
        return min(settings.SYNC_RETRY_BASE_SECONDS * (2 ** exponent), settings.SYNC_RETRY_MAX_SECONDS)

    def get_sync(self, field_id: str) -> Optional[PolygonSync]:
        return self.repository.get(field_id)

    def get_sync_status(self, field_id: str) -> SyncStatus:
        """Read-only; a field without a sync row is not_synced"""
        record = self.repository.get(field_id)
        return record.sync_status if record else SyncStatus.NOT_SYNCED

    def _transition(self, field_id: str, current: SyncStatus, target: SyncStatus, **changes) -> bool:
        check_transition(current, target)
        applied = self.repository.compare_and_set(field_id, current, target, **changes)
        if applied:
            logger.info(
                "Polygon sync transition",
                extra={"extra": {"field_id": field_id, "from": current.value, "to": target.value}},
            )
        else:
            logger.info(
                "Polygon sync transition lost to a concurrent writer",
                extra={"extra": {"field_id": field_id, "from": current.value, "to": target.value}},
            )
        return applied

    async def ensure_synced(self, field: Field, force: bool = False) -> PolygonSync:
        """
        Make sure the field has a provider polygon, registering it if needed

        Args:
            field: Field to register
            force: Ignore the retry backoff of a field in error

        Returns:
            The sync row as it stands after this call. Provider failures are
            recorded on the row as `error`, never raised and never retried inline.
        """
        if not self.client.configured:
            raise ProviderNotConfiguredError()

        record = self.repository.get(field.id)

        if record is None:
            check_transition(SyncStatus.NOT_SYNCED, SyncStatus.PENDING)
            if not self.repository.create_pending(field.id):
                logger.info("Polygon sync already claimed", extra={"extra": {"field_id": field.id}})
                return self.repository.get(field.id)
            logger.info(
                "Polygon sync transition",
                extra={"extra": {"field_id": field.id, "from": "not_synced", "to": "pending"}},
            )
            return await self._register(field, attempts=0)

        if record.sync_status == SyncStatus.SYNCED:
            return record

        if record.sync_status == SyncStatus.PENDING:
            if not self._pending_expired(record):
                return record
            # The claim holder died or was cancelled; fail it so the retry path can run
            logger.warning(
                "Reclaiming interrupted polygon sync",
                extra={"extra": {"field_id": field.id, "pending_since": record.updated_at}},
            )
            if not self._transition(
                field.id,
                SyncStatus.PENDING,
                SyncStatus.ERROR,
                error_message="Sync interrupted",
                next_retry_at=None,
            ):
                return self.repository.get(field.id)
            record = self.repository.get(field.id)
            force = True

        if not force and record.next_retry_at and record.next_retry_at > self.clock():
            logger.info(
                "Polygon sync retry deferred",
                extra={"extra": {"field_id": field.id, "next_retry_at": record.next_retry_at}},
            )
            return record

        if not self._transition(field.id, SyncStatus.ERROR, SyncStatus.PENDING, next_retry_at=None):
            return self.repository.get(field.id)
        return await self._register(field, attempts=record.attempts)

    def _pending_expired(self, record: PolygonSync) -> bool:
        if record.updated_at is None:
            return True
        age = self.clock() - record.updated_at
        return age > timedelta(seconds=settings.SYNC_PENDING_TIMEOUT_SECONDS)

    async def _register(self, field: Field, attempts: int) -> PolygonSync:
        name = polygon_name(field.id)
        try:
            existing = await self.client.find_polygon_by_name(name)
            if existing:
                polygon_id = existing["id"]
                logger.info(
                    "Reusing existing Agro polygon",
                    extra={"extra": {"field_id": field.id, "polygon_id": polygon_id}},
                )
            else:
                await self.client.check_capacity(field.area_hectares)
                created = await self.client.create_polygon(name, field.boundary.model_dump())
                polygon_id = created["id"]
        except asyncio.CancelledError:
            self._transition(
                field.id,
                SyncStatus.PENDING,
                SyncStatus.ERROR,
                provider_polygon_id=None,
                error_message="Sync cancelled",
                next_retry_at=None,
            )
            logger.warning("Polygon sync cancelled", extra={"extra": {"field_id": field.id}})
            raise
        except Exception as e:
            attempts += 1
            delay = self.backoff_seconds(attempts)
            self._transition(
                field.id,
                SyncStatus.PENDING,
                SyncStatus.ERROR,
                provider_polygon_id=None,
                error_message=str(e),
                attempts=attempts,
                next_retry_at=self.clock() + timedelta(seconds=delay),
            )
            logger.warning(
                "Polygon sync failed",
                extra={"extra": {
                    "field_id": field.id,
                    "error": str(e),
                    "attempts": attempts,
                    "retry_in_seconds": delay,
                }},
            )
            if not isinstance(e, FieldSyncError):
                raise
            return self.repository.get(field.id)

        self._transition(
            field.id,
            SyncStatus.PENDING,
            SyncStatus.SYNCED,
            provider_polygon_id=str(polygon_id),
            error_message=None,
            attempts=0,
            next_retry_at=None,
            last_synced_at=self.clock(),
        )
        return self.repository.get(field.id)

    def mark_invalid(self, field_id: str, reason: str) -> bool:
        """The provider no longer knows our polygon: synced -> error, eligible for immediate retry"""
        record = self.repository.get(field_id)
        if record is None or record.sync_status != SyncStatus.SYNCED:
            return False
        return self._transition(
            field_id,
            SyncStatus.SYNCED,
            SyncStatus.ERROR,
            provider_polygon_id=None,
            error_message=reason,
            next_retry_at=None,
        )

    async def unsync(self, field: Field) -> bool:
        """Delete the provider polygon and forget the sync row (field returns to not_synced)"""
        record = self.repository.get(field.id)
        if record is None:
            return False

        if record.provider_polygon_id:
            await self.client.delete_polygon(record.provider_polygon_id)
        elif self.client.configured:
            # A polygon may exist from a registration whose success was never recorded
            existing = await self.client.find_polygon_by_name(polygon_name(field.id))
            if existing:
                await self.client.delete_polygon(existing["id"])

        self.repository.delete(field.id)
        logger.info("Polygon unsynced", extra={"extra": {"field_id": field.id}})
        return True
