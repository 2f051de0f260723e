"""FastAPI dependency providers wiring repositories and services per request"""

from fastapi import Depends, HTTPException

from .agro_api import AgroApiClient, agro_client
from .auth import require_user
from .database import Database, get_database
from .mailer import EmailClient, get_email_client
from .models import Field, User
from .notifications import NotificationDispatcher, NotificationService
from .pipeline import FieldPipeline
from .push import WebPushSender, push_sender
from .repositories import (
    FieldRepository,
    NotificationRepository,
    ObservationRepository,
    PolygonSyncRepository,
    PreferencesRepository,
    PushSubscriptionRepository,
    UserRepository,
)
from .statistics import StatisticsEngine
from .sync import PolygonSyncService


def get_agro_client() -> AgroApiClient:
    return agro_client


def get_push_sender() -> WebPushSender:
    return push_sender


def get_mailer() -> EmailClient:
    return get_email_client()


def get_sync_service(
    database: Database = Depends(get_database),
    client: AgroApiClient = Depends(get_agro_client),
) -> PolygonSyncService:
    return PolygonSyncService(PolygonSyncRepository(database), client)


def get_statistics_engine(
    database: Database = Depends(get_database),
    sync_service: PolygonSyncService = Depends(get_sync_service),
    client: AgroApiClient = Depends(get_agro_client),
) -> StatisticsEngine:
    return StatisticsEngine(sync_service, client, ObservationRepository(database))


def get_dispatcher(
    database: Database = Depends(get_database),
    sender: WebPushSender = Depends(get_push_sender),
    mailer: EmailClient = Depends(get_mailer),
) -> NotificationDispatcher:
    return NotificationDispatcher(
        notifications=NotificationRepository(database),
        subscriptions=PushSubscriptionRepository(database),
        preferences=PreferencesRepository(database),
        users=UserRepository(database),
        push_sender=sender,
        email_client=mailer,
    )


def get_notification_service(database: Database = Depends(get_database)) -> NotificationService:
    return NotificationService(NotificationRepository(database))


def get_pipeline(
    database: Database = Depends(get_database),
    sync_service: PolygonSyncService = Depends(get_sync_service),
    client: AgroApiClient = Depends(get_agro_client),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> FieldPipeline:
    return FieldPipeline(
        fields=FieldRepository(database),
        observations=ObservationRepository(database),
        sync_service=sync_service,
        client=client,
        dispatcher=dispatcher,
    )


def get_owned_field(
    field_id: str,
    user: User = Depends(require_user),
    database: Database = Depends(get_database),
) -> Field:
    """The caller's field, or 404 (absent and not-owned look the same)"""
    field = FieldRepository(database).get(field_id, user.id)
    if field is None:
        raise HTTPException(status_code=404, detail="Field not found")
    return field
