import hmac
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .agro_api import AgroApiClient
from .auth import get_token_from_request, require_user
from .config import settings
from .csrf import CSRF_COOKIE_NAME, apply_reissued_token, csrf_manager, require_csrf
from .database import Database, get_database
from .dependencies import (
    get_agro_client,
    get_notification_service,
    get_owned_field,
    get_pipeline,
    get_push_sender,
    get_statistics_engine,
    get_sync_service,
)
from .errors import (
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderUnavailableError,
    ValidationError,
)
from .logging_config import get_logger, setup_logging
from .models import (
    Field,
    FieldCreate,
    FieldUpdate,
    NotificationBulkDismiss,
    NotificationBulkRead,
    PreferencesUpdate,
    PushSubscriptionCreate,
    PushUnsubscribe,
    SyncStatus,
    User,
)
from .notifications import NotificationService
from .pipeline import FieldPipeline
from .push import WebPushSender
from .rate_limit import rate_limit
from .repositories import FieldRepository, PreferencesRepository, PushSubscriptionRepository
from .statistics import StatisticsEngine
from .sync import PolygonSyncService

# Initialize logging
setup_logging()
logger = get_logger(__name__)

app = FastAPI(title="FieldSync API")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(self)",
}

api_guard = Depends(rate_limit("api"))
data_fetch_guard = Depends(rate_limit("data_fetch"))
csrf_guard = Depends(require_csrf)


# Middleware to add request ID
@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id

    logger.info(
        f"Request started: {request.method} {request.url.path}",
        extra={"extra": {"request_id": request_id}}
    )

    try:
        response = await call_next(request)
        logger.info(
            f"Request completed: {request.method} {request.url.path} - {response.status_code}",
            extra={"extra": {"request_id": request_id}}
        )
        response.headers["X-Request-ID"] = request_id
        return response
    except Exception as e:
        logger.error(
            f"Request failed: {str(e)}",
            extra={"extra": {"request_id": request_id}},
            exc_info=True
        )
        raise


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for header, value in SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    return apply_reissued_token(request, response)


# ============================================
# ERROR HANDLERS
# ============================================

@app.exception_handler(RequestValidationError)
async def request_validation_error(request: Request, exc: RequestValidationError):
    details = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Validation failed", "details": details})


@app.exception_handler(ValidationError)
async def validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_error(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"error": str(exc) or "Not found"})


@app.exception_handler(ProviderNotConfiguredError)
async def provider_not_configured(request: Request, exc: ProviderNotConfiguredError):
    return JSONResponse(status_code=503, content={"error": str(exc), "configured": False})


@app.exception_handler(ProviderUnavailableError)
async def provider_unavailable(request: Request, exc: ProviderUnavailableError):
    logger.warning("Provider unavailable", extra={"extra": {"path": request.url.path, "error": str(exc)}})
    return JSONResponse(status_code=503, content={"error": str(exc), "retryable": True})


@app.exception_handler(ProviderError)
async def provider_error(request: Request, exc: ProviderError):
    logger.error(
        "Provider error",
        extra={"extra": {"path": request.url.path, "error": str(exc), "status_code": exc.status_code}},
    )
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition(request: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=409, content={"error": str(exc)})


# ============================================
# HEALTH & SECURITY
# ============================================

@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "agro_configured": settings.agro_configured,
        "push_configured": settings.push_configured,
        "email_configured": settings.email_configured,
    }


@app.get("/security/csrf", dependencies=[api_guard])
async def get_csrf_token(request: Request):
    """Issue (or reuse) the CSRF token for the current session and set its cookie"""
    session = get_token_from_request(request)
    token, reused = csrf_manager.get_or_issue(session, request.cookies.get(CSRF_COOKIE_NAME))

    response = JSONResponse({"csrfToken": token, "expiresIn": csrf_manager.max_age})
    if not reused:
        csrf_manager.set_cookie(response, token)
    return response


# ============================================
# FIELDS
# ============================================

def _sync_payload(field_id: str, sync_service: PolygonSyncService) -> dict:
    record = sync_service.get_sync(field_id)
    if record is None:
        return {"field_id": field_id, "sync_status": SyncStatus.NOT_SYNCED.value, "configured": sync_service.client.configured}
    payload = record.model_dump(mode="json")
    payload["configured"] = sync_service.client.configured
    return payload


@app.get("/fields", dependencies=[api_guard])
async def list_fields(user: User = Depends(require_user), database: Database = Depends(get_database)):
    fields = FieldRepository(database).list_for_user(user.id)
    return {"fields": [f.model_dump(mode="json") for f in fields], "count": len(fields)}


@app.post("/fields", status_code=status.HTTP_201_CREATED, dependencies=[api_guard, csrf_guard])
async def create_field(
    payload: FieldCreate,
    user: User = Depends(require_user),
    database: Database = Depends(get_database),
):
    field = FieldRepository(database).create(user.id, payload)
    logger.info("Field created", extra={"extra": {"field_id": field.id, "user_id": user.id}})
    return field.model_dump(mode="json")


@app.get("/fields/{field_id}", dependencies=[api_guard])
async def get_field(field: Field = Depends(get_owned_field)):
    return field.model_dump(mode="json")


@app.patch("/fields/{field_id}", dependencies=[api_guard, csrf_guard])
async def update_field(
    payload: FieldUpdate,
    field: Field = Depends(get_owned_field),
    database: Database = Depends(get_database),
):
    updated = FieldRepository(database).update(field.id, field.user_id, payload)
    if updated is None:
        raise HTTPException(status_code=404, detail="Field not found")
    return updated.model_dump(mode="json")


@app.delete("/fields/{field_id}", dependencies=[api_guard, csrf_guard])
async def delete_field(
    field: Field = Depends(get_owned_field),
    database: Database = Depends(get_database),
    sync_service: PolygonSyncService = Depends(get_sync_service),
):
    try:
        await sync_service.unsync(field)
    except (ProviderNotConfiguredError, ProviderUnavailableError) as e:
        # The local field goes regardless; the provider polygon stays behind
        logger.warning(
            "Could not delete provider polygon",
            extra={"extra": {"field_id": field.id, "error": str(e)}},
        )

    FieldRepository(database).delete(field.id, field.user_id)
    logger.info("Field deleted", extra={"extra": {"field_id": field.id}})
    return {"success": True}


# ============================================
# POLYGON SYNC
# ============================================

@app.get("/fields/{field_id}/sync", dependencies=[api_guard])
async def get_field_sync(
    field: Field = Depends(get_owned_field),
    sync_service: PolygonSyncService = Depends(get_sync_service),
):
    return _sync_payload(field.id, sync_service)


@app.post("/fields/{field_id}/sync", dependencies=[data_fetch_guard, csrf_guard])
async def sync_field(
    field: Field = Depends(get_owned_field),
    sync_service: PolygonSyncService = Depends(get_sync_service),
    pipeline: FieldPipeline = Depends(get_pipeline),
):
    """
    Register the field with the provider now, then refresh its readings

    Ignores the retry backoff; a field in error is retried immediately.
    """
    record = await sync_service.ensure_synced(field, force=True)
    if record.sync_status == SyncStatus.ERROR:
        payload = _sync_payload(field.id, sync_service)
        payload["retryable"] = True
        return JSONResponse(status_code=503, content=payload)

    payload = _sync_payload(field.id, sync_service)
    if record.sync_status == SyncStatus.SYNCED:
        payload["refresh"] = (await pipeline.refresh_field(field)).model_dump(mode="json")
    return payload


@app.delete("/fields/{field_id}/sync", dependencies=[api_guard, csrf_guard])
async def unsync_field(
    field: Field = Depends(get_owned_field),
    sync_service: PolygonSyncService = Depends(get_sync_service),
):
    removed = await sync_service.unsync(field)
    return {"success": True, "removed": removed, "sync_status": SyncStatus.NOT_SYNCED.value}


# ============================================
# SATELLITE & NDVI
# ============================================

@app.get("/satellite/{field_id}", dependencies=[data_fetch_guard])
async def get_satellite_images(
    days: Optional[int] = Query(None, description="Window in days (default 30, max 365)"),
    field: Field = Depends(get_owned_field),
    engine: StatisticsEngine = Depends(get_statistics_engine),
    client: AgroApiClient = Depends(get_agro_client),
):
    """
    Satellite images for a field, filtered by cloud coverage

    Returns needsSync=true with no images when the field is not registered yet.
    """
    if not client.configured:
        raise ProviderNotConfiguredError()

    stats = await engine.get_field_statistics(field, days, include_images=True)
    return {
        "fieldId": stats.field_id,
        "fieldName": stats.field_name,
        "days": stats.days,
        "syncStatus": stats.sync_status.value,
        "needsSync": stats.needs_sync,
        "configured": True,
        "images": [image.model_dump(mode="json") for image in stats.images],
        "totalImages": stats.total_images,
        "polygonId": stats.provider_polygon_id,
    }


@app.get("/ndvi/{field_id}", dependencies=[api_guard])
async def get_ndvi(
    days: Optional[int] = Query(None, description="Window in days (default 30, max 365)"),
    field: Field = Depends(get_owned_field),
    engine: StatisticsEngine = Depends(get_statistics_engine),
):
    """Cached NDVI readings, their statistics snapshot and vegetation status"""
    stats = await engine.get_field_statistics(field, days, include_images=False)
    return {
        "fieldId": stats.field_id,
        "fieldName": stats.field_name,
        "days": stats.days,
        "syncStatus": stats.sync_status.value,
        "needsSync": stats.needs_sync,
        "readings": [reading.model_dump(mode="json") for reading in stats.readings],
        "statistics": stats.snapshot.model_dump(mode="json") if stats.snapshot else None,
        "vegetationStatus": stats.vegetation_status,
    }


# ============================================
# NOTIFICATIONS
# ============================================

@app.get("/notifications", dependencies=[api_guard])
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(20),
    offset: int = Query(0),
    user: User = Depends(require_user),
    service: NotificationService = Depends(get_notification_service),
):
    return service.summary(user.id, unread_only=unread_only, limit=limit, offset=offset)


@app.patch("/notifications", dependencies=[api_guard, csrf_guard])
async def mark_notifications_read(
    payload: NotificationBulkRead,
    user: User = Depends(require_user),
    service: NotificationService = Depends(get_notification_service),
):
    updated = service.mark_read(user.id, payload)
    return {"success": True, "updated": updated, "unread_count": service.unread_count(user.id)}


@app.delete("/notifications", dependencies=[api_guard, csrf_guard])
async def dismiss_notifications(
    payload: NotificationBulkDismiss,
    user: User = Depends(require_user),
    service: NotificationService = Depends(get_notification_service),
):
    dismissed = service.dismiss(user.id, payload)
    return {"success": True, "dismissed": dismissed, "unread_count": service.unread_count(user.id)}


@app.get("/notifications/preferences", dependencies=[api_guard])
async def get_preferences(user: User = Depends(require_user), database: Database = Depends(get_database)):
    return PreferencesRepository(database).get(user.id).model_dump(mode="json")


@app.put("/notifications/preferences", dependencies=[api_guard, csrf_guard])
async def update_preferences(
    payload: PreferencesUpdate,
    user: User = Depends(require_user),
    database: Database = Depends(get_database),
):
    return PreferencesRepository(database).update(user.id, payload).model_dump(mode="json")


# ============================================
# WEB PUSH
# ============================================

@app.get("/push/vapid-public-key", dependencies=[api_guard])
async def vapid_public_key(user: User = Depends(require_user), sender: WebPushSender = Depends(get_push_sender)):
    if not sender.configured:
        return JSONResponse(status_code=503, content={"error": "Push notifications not configured", "configured": False})
    return {"publicKey": settings.VAPID_PUBLIC_KEY}


@app.post("/push/subscriptions", status_code=status.HTTP_201_CREATED, dependencies=[api_guard, csrf_guard])
async def subscribe(
    payload: PushSubscriptionCreate,
    user: User = Depends(require_user),
    database: Database = Depends(get_database),
):
    subscription = PushSubscriptionRepository(database).save(user.id, payload)
    logger.info("Push subscription saved", extra={"extra": {"user_id": user.id, "subscription_id": subscription.id}})
    return {"success": True, "id": subscription.id}


@app.delete("/push/subscriptions", dependencies=[api_guard, csrf_guard])
async def unsubscribe(
    payload: PushUnsubscribe,
    user: User = Depends(require_user),
    database: Database = Depends(get_database),
):
    removed = PushSubscriptionRepository(database).delete_by_endpoint(user.id, payload.endpoint)
    if not removed:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return {"success": True}


# ============================================
# CRON
# ============================================

async def verify_cron_secret(request: Request):
    """Bearer CRON_SECRET (or x-cron-secret); without a secret only non-production accepts calls"""
    if not settings.CRON_SECRET:
        if settings.is_production:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return

    auth_header = request.headers.get("Authorization", "")
    provided = auth_header[7:] if auth_header.startswith("Bearer ") else request.headers.get("x-cron-secret", "")
    if not hmac.compare_digest(provided.encode(), settings.CRON_SECRET.encode()):
        logger.warning("Cron call with invalid secret", extra={"extra": {"path": request.url.path}})
        raise HTTPException(status_code=401, detail="Unauthorized")


@app.post("/cron/ndvi", dependencies=[Depends(rate_limit("cron")), Depends(verify_cron_secret)])
async def run_ndvi_cron(
    days: Optional[int] = Query(None),
    pipeline: FieldPipeline = Depends(get_pipeline),
):
    batch = await pipeline.run_all(days)
    return {"success": True, **batch.model_dump(mode="json")}
