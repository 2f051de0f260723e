from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field as PydanticField, field_validator, model_validator
from shapely.geometry import shape


class SyncStatus(str, Enum):
    NOT_SYNCED = "not_synced"  # never stored; absence of a polygon_syncs row
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class Severity(str, Enum):
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"


class Classification(str, Enum):
    CRITICAL = "critical"
    WATCH = "watch"
    OPTIMAL = "optimal"


class Trend(str, Enum):
    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"


class User(BaseModel):
    """Contact card of an authenticated user (identity lives with the auth provider)"""
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None


# ============================================
# Fields
# ============================================

class GeoJSONPolygon(BaseModel):
    """GeoJSON Polygon geometry, [lon, lat] positions"""
    type: Literal["Polygon"]
    coordinates: List[List[List[float]]]

    @field_validator("coordinates")
    @classmethod
    def _simple_closed_ring(cls, rings):
        if not rings:
            raise ValueError("polygon has no rings")
        exterior = rings[0]
        if len(exterior) < 4:
            raise ValueError("exterior ring needs at least 4 positions")
        if exterior[0] != exterior[-1]:
            raise ValueError("exterior ring is not closed")
        for position in exterior:
            if len(position) < 2:
                raise ValueError("positions must be [lon, lat]")
            lon, lat = position[0], position[1]
            if not (-180 <= lon <= 180 and -90 <= lat <= 90):
                raise ValueError(f"position out of range: {position}")

        geom = shape({"type": "Polygon", "coordinates": rings})
        if not geom.is_valid or not geom.exterior.is_simple:
            raise ValueError("boundary is not a valid simple polygon")
        return rings


class FieldBase(BaseModel):
    name: str = PydanticField(min_length=1, max_length=120)
    boundary: GeoJSONPolygon
    area_hectares: Optional[float] = PydanticField(None, ge=0)
    alert_threshold: float = PydanticField(0.3, ge=0, le=1)
    alerts_enabled: bool = True


class FieldCreate(FieldBase):
    pass


class FieldUpdate(BaseModel):
    """Partial update; boundary changes are not accepted once a field exists"""
    name: Optional[str] = PydanticField(None, min_length=1, max_length=120)
    alert_threshold: Optional[float] = PydanticField(None, ge=0, le=1)
    alerts_enabled: Optional[bool] = None


class Field(FieldBase):
    id: str
    user_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ============================================
# Polygon sync
# ============================================

class PolygonSync(BaseModel):
    field_id: str
    provider_polygon_id: Optional[str] = None
    sync_status: SyncStatus
    error_message: Optional[str] = None
    attempts: int = 0
    next_retry_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ============================================
# Observations & statistics
# ============================================

class Observation(BaseModel):
    """One provider reading for a field on a calendar date"""
    field_id: str
    observation_date: date
    mean_index: float
    min_index: Optional[float] = None
    max_index: Optional[float] = None
    cloud_coverage: float = 0.0
    data_coverage: Optional[float] = None
    source: str = "agro_api"


class SatelliteImage(BaseModel):
    id: str
    date: datetime
    date_string: str
    source: str
    cloud_coverage: float
    data_coverage: float
    tile_urls: Dict[str, str] = {}


class StatisticsSnapshot(BaseModel):
    """Aggregate over a date window. Derived on every request, never stored."""
    count: int = 0
    mean: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    current_value: Optional[float] = None
    current_classification: Optional[Classification] = None
    trend: Trend = Trend.STABLE
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class FieldStatistics(BaseModel):
    field_id: str
    field_name: str
    days: int
    sync_status: SyncStatus
    needs_sync: bool
    images: List[SatelliteImage] = []
    total_images: int = 0
    readings: List[Observation] = []
    snapshot: Optional[StatisticsSnapshot] = None
    vegetation_status: str = "unknown"
    provider_polygon_id: Optional[str] = None


# ============================================
# Alerts & notifications
# ============================================

class AlertDecision(BaseModel):
    field_id: str
    user_id: str
    field_name: str
    value: float
    threshold: float
    severity: Severity
    episode_start: date
    observation_date: date


class Notification(BaseModel):
    id: str
    user_id: str
    field_id: Optional[str] = None
    field_name: Optional[str] = None
    type: str
    severity: Optional[Severity] = None
    title: str
    message: str
    data: Dict[str, Any] = {}
    episode_start: Optional[date] = None
    created_at: datetime
    read_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None


class NotificationBulkRead(BaseModel):
    ids: Optional[List[str]] = None
    mark_all: bool = False

    @model_validator(mode="after")
    def _ids_or_all(self):
        if not self.mark_all and not self.ids:
            raise ValueError("Either ids array or mark_all is required")
        return self


class NotificationBulkDismiss(BaseModel):
    ids: Optional[List[str]] = None
    dismiss_all: bool = False

    @model_validator(mode="after")
    def _ids_or_all(self):
        if not self.dismiss_all and not self.ids:
            raise ValueError("Either ids array or dismiss_all is required")
        return self


class PushKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscriptionCreate(BaseModel):
    endpoint: str = PydanticField(pattern=r"^https://")
    keys: PushKeys
    user_agent: Optional[str] = None


class PushUnsubscribe(BaseModel):
    endpoint: str


class PushSubscription(BaseModel):
    id: str
    user_id: str
    endpoint: str
    p256dh: str
    auth: str
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    def subscription_info(self) -> dict:
        """Shape expected by the Web Push library"""
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}


class NotificationPreferences(BaseModel):
    user_id: str
    push_enabled: bool = True
    email_enabled: bool = True
    quiet_hours_enabled: bool = False
    quiet_hours_start: time = time(22, 0)
    quiet_hours_end: time = time(7, 0)


class PreferencesUpdate(BaseModel):
    push_enabled: Optional[bool] = None
    email_enabled: Optional[bool] = None
    quiet_hours_enabled: Optional[bool] = None
    quiet_hours_start: Optional[time] = None
    quiet_hours_end: Optional[time] = None


class DispatchResult(BaseModel):
    notification_id: Optional[str] = None
    created: bool = False
    push_sent: int = 0
    push_failed: int = 0
    push_removed: int = 0
    push_skipped_reason: Optional[str] = None
    email_sent: bool = False
    email_error: Optional[str] = None
    errors: List[str] = []

    @property
    def partial_failure(self) -> bool:
        return self.push_failed > 0 or self.email_error is not None


# ============================================
# Pipeline runs
# ============================================

class FieldRunResult(BaseModel):
    field_id: str
    sync_status: SyncStatus
    needs_sync: bool = False
    readings: int = 0
    inserted: int = 0
    alert_created: bool = False
    notification_id: Optional[str] = None
    partial_failure: bool = False
    error: Optional[str] = None


class BatchResult(BaseModel):
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    alerts_created: int = 0
    details: List[FieldRunResult] = []
