import os
import tempfile

# Settings are read at import time; keep test runs away from real credentials and ./logs
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="fieldsync-logs-"))
os.environ["AGRO_API_KEY"] = ""
os.environ["RESEND_API_KEY"] = ""
os.environ["CRON_SECRET"] = ""

import asyncio
import json
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

import httpx
import pytest

from fieldsync.agro_api import AgroApiClient
from fieldsync.database import Database
from fieldsync.mailer import EmailResult
from fieldsync.models import FieldCreate, User
from fieldsync.notifications import NotificationDispatcher
from fieldsync.push import PushResult
from fieldsync.repositories import (
    FieldRepository,
    NotificationRepository,
    PreferencesRepository,
    PushSubscriptionRepository,
    UserRepository,
)


UTC = timezone.utc
AGRO_BASE = "https://agro.test/agro/1.0"

SQUARE = {
    "type": "Polygon",
    "coordinates": [[[10.0, 50.0], [10.01, 50.0], [10.01, 50.01], [10.0, 50.01], [10.0, 50.0]]],
}


class ClockStub:
    """Mutable clock so tests can control backoff, windows and quiet hours."""

    def __init__(self, initial: Optional[datetime] = None):
        self._now = initial or datetime(2025, 6, 10, 12, 0, tzinfo=UTC)

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, **delta_kwargs) -> None:
        self._now += timedelta(**delta_kwargs)

    def __call__(self) -> datetime:
        return self._now


def unix_noon(day: date) -> int:
    return int(datetime(day.year, day.month, day.day, 12, tzinfo=UTC).timestamp())


def ndvi_item(day: date, mean: float, cloud: float = 0.0, coverage: float = 100.0) -> Dict:
    return {
        "dt": unix_noon(day),
        "source": "s2",
        "dc": coverage,
        "cl": cloud,
        "data": {"mean": mean, "min": mean - 0.1, "max": mean + 0.1},
    }


def image_item(day: date, cloud: float, kind: str = "Sentinel-2") -> Dict:
    return {
        "dt": unix_noon(day),
        "type": kind,
        "dc": 100,
        "cl": cloud,
        "tile": {
            "truecolor": f"https://tiles.test/{kind}/{day}/truecolor",
            "ndvi": f"https://tiles.test/{kind}/{day}/ndvi",
        },
    }


class FakeAgro:
    """In-memory stand-in for the Agro API, served through httpx.MockTransport"""

    def __init__(self):
        self.polygons: Dict[str, Dict] = {}
        self.ndvi: List[Dict] = []
        self.images: List[Dict] = []
        self.fail_status: Optional[int] = None
        self.ndvi_missing = False
        self.calls: List[tuple] = []
        self._next_id = 1

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path[len("/agro/1.0"):]
        self.calls.append((request.method, path))
        assert request.url.params.get("appid") == "test-key"

        if self.fail_status:
            return httpx.Response(self.fail_status, json={"message": "provider failure"})

        if path == "/polygons" and request.method == "GET":
            return httpx.Response(200, json=list(self.polygons.values()))

        if path == "/polygons" and request.method == "POST":
            body = json.loads(request.content)
            polygon_id = f"poly-{self._next_id}"
            self._next_id += 1
            self.polygons[polygon_id] = {
                "id": polygon_id,
                "name": body["name"],
                "area": 12.5,
                "geo_json": body["geo_json"],
            }
            return httpx.Response(201, json=self.polygons[polygon_id])

        if path.startswith("/polygons/"):
            polygon_id = path.split("/")[-1]
            if polygon_id not in self.polygons:
                return httpx.Response(404, json={"message": "not found"})
            if request.method == "DELETE":
                del self.polygons[polygon_id]
                return httpx.Response(204)
            return httpx.Response(200, json=self.polygons[polygon_id])

        if path == "/image/search":
            return httpx.Response(200, json=self.images)

        if path == "/ndvi/history":
            if self.ndvi_missing or request.url.params.get("polyid") not in self.polygons:
                return httpx.Response(404, json={"message": "no data"})
            return httpx.Response(200, json=self.ndvi)

        return httpx.Response(404, json={"message": "unknown endpoint"})

    def client(self) -> AgroApiClient:
        return AgroApiClient(base_url=AGRO_BASE, api_key="test-key", transport=httpx.MockTransport(self.handler))

    def count(self, method: str, path: str) -> int:
        return sum(1 for call in self.calls if call == (method, path))


class FakePushSender:
    configured = True

    def __init__(self, results: Optional[Dict[str, PushResult]] = None, delay: float = 0):
        self.results = results or {}
        self.delay = delay
        self.sent = []

    async def send(self, subscription, payload, urgent=False):
        self.sent.append((subscription.endpoint, payload, urgent))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.results.get(subscription.endpoint, PushResult(success=True, status_code=201))


class FakeEmailClient:
    configured = True

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send_low_index_alert(self, to, decision, recipient_name=None):
        self.sent.append((to, decision))
        if self.fail:
            return EmailResult(success=False, error="Resend error 500")
        return EmailResult(success=True, id=f"email-{len(self.sent)}")


@pytest.fixture
def database(tmp_path):
    return Database(str(tmp_path / "fieldsync-test.db"))


@pytest.fixture
def user(database):
    return UserRepository(database).save(User(id="user-1", email="ada@farm.test", full_name="Ada Farmer"))


@pytest.fixture
def other_user(database):
    return UserRepository(database).save(User(id="user-2", email="bo@farm.test", full_name="Bo Grower"))


@pytest.fixture
def make_field(database, user):
    def _make(name: str = "North Paddock", owner: Optional[User] = None, **overrides):
        payload = FieldCreate(name=name, boundary=SQUARE, area_hectares=12.5, **overrides)
        return FieldRepository(database).create((owner or user).id, payload)
    return _make


@pytest.fixture
def field(make_field):
    return make_field()


@pytest.fixture
def agro():
    return FakeAgro()


@pytest.fixture
def clock():
    return ClockStub()


@pytest.fixture
def push_sender():
    return FakePushSender()


@pytest.fixture
def email_client():
    return FakeEmailClient()


@pytest.fixture
def make_dispatcher(database, clock):
    def _make(push_sender, email_client):
        return NotificationDispatcher(
            notifications=NotificationRepository(database),
            subscriptions=PushSubscriptionRepository(database),
            preferences=PreferencesRepository(database),
            users=UserRepository(database),
            push_sender=push_sender,
            email_client=email_client,
            clock=clock,
        )
    return _make


class ApiHarness:
    """TestClient bound to an isolated database and fake transports"""

    def __init__(self, client, database, agro, push_sender, email_client):
        self.client = client
        self.database = database
        self.agro = agro
        self.push_sender = push_sender
        self.email_client = email_client

    def login(self, user_id: str):
        from fieldsync.auth import SESSION_COOKIE_NAME, create_session_token

        self.client.cookies.set(SESSION_COOKIE_NAME, create_session_token(user_id))
        return self

    def csrf_headers(self) -> Dict[str, str]:
        response = self.client.get("/security/csrf")
        assert response.status_code == 200
        return {"x-csrf-token": response.json()["csrfToken"]}


@pytest.fixture
def api(database, user, other_user, agro, push_sender, email_client, monkeypatch):
    from fastapi.testclient import TestClient

    from fieldsync.config import settings
    from fieldsync.database import get_database
    from fieldsync.dependencies import get_agro_client, get_mailer, get_push_sender
    from fieldsync.main import app
    from fieldsync.rate_limit import rate_limiter

    monkeypatch.setattr(settings, "PROVIDER_CALL_DELAY_SECONDS", 0)
    rate_limiter.reset()
    app.dependency_overrides[get_database] = lambda: database
    app.dependency_overrides[get_agro_client] = agro.client
    app.dependency_overrides[get_push_sender] = lambda: push_sender
    app.dependency_overrides[get_mailer] = lambda: email_client

    with TestClient(app) as client:
        yield ApiHarness(client, database, agro, push_sender, email_client)

    app.dependency_overrides.clear()
    rate_limiter.reset()
