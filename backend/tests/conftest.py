"""Test fixtures: in-memory SQLite database, fake GPS51 proxy, FastAPI TestClient."""

from __future__ import annotations

import json
import os
from typing import Any, Callable, Dict, List
from urllib.parse import parse_qs, urlparse

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("GPS51_USERNAME", "fleet-admin")
os.environ.setdefault("GPS51_PASSWORD", "s3cret")
os.environ.setdefault("TRIP_SYNC_URL", "http://trips.test/sync")

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from telematics.db.session import Base
from telematics.deps import get_db
from telematics.main import app
from telematics.services.gps51_client import Gps51Client
from telematics.services.poll_service import PollService
from telematics.services.rate_limit import RateLimiter
from telematics.services.trip_sync import TripSyncNotifier


# In-memory SQLite engine shared across a test session
_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = sessionmaker(autocommit=False, autoflush=False, bind=_engine)


def _override_get_db():
    db = TestSession()
    try:
        yield db
    finally:
        db.close()


# Apply dependency override once
app.dependency_overrides[get_db] = _override_get_db


@pytest.fixture(scope="session", autouse=True)
def _create_tables():
    """Create all tables once before the test session."""
    Base.metadata.create_all(bind=_engine)
    yield
    Base.metadata.drop_all(bind=_engine)


@pytest.fixture(autouse=True)
def _clean_tables():
    yield
    with _engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def db():
    session = TestSession()
    try:
        yield session
    finally:
        session.close()


async def no_sleep(_seconds: float) -> None:
    return None


class FakeGps51:
    """Stands in for the forwarding proxy in front of api.gps51.com.

    Responses are keyed by action; a value may be a dict, a list of dicts
    (served in order, last one repeated) or a callable taking the request body.
    """

    def __init__(self):
        self.responses: Dict[str, Any] = {
            "login": {"status": 0, "token": "tok-1", "serverid": "7"},
        }
        self.calls: List[Dict[str, Any]] = []

    def on(self, action: str, response: Any) -> "FakeGps51":
        self.responses[action] = response
        return self

    def actions(self) -> List[str]:
        return [c["action"] for c in self.calls]

    def handler(self, request: httpx.Request) -> httpx.Response:
        envelope = json.loads(request.content)
        query = parse_qs(urlparse(envelope["targetUrl"]).query)
        action = query["action"][0]
        self.calls.append({
            "action": action,
            "token": (query.get("token") or [None])[0],
            "serverid": (query.get("serverid") or [None])[0],
            "method": envelope.get("method"),
            "data": envelope.get("data"),
        })

        response = self.responses.get(action, {"status": 1, "cause": "unsupported"})
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if callable(response):
            response = response(envelope.get("data"))
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class TripSink:
    def __init__(self):
        self.payloads: List[Dict[str, Any]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.payloads.append(json.loads(request.content))
        return httpx.Response(202, json={"queued": True})


@pytest.fixture
def vendor() -> FakeGps51:
    return FakeGps51()


@pytest.fixture
def trip_sink() -> TripSink:
    return TripSink()


@pytest.fixture
def make_client(vendor: FakeGps51) -> Callable[..., Gps51Client]:
    def _make(**kwargs) -> Gps51Client:
        kwargs.setdefault("limiter", RateLimiter(min_interval_s=0.0, sleep=no_sleep))
        return Gps51Client(
            proxy_url="http://proxy.test/proxy",
            api_url="https://api.gps51.test/openapi",
            transport=vendor.transport,
            sleep=no_sleep,
            **kwargs,
        )
    return _make


@pytest.fixture
def poll_service(make_client, trip_sink: TripSink) -> PollService:
    trips = TripSyncNotifier(url="http://trips.test/sync", transport=httpx.MockTransport(trip_sink.handler))
    return PollService(client=make_client(), trip_sync=trips)
