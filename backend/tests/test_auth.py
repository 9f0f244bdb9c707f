"""Bearer-token scopes on the trigger endpoints."""

import pytest
from fastapi.testclient import TestClient

from telematics.auth.jwt import (
    SCHEDULER_SCOPES,
    SCOPE_OFFLINE_CHECK,
    SCOPE_POLL,
    create_access_token,
    decode_token,
    token_scopes,
)
from telematics.config import settings
from telematics.main import app


def _bearer(*scopes):
    return {"Authorization": f"Bearer {create_access_token('cron', scopes)}"}


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def production(monkeypatch):
    monkeypatch.setattr(settings, "environment", "production")


def test_scheduler_token_carries_every_trigger_scope():
    claims = decode_token(create_access_token("scheduler"))
    assert claims["sub"] == "scheduler"
    assert sorted(token_scopes(claims)) == sorted(SCHEDULER_SCOPES)


def test_dev_token_reports_scope(client: TestClient):
    body = client.post("/auth/dev-token").json()
    assert set(body["scope"].split()) == set(SCHEDULER_SCOPES)
    assert set(token_scopes(decode_token(body["access_token"]))) == set(SCHEDULER_SCOPES)


def test_production_requires_a_token(client: TestClient, production):
    r = client.post("/gps-data/offline-check")
    assert r.status_code == 401


def test_production_rejects_invalid_token(client: TestClient, production):
    r = client.post("/gps-data/offline-check", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


def test_production_rejects_token_without_the_scope(client: TestClient, production):
    r = client.post("/gps-data/offline-check", headers=_bearer(SCOPE_POLL))
    assert r.status_code == 403
    assert SCOPE_OFFLINE_CHECK in r.json()["detail"]


def test_production_accepts_scoped_token(client: TestClient, production):
    r = client.post("/gps-data/offline-check", headers=_bearer(SCOPE_OFFLINE_CHECK))
    assert r.status_code == 200
    assert r.json()["alerts_created"] == 0


def test_dev_token_route_hidden_in_production(client: TestClient, production):
    assert client.post("/auth/dev-token").status_code == 404


def test_under_scoped_token_tolerated_outside_production(client: TestClient):
    r = client.post("/gps-data/offline-check", headers=_bearer(SCOPE_POLL))
    assert r.status_code == 200
