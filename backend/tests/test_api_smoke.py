"""API smoke tests using FastAPI TestClient."""

import datetime as dt

import pytest
from fastapi.testclient import TestClient

from telematics.api.routes_gps import get_poll_service
from telematics.api.routes_ws import hub
from telematics.main import app
from telematics.utils.time import utc_now


def _record(device_id, **kw):
    rec = {
        "deviceid": device_id,
        "callat": 6.5244,
        "callon": 3.3792,
        "speed": 52000,
        "status": 1,
        "voltagepercent": 15,
        "updatetime": int(utc_now().timestamp() * 1000),
    }
    rec.update(kw)
    return rec


@pytest.fixture
def client(poll_service):
    app.dependency_overrides[get_poll_service] = lambda: poll_service
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.pop(get_poll_service, None)


def test_root(client: TestClient):
    r = client.get("/")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_health(client: TestClient):
    r = client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert data["gps51_configured"] is True
    assert data["last_poll_at"] is None


def test_alert_catalog(client: TestClient):
    r = client.get("/alerts/catalog")
    assert r.status_code == 200
    types = {a["event_type"] for a in r.json()}
    assert {"overspeeding", "low_battery", "ignition_off", "vehicle_moving", "offline"} <= types


def test_dev_token(client: TestClient):
    r = client.post("/auth/dev-token")
    assert r.status_code == 200
    assert r.json()["token_type"] == "bearer"


def test_gps_data_rejects_invalid_json(client: TestClient):
    r = client.post("/gps-data", content="{not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert "error" in r.json()


def test_gps_data_without_body_runs_a_cycle(client: TestClient, vendor):
    vendor.on("querymonitorlist", {"status": 0, "groups": [{"groupid": 1, "groupname": "Lagos", "devices": [
        {"deviceid": "D1", "devicename": "Truck 1"},
    ]}]})
    vendor.on("lastposition", {"status": 0, "records": [_record("D1")]})

    r = client.post("/gps-data")

    assert r.status_code == 200
    assert r.json()["summary"]["positions_updated"] == 1
    assert vendor.actions() == ["login", "querymonitorlist", "lastposition"]


def test_gps_data_rejects_bad_body(client: TestClient):
    r = client.post("/gps-data", json={"use_cache": "sometimes"})
    assert r.status_code == 400


def test_poll_then_read_back(client: TestClient, vendor):
    vendor.on("lastposition", {"status": 0, "records": [_record("D1"), _record("D2", voltagepercent=80)]})

    r = client.post("/gps-data", json={"action": "lastposition", "use_cache": False, "body_payload": {"deviceids": ["D1", "D2"]}})
    assert r.status_code == 200
    body = r.json()
    assert len(body["data"]["records"]) == 2
    assert body["summary"]["positions_updated"] == 2

    positions = client.get("/positions").json()
    assert [p["device_id"] for p in positions] == ["D1", "D2"]
    assert positions[0]["speed"] == 52.0
    assert positions[0]["ignition_on"] is True
    assert positions[0]["ignition_detection_method"] == "status_bits"

    assert client.get("/positions/D1").json()["is_online"] is True
    assert client.get("/positions/NOPE").status_code == 404

    history = client.get("/positions/D1/history").json()
    assert len(history) == 1

    events = client.get("/events", params={"device_id": "D1"}).json()
    types = {e["event_type"] for e in events}
    assert "low_battery" in types
    assert "vehicle_moving" in types

    # second call within the TTL is served from cache
    cached = client.post("/gps-data", json={"action": "lastposition"}).json()
    assert cached["data"]["fromCache"] is True


def test_token_error_returns_500(client: TestClient, vendor):
    vendor.on("lastposition", {"status": 9903, "cause": "token expired"})
    r = client.post("/gps-data", json={"use_cache": False, "body_payload": {"deviceids": ["D1"]}})
    assert r.status_code == 500
    assert "9903" in r.json()["error"]


def test_token_refresh_endpoint(client: TestClient, vendor):
    r = client.post("/gps-auth/refresh")
    assert r.status_code == 200
    data = r.json()
    assert data["success"] is True
    assert data["serverid"] == "7"
    assert vendor.actions() == ["login"]


def test_offline_check_endpoint(client: TestClient):
    r = client.post("/gps-data/offline-check")
    assert r.status_code == 200
    assert r.json()["alerts_created"] == 0


def test_device_socket_receives_position(client: TestClient, vendor, poll_service):
    poll_service.bind_broadcaster(hub.broadcast)
    vendor.on("lastposition", {"status": 0, "records": [_record("D1", voltagepercent=90)]})

    with client.websocket_connect("/ws/devices/D1") as ws:
        r = client.post("/gps-data", json={"use_cache": False, "body_payload": {"deviceids": ["D1"]}})
        assert r.status_code == 200
        msg = ws.receive_json()
        assert msg["kind"] == "position"
        assert msg["data"]["device_id"] == "D1"
