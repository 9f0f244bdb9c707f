import datetime as dt
import json

from telematics.db.models import ProactiveVehicleEvent
from telematics.schemas.events import EventCandidate
from telematics.services.event_service import EventService, event_to_out

NOW = dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.timezone.utc)


def _candidate(device_id="D1", event_type="low_battery", **meta):
    return EventCandidate(
        device_id=device_id,
        event_type=event_type,
        severity="warning",
        title="Low Battery Warning",
        message="Battery level at 15%",
        metadata=meta,
    )


def test_duplicates_in_one_batch_collapse(db):
    rows = EventService().record(db, [_candidate(), _candidate()], NOW)
    assert len(rows) == 1
    assert db.query(ProactiveVehicleEvent).count() == 1


def test_cooldown_suppresses_repeat(db):
    svc = EventService(cooldown=dt.timedelta(minutes=30))
    assert len(svc.record(db, [_candidate()], NOW)) == 1
    assert svc.record(db, [_candidate()], NOW + dt.timedelta(minutes=29)) == []
    assert len(svc.record(db, [_candidate()], NOW + dt.timedelta(minutes=31))) == 1
    assert db.query(ProactiveVehicleEvent).count() == 2


def test_cooldown_is_per_device_and_type(db):
    svc = EventService()
    svc.record(db, [_candidate()], NOW)
    rows = svc.record(
        db,
        [_candidate(device_id="D2"), _candidate(event_type="critical_battery"), _candidate()],
        NOW + dt.timedelta(minutes=1),
    )
    assert sorted((r.device_id, r.event_type) for r in rows) == [("D1", "critical_battery"), ("D2", "low_battery")]


def test_event_row_round_trips_metadata(db):
    row = EventService().record(db, [_candidate(battery=15, detected_by="gps-data")], NOW)[0]
    assert row.id.startswith("evt_")
    stored = db.get(ProactiveVehicleEvent, row.id)
    assert json.loads(stored.metadata_json) == {"battery": 15, "detected_by": "gps-data"}

    out = event_to_out(stored)
    assert out.metadata["battery"] == 15
    assert out.created_at == NOW
