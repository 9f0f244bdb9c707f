import datetime as dt
import json

from telematics.db.models import ProactiveVehicleEvent, Vehicle, VehiclePosition
from telematics.services.offline_service import OfflineService

NOW = dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.timezone.utc)


def _position(db, device_id, hours_ago, battery=70):
    gps_time = NOW - dt.timedelta(hours=hours_ago) if hours_ago is not None else None
    db.add(VehiclePosition(
        device_id=device_id, latitude=6.52, longitude=3.37, speed=0.0, battery_percent=battery,
        is_online=True, gps_time=gps_time, cached_at=NOW, last_synced_at=NOW,
    ))


def test_offline_alert_for_silent_vehicle(db):
    _position(db, "D1", hours_ago=2, battery=41)
    db.add(Vehicle(device_id="D1", device_name="Truck 1"))
    _position(db, "D2", hours_ago=0.25)
    db.commit()

    result = OfflineService().check(db, NOW)

    assert result.checked == 1
    assert result.alerts_created == 1
    assert result.devices == ["D1"]
    ev = db.query(ProactiveVehicleEvent).one()
    assert ev.event_type == "offline"
    assert ev.severity == "warning"
    assert ev.message == "Truck 1 has been offline for 2 hours"
    meta = json.loads(ev.metadata_json)
    assert meta["battery_at_disconnect"] == 41
    assert meta["detected_by"] == "cron"
    assert db.get(VehiclePosition, "D1").is_online is False
    assert db.get(VehiclePosition, "D2").is_online is True


def test_long_outage_and_missing_gps_time(db):
    _position(db, "D1", hours_ago=30)
    _position(db, "D2", hours_ago=None)
    db.commit()

    OfflineService().check(db, NOW)

    events = {e.device_id: e for e in db.query(ProactiveVehicleEvent).all()}
    assert events["D1"].severity == "error"
    assert events["D2"].severity == "warning"
    assert events["D2"].message == "D2 has no GPS data"


def test_hibernated_vehicles_are_skipped(db):
    _position(db, "D1", hours_ago=5)
    db.add(Vehicle(device_id="D1", vehicle_status="hibernated"))
    db.commit()

    result = OfflineService().check(db, NOW)

    assert result.checked == 1
    assert result.alerts_created == 0
    assert db.query(ProactiveVehicleEvent).count() == 0


def test_offline_cooldown(db):
    _position(db, "D1", hours_ago=2)
    db.commit()
    svc = OfflineService()

    assert svc.check(db, NOW).alerts_created == 1
    assert svc.check(db, NOW + dt.timedelta(minutes=30)).alerts_created == 0
    assert svc.check(db, NOW + dt.timedelta(minutes=61)).alerts_created == 1


def test_nothing_offline(db):
    result = OfflineService().check(db, NOW)
    assert result.checked == 0
    assert result.message == "No offline vehicles detected"
