import asyncio
import datetime as dt

from sqlalchemy.orm import sessionmaker

from telematics.db.models import ProactiveVehicleEvent, Vehicle, VehiclePosition
from telematics.services.scheduler import PollScheduler
from telematics.utils.time import utc_now


def _scheduler(db, poll_service, **kw):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=db.get_bind())
    return PollScheduler(poll_service, interval_s=60, session_factory=factory, **kw)


def _silent_vehicle(db, hours=2):
    now = utc_now()
    db.add(Vehicle(device_id="D1", device_name="Truck 1"))
    db.add(VehiclePosition(
        device_id="D1", latitude=6.52, longitude=3.37, speed=0.0, is_online=True,
        gps_time=now - dt.timedelta(hours=hours), cached_at=now, last_synced_at=now,
    ))
    db.commit()


def test_offline_sweep_runs_when_poll_fails(db, vendor, poll_service):
    _silent_vehicle(db)
    vendor.on("lastposition", {"status": 9906, "cause": "token invalid"})

    asyncio.run(_scheduler(db, poll_service).tick())

    assert "lastposition" in vendor.actions()
    events = db.query(ProactiveVehicleEvent).filter(ProactiveVehicleEvent.event_type == "offline").all()
    assert [e.device_id for e in events] == ["D1"]


def test_tick_survives_a_crashing_sweep(db, vendor, poll_service):
    class Broken:
        def check(self, _db):
            raise RuntimeError("sweep exploded")

    _silent_vehicle(db, hours=0)
    vendor.on("lastposition", {"status": 0, "records": []})

    asyncio.run(_scheduler(db, poll_service, offline_service=Broken()).tick())

    assert vendor.actions() == ["login", "lastposition"]
