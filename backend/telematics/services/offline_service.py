from __future__ import annotations

import datetime as dt
import logging
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from telematics.config import settings
from telematics.db.models import Vehicle, VehiclePosition
from telematics.schemas.events import EventCandidate
from telematics.schemas.poll import OfflineCheckResult
from telematics.services.event_service import EventService
from telematics.utils.time import ensure_utc, utc_now

logger = logging.getLogger("telematics.offline")

ERROR_AFTER_HOURS = 24


class OfflineService:
    """Periodic sweep raising `offline` events for silent vehicles.

    Hibernated vehicles are skipped. A position without a vehicle row is
    treated as active.
    """

    def __init__(
        self,
        threshold: Optional[dt.timedelta] = None,
        cooldown: Optional[dt.timedelta] = None,
    ):
        self.threshold = threshold or dt.timedelta(hours=settings.offline_alert_hours)
        self.events = EventService(cooldown or dt.timedelta(minutes=settings.offline_alert_cooldown_minutes))

    def check(self, db: Session, now: Optional[dt.datetime] = None) -> OfflineCheckResult:
        now = now or utc_now()
        cutoff = now - self.threshold
        stale = (
            db.query(VehiclePosition)
            .filter(or_(VehiclePosition.gps_time < cutoff, VehiclePosition.gps_time.is_(None)))
            .order_by(VehiclePosition.device_id.asc())
            .all()
        )
        logger.info("Found %d potentially offline vehicles", len(stale))
        if not stale:
            return OfflineCheckResult(message="No offline vehicles detected")

        ids = [p.device_id for p in stale]
        vehicles = {v.device_id: v for v in db.query(Vehicle).filter(Vehicle.device_id.in_(ids)).all()}
        eligible = [
            p for p in stale
            if vehicles.get(p.device_id) is None or vehicles[p.device_id].vehicle_status != "hibernated"
        ]
        if not eligible:
            return OfflineCheckResult(
                checked=len(stale),
                message="No eligible offline vehicles (all hibernated or none found)",
            )

        candidates = [self._candidate(p, vehicles.get(p.device_id), now) for p in eligible]
        inserted = self.events.record(db, candidates, now)
        alerted: List[str] = [row.device_id for row in inserted]

        if alerted:
            (
                db.query(VehiclePosition)
                .filter(VehiclePosition.device_id.in_(alerted))
                .update({VehiclePosition.is_online: False}, synchronize_session=False)
            )
            db.commit()

        logger.info("Created %d offline alerts", len(alerted))
        return OfflineCheckResult(
            checked=len(stale),
            alerts_created=len(alerted),
            devices=alerted[:10],
            message=f"Created {len(alerted)} offline alerts" if alerted else "All offline vehicles already have recent alerts",
        )

    def _candidate(self, pos: VehiclePosition, vehicle: Optional[Vehicle], now: dt.datetime) -> EventCandidate:
        last_seen = ensure_utc(pos.gps_time)
        name = (vehicle.device_name if vehicle else None) or pos.device_id
        hours = round((now - last_seen).total_seconds() / 3600) if last_seen else None

        if hours is None:
            message = f"{name} has no GPS data"
        else:
            message = f"{name} has been offline for {hours} hour{'' if hours == 1 else 's'}"

        return EventCandidate(
            device_id=pos.device_id,
            event_type="offline",
            severity="error" if hours is not None and hours > ERROR_AFTER_HOURS else "warning",
            title="Vehicle Offline",
            message=message,
            metadata={
                "last_seen": last_seen.isoformat() if last_seen else None,
                "hours_offline": hours,
                "vehicle_name": name,
                "battery_at_disconnect": pos.battery_percent,
                "detected_by": "cron",
            },
        )
