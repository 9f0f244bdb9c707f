from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from telematics.db.models import ProactiveVehicleEvent
from telematics.schemas.events import EventCandidate, EventOut
from telematics.utils.ids import new_id
from telematics.utils.time import ensure_utc, utc_now

logger = logging.getLogger("telematics.events")

DEFAULT_COOLDOWN = dt.timedelta(minutes=30)


class EventService:
    """Cooldown de-duplication and insertion of proactive events.

    Read-then-filter-then-insert without a lock: two overlapping pollers can
    both pass the check and insert the same (device, event_type). Consumers
    render alerts idempotently, so the rare duplicate is tolerated.
    """

    def __init__(self, cooldown: dt.timedelta = DEFAULT_COOLDOWN):
        self.cooldown = cooldown

    def recent_keys(
        self,
        db: Session,
        device_ids: Iterable[str],
        now: dt.datetime,
        event_types: Optional[Iterable[str]] = None,
    ) -> Set[Tuple[str, str]]:
        ids = list(set(device_ids))
        if not ids:
            return set()
        cutoff = now - self.cooldown
        q = (
            db.query(ProactiveVehicleEvent.device_id, ProactiveVehicleEvent.event_type)
            .filter(ProactiveVehicleEvent.device_id.in_(ids))
            .filter(ProactiveVehicleEvent.created_at >= cutoff)
        )
        if event_types is not None:
            q = q.filter(ProactiveVehicleEvent.event_type.in_(list(event_types)))
        return {(d, t) for d, t in q.all()}

    def filter_new(
        self,
        db: Session,
        candidates: List[EventCandidate],
        now: dt.datetime,
    ) -> List[EventCandidate]:
        """Drop candidates already raised within the cooldown, or twice in this batch."""
        if not candidates:
            return []
        seen = self.recent_keys(db, (c.device_id for c in candidates), now)
        fresh: List[EventCandidate] = []
        for c in candidates:
            if c.key in seen:
                continue
            seen.add(c.key)
            fresh.append(c)
        return fresh

    def record(
        self,
        db: Session,
        candidates: List[EventCandidate],
        now: Optional[dt.datetime] = None,
    ) -> List[ProactiveVehicleEvent]:
        now = now or utc_now()
        fresh = self.filter_new(db, candidates, now)
        filtered = len(candidates) - len(fresh)
        if not fresh:
            if filtered:
                logger.info("All %d candidate events were duplicates within cooldown", filtered)
            return []

        rows = [
            ProactiveVehicleEvent(
                id=new_id("evt"),
                device_id=c.device_id,
                event_type=c.event_type,
                severity=c.severity,
                title=c.title,
                message=c.message,
                metadata_json=json.dumps(c.metadata, ensure_ascii=False, default=str),
                created_at=now,
            )
            for c in fresh
        ]
        db.add_all(rows)
        db.commit()
        logger.info("Inserted %d proactive events (%d duplicates filtered)", len(rows), filtered)
        return rows


def event_to_out(row: ProactiveVehicleEvent) -> EventOut:
    return EventOut(
        id=row.id,
        device_id=row.device_id,
        event_type=row.event_type,
        severity=row.severity,
        title=row.title,
        message=row.message,
        metadata=json.loads(row.metadata_json or "{}"),
        created_at=ensure_utc(row.created_at),
    )


def event_payload(row: ProactiveVehicleEvent) -> Dict[str, object]:
    return event_to_out(row).model_dump(mode="json")
