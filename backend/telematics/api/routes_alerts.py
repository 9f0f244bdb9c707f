from __future__ import annotations

import pathlib
from typing import List, Optional

import yaml
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from telematics.db.models import ProactiveVehicleEvent
from telematics.deps import get_db
from telematics.schemas.events import AlertTypeInfo, EventOut
from telematics.services.event_service import event_to_out

router = APIRouter()

CATALOG_PATH = pathlib.Path(__file__).resolve().parent.parent / "policies" / "alert_catalog.yaml"


def load_alert_catalog() -> List[AlertTypeInfo]:
    with open(CATALOG_PATH, "r", encoding="utf-8") as f:
        doc = yaml.safe_load(f) or {}
    return [AlertTypeInfo(**a) for a in doc.get("alerts", [])]


@router.get("/alerts/catalog", response_model=List[AlertTypeInfo])
def alert_catalog():
    return load_alert_catalog()


@router.get("/events", response_model=List[EventOut])
def list_events(
    device_id: Optional[str] = Query(default=None),
    event_type: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    """Most recent proactive events first."""
    q = db.query(ProactiveVehicleEvent)
    if device_id:
        q = q.filter(ProactiveVehicleEvent.device_id == device_id)
    if event_type:
        q = q.filter(ProactiveVehicleEvent.event_type == event_type)
    rows = q.order_by(ProactiveVehicleEvent.created_at.desc()).limit(limit).all()
    return [event_to_out(r) for r in rows]
