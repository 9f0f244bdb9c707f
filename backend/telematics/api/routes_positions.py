from __future__ import annotations

import datetime as dt
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from telematics.db.models import PositionHistory, VehiclePosition
from telematics.deps import get_db
from telematics.schemas.telemetry import HistorySampleOut, PositionOut
from telematics.utils.time import ensure_utc

router = APIRouter()


def _position_out(row: VehiclePosition) -> PositionOut:
    return PositionOut(
        device_id=row.device_id,
        latitude=row.latitude,
        longitude=row.longitude,
        speed=row.speed,
        heading=row.heading,
        altitude=row.altitude,
        battery_percent=row.battery_percent,
        ignition_on=row.ignition_on,
        ignition_confidence=row.ignition_confidence,
        ignition_detection_method=row.ignition_detection_method,
        is_online=row.is_online,
        is_overspeeding=row.is_overspeeding,
        total_mileage=row.total_mileage,
        data_quality=row.data_quality,
        gps_time=ensure_utc(row.gps_time),
        gps_fix_time=ensure_utc(row.gps_fix_time),
        cached_at=ensure_utc(row.cached_at),
    )


@router.get("/positions", response_model=List[PositionOut])
def list_positions(
    online: Optional[bool] = Query(default=None),
    db: Session = Depends(get_db),
):
    q = db.query(VehiclePosition)
    if online is not None:
        q = q.filter(VehiclePosition.is_online == online)
    return [_position_out(r) for r in q.order_by(VehiclePosition.device_id.asc()).all()]


@router.get("/positions/{device_id}", response_model=PositionOut)
def get_position(device_id: str, db: Session = Depends(get_db)):
    row = db.get(VehiclePosition, device_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Position not found")
    return _position_out(row)


@router.get("/positions/{device_id}/history", response_model=List[HistorySampleOut])
def get_history(
    device_id: str,
    since: Optional[dt.datetime] = Query(default=None),
    limit: int = Query(default=500, ge=1, le=5000),
    db: Session = Depends(get_db),
):
    """Sampled track for one device, oldest first."""
    q = db.query(PositionHistory).filter(PositionHistory.device_id == device_id)
    if since is not None:
        q = q.filter(PositionHistory.recorded_at >= ensure_utc(since))
    rows = q.order_by(PositionHistory.recorded_at.desc()).limit(limit).all()
    return [
        HistorySampleOut(
            id=r.id,
            device_id=r.device_id,
            latitude=r.latitude,
            longitude=r.longitude,
            speed=r.speed,
            heading=r.heading,
            battery_percent=r.battery_percent,
            ignition_on=r.ignition_on,
            gps_time=ensure_utc(r.gps_time),
            recorded_at=ensure_utc(r.recorded_at),
        )
        for r in reversed(rows)
    ]
