from __future__ import annotations

import datetime as dt
from typing import Optional

from telematics.db.models import PositionHistory
from telematics.schemas.telemetry import NormalizedPosition
from telematics.utils.geo import haversine_m
from telematics.utils.time import ensure_utc

DEFAULT_DISTANCE_THRESHOLD_M = 50.0
DEFAULT_TIME_THRESHOLD_S = 300


def should_persist(
    prior: Optional[PositionHistory],
    current: NormalizedPosition,
    now: dt.datetime,
    distance_threshold_m: float = DEFAULT_DISTANCE_THRESHOLD_M,
    time_threshold_s: float = DEFAULT_TIME_THRESHOLD_S,
) -> bool:
    """Smart history sampling: moved far enough OR waited long enough.

    A position without coordinates is never sampled. Missing prior data
    fails open (persist) rather than silently dropping a sample.
    """
    if not current.has_coordinates:
        return False
    if prior is None:
        return True
    if prior.latitude is None or prior.longitude is None or prior.recorded_at is None:
        return True

    distance = haversine_m(prior.latitude, prior.longitude, current.lat, current.lon)
    elapsed = (now - ensure_utc(prior.recorded_at)).total_seconds()
    return distance > distance_threshold_m or elapsed > time_threshold_s


def build_sample(current: NormalizedPosition, now: dt.datetime) -> PositionHistory:
    return PositionHistory(
        device_id=current.device_id,
        latitude=current.lat,
        longitude=current.lon,
        speed=current.speed_kmh,
        heading=current.heading,
        battery_percent=current.battery_percent,
        ignition_on=current.ignition_on,
        ignition_confidence=current.ignition_confidence,
        ignition_detection_method=current.ignition_method,
        gps_time=current.last_update,
        recorded_at=now,
    )
