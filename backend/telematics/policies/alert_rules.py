from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from telematics.schemas.events import EventCandidate
from telematics.schemas.telemetry import NormalizedPosition


# --- Alert thresholds ---
OVERSPEED_KMH = 120.0
CRITICAL_BATTERY_PCT = 10
LOW_BATTERY_PCT = 20
MOVING_SPEED_KMH = 5.0

DETECTED_BY = "gps-data"


@dataclass(frozen=True)
class PreviousState:
    """What the current-position table held before this poll."""

    ignition_on: Optional[bool]
    speed_kmh: Optional[float]


def evaluate_alert_rules(
    current: NormalizedPosition,
    previous: Optional[PreviousState],
) -> List[EventCandidate]:
    """Evaluate every alert rule for one device; all that apply fire.

    Ignition transitions need a known state on both sides, so an unknown
    reading never raises ignition_on / ignition_off.
    """
    events: List[EventCandidate] = []
    device_id = current.device_id
    speed = current.speed_kmh
    coords = {"lat": current.lat, "lon": current.lon}

    # --- Overspeeding: vendor flag AND normalized speed ---
    if speed > OVERSPEED_KMH and current.is_overspeeding:
        events.append(EventCandidate(
            device_id=device_id,
            event_type="overspeeding",
            severity="critical",
            title="High Speed Alert",
            message=f"Vehicle traveling at {round(speed)} km/h",
            metadata={"speed": speed, **coords, "detected_by": DETECTED_BY},
        ))

    # --- Battery ---
    battery = current.battery_percent
    if battery is not None and battery < CRITICAL_BATTERY_PCT:
        events.append(EventCandidate(
            device_id=device_id,
            event_type="critical_battery",
            severity="critical",
            title="Critical Battery Level",
            message=f"Battery at {battery}% - immediate attention required",
            metadata={"battery": battery, "detected_by": DETECTED_BY},
        ))
    elif battery is not None and battery < LOW_BATTERY_PCT:
        events.append(EventCandidate(
            device_id=device_id,
            event_type="low_battery",
            severity="warning",
            title="Low Battery Warning",
            message=f"Battery level at {battery}%",
            metadata={"battery": battery, "detected_by": DETECTED_BY},
        ))

    prev_ignition = previous.ignition_on if previous else None
    prev_speed = previous.speed_kmh if previous else None
    ignition_meta = {
        **coords,
        "confidence": current.ignition_confidence,
        "method": current.ignition_method,
        "detected_by": DETECTED_BY,
    }

    # --- Ignition transitions ---
    if current.ignition_on is True and prev_ignition is False:
        events.append(EventCandidate(
            device_id=device_id,
            event_type="ignition_on",
            severity="info",
            title="Engine Started",
            message="Vehicle engine has been turned on",
            metadata=ignition_meta,
        ))

    if current.ignition_on is False and prev_ignition is True:
        events.append(EventCandidate(
            device_id=device_id,
            event_type="ignition_off",
            severity="info",
            title="Engine Stopped",
            message="Vehicle engine has been turned off",
            metadata=ignition_meta,
        ))

    # --- Vehicle started moving ---
    if (
        current.ignition_on is True
        and speed > MOVING_SPEED_KMH
        and (prev_speed is None or prev_speed <= MOVING_SPEED_KMH)
    ):
        events.append(EventCandidate(
            device_id=device_id,
            event_type="vehicle_moving",
            severity="info",
            title="Vehicle Started Moving",
            message=f"Vehicle is now moving at {round(speed)} km/h",
            metadata={"speed": speed, "previous_speed": prev_speed, **coords, "detected_by": DETECTED_BY},
        ))

    return events
