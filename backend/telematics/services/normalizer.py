"""
Telemetry Normalizer
Turns one raw GPS51 position record into a NormalizedPosition.

The normalizer never raises: a field that cannot be parsed degrades to
None / unknown so that one bad record cannot abort the fleet-wide batch.
"""

from __future__ import annotations

import datetime as dt
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from telematics.schemas.telemetry import IgnitionReading, NormalizedPosition, RawTelemetryRecord
from telematics.utils.time import parse_vendor_time, utc_now

logger = logging.getLogger("telematics.normalizer")


# --- Normalization parameters ---
SCALED_SPEED_THRESHOLD = 1000.0  # raw values at/above this are m/h
MAX_SPEED_KMH = 300.0
STATIONARY_SPEED_KMH = 3.0
IGNITION_SPEED_KMH = 5.0
DEFAULT_OFFLINE_THRESHOLD_MS = 600_000

# Ignition confidence weights
PRIMARY_CONFIDENCE = {
    "status_bits": 0.6,
    "status_string": 0.6,
    "speed_heuristic": 0.3,
}
AGREEING_SIGNAL_BONUS = 0.2
CONFLICTING_SIGNAL_PENALTY = 0.2
EXTENDED_ACC_BONUS = 0.1
MOVING_FLAG_BONUS = 0.1

_ACC_CN_ON = re.compile(r"ACC\s*开")
_ACC_CN_OFF = re.compile(r"ACC\s*关")
_ACC_ON = re.compile(r"ACC\s*(?:ON\b|:\s*ON\b|_ON\b|=\s*ON\b)", re.IGNORECASE)
_ACC_OFF = re.compile(r"ACC\s*(?:OFF\b|:\s*OFF\b|_OFF\b|=\s*OFF\b)", re.IGNORECASE)


@dataclass(frozen=True)
class BatteryProfile:
    nominal_voltage: int
    chemistry: str  # lead_acid | lithium | agm
    min_voltage: float
    max_voltage: float


BATTERY_PROFILES: Dict[str, BatteryProfile] = {
    "12v_lead_acid": BatteryProfile(12, "lead_acid", 11.0, 12.8),
    "24v_lead_acid": BatteryProfile(24, "lead_acid", 22.0, 25.6),
    "48v_lithium": BatteryProfile(48, "lithium", 40.0, 54.4),
}
DEFAULT_BATTERY_PROFILE = BATTERY_PROFILES["12v_lead_acid"]


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(f) or math.isinf(f):
        return None
    return f


def _first_present(*values: Any) -> Any:
    for v in values:
        if v is not None and v != "":
            return v
    return None


def _text(value: Any) -> Optional[str]:
    # firmware sometimes sends numeric status codes where text is expected
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _round_half_up(x: float) -> float:
    return float(math.floor(x + 0.5))


# ---------------------------------------------------------------------------
# Speed
# ---------------------------------------------------------------------------

def normalize_speed(raw_speed: Any) -> float:
    """Return speed in km/h.

    Some GPS51 firmware reports metres per hour; anything at or above
    SCALED_SPEED_THRESHOLD is rescaled by 1/1000 and rounded to a whole km/h.
    The result is clamped to [0, 300] and jitter below 3 km/h is zeroed.
    """
    speed = _to_float(raw_speed)
    if speed is None or speed <= 0:
        return 0.0

    if speed >= SCALED_SPEED_THRESHOLD:
        kmh = _round_half_up(speed / 1000.0)
    else:
        kmh = round(speed, 1)

    kmh = min(max(kmh, 0.0), MAX_SPEED_KMH)
    if kmh < STATIONARY_SPEED_KMH:
        return 0.0
    return kmh


# ---------------------------------------------------------------------------
# Ignition
# ---------------------------------------------------------------------------

def decode_status_bits(status: Any) -> Optional[Tuple[bool, bool]]:
    """Decode (base_acc, extended_acc) from a GPS51 32-bit status value.

    Lower 16 bits follow JT/T 808 (bit 0 = ACC); upper 16 bits are the GPS51
    extension (bit 0 = extended ACC). Returns None when status is unusable.
    """
    if status is None or isinstance(status, bool):
        return None
    if isinstance(status, str):
        status = status.strip()
        if not status.lstrip("-").isdigit():
            return None
        status = int(status)
    elif isinstance(status, float):
        if not status.is_integer():
            return None
        status = int(status)
    if not isinstance(status, int) or status < 0:
        return None

    status32 = status & 0xFFFFFFFF
    base = status32 & 0xFFFF
    extended = status32 >> 16
    return bool(base & 0x01), bool(extended & 0x01)


def parse_acc_string(value: Any) -> Optional[bool]:
    """Parse ACC state from a vendor status string; OFF wins over ON."""
    text = _text(value)
    if text is None:
        return None
    if _ACC_CN_OFF.search(text):
        return False
    if _ACC_CN_ON.search(text):
        return True
    if _ACC_OFF.search(text):
        return False
    if _ACC_ON.search(text):
        return True
    return None


def detect_ignition(raw: RawTelemetryRecord, speed_kmh: float) -> IgnitionReading:
    """Multi-signal ignition detection.

    Priority: status bits, then status string, then the speed heuristic.
    The first source with a reading decides the state and method; the other
    sources raise or lower the confidence depending on whether they agree.
    """
    bits = decode_status_bits(raw.status)
    bits_reading = bits[0] if bits is not None else None
    extended_acc = bits[1] if bits is not None else False

    string_reading = parse_acc_string(raw.strstatus)
    if string_reading is None:
        string_reading = parse_acc_string(raw.strstatusen)

    speed_reading = True if speed_kmh > IGNITION_SPEED_KMH else None
    moving_flag = str(raw.moving).strip() == "1" if raw.moving is not None else False

    signals: Dict[str, Optional[bool]] = {
        "status_bits": bits_reading,
        "status_string": string_reading,
        "speed_heuristic": speed_reading,
    }

    ordered: List[Tuple[str, Optional[bool]]] = [
        ("status_bits", bits_reading),
        ("status_string", string_reading),
        ("speed_heuristic", speed_reading),
    ]
    primary = next(((m, r) for m, r in ordered if r is not None), None)
    if primary is None:
        return IgnitionReading(ignition_on=None, confidence=0.0, method="unknown", signals=signals)

    method, state = primary
    confidence = PRIMARY_CONFIDENCE[method]
    for other, reading in ordered:
        if other == method or reading is None:
            continue
        if reading == state:
            confidence += AGREEING_SIGNAL_BONUS
        else:
            confidence -= CONFLICTING_SIGNAL_PENALTY

    if method == "status_bits" and state and extended_acc:
        confidence += EXTENDED_ACC_BONUS
    if state and moving_flag and speed_kmh > STATIONARY_SPEED_KMH and method != "speed_heuristic":
        confidence += MOVING_FLAG_BONUS

    confidence = round(min(max(confidence, 0.0), 1.0), 2)
    return IgnitionReading(ignition_on=state, confidence=confidence, method=method, signals=signals)


# ---------------------------------------------------------------------------
# Battery / signal / coordinates
# ---------------------------------------------------------------------------

def voltage_to_percent(voltage: Any, profile: BatteryProfile = DEFAULT_BATTERY_PROFILE) -> Optional[int]:
    v = _to_float(voltage)
    if v is None or v <= 0:
        return None
    if v >= profile.max_voltage:
        return 100
    if v <= profile.min_voltage:
        return 0
    ratio = (v - profile.min_voltage) / (profile.max_voltage - profile.min_voltage)
    if profile.chemistry == "lithium":
        pct = ratio * 100
    else:
        # lead-acid and AGM discharge curves are non-linear
        pct = math.pow(ratio, 1.5) * 100
    return max(0, min(100, int(round(pct))))


def normalize_battery(raw: RawTelemetryRecord, profile: Optional[BatteryProfile] = None) -> Optional[int]:
    pct = _to_float(raw.voltagepercent)
    if pct is not None and pct > 0:
        return max(0, min(100, int(round(pct))))
    profile = profile or DEFAULT_BATTERY_PROFILE
    for voltage in (raw.voltagev, raw.exvoltage):
        mapped = voltage_to_percent(voltage, profile)
        if mapped is not None:
            return mapped
    return None


def normalize_signal_strength(rxlevel: Any) -> Optional[int]:
    level = _to_float(rxlevel)
    if level is None:
        return None
    level = max(0.0, level)
    if level <= 31:
        return int(round(level / 31 * 100))
    if level <= 99:
        return int(round(level / 99 * 100))
    return 100


def normalize_coordinates(raw: RawTelemetryRecord) -> Tuple[Optional[float], Optional[float]]:
    lat = _to_float(_first_present(raw.callat, raw.lat, raw.latitude))
    lon = _to_float(_first_present(raw.callon, raw.lon, raw.lng, raw.longitude))
    if lat is None or lon is None:
        return None, None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None, None
    if lat == 0.0 and lon == 0.0:
        return None, None
    return lat, lon


def is_online(last_update: Optional[dt.datetime], now: dt.datetime, offline_threshold_ms: int) -> bool:
    if last_update is None:
        return False
    age_ms = (now - last_update).total_seconds() * 1000.0
    return age_ms < offline_threshold_ms


def data_quality(pos: NormalizedPosition) -> str:
    score = 0
    if pos.has_coordinates:
        score += 2
    if pos.speed_kmh > 0:
        score += 1
    if pos.battery_percent is not None:
        score += 1
    if pos.ignition_on is not None:
        score += 1
    if pos.signal_strength is not None:
        score += 1
    if score >= 5:
        return "high"
    if score >= 3:
        return "medium"
    return "low"


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def coerce_record(payload: Any) -> RawTelemetryRecord:
    if isinstance(payload, RawTelemetryRecord):
        return payload
    if not isinstance(payload, dict):
        return RawTelemetryRecord()
    try:
        return RawTelemetryRecord.model_validate(payload)
    except ValidationError as e:
        # Drop only the offending fields; the rest of the record still counts
        bad = {err["loc"][0] for err in e.errors() if err.get("loc")}
        logger.warning(
            "Dropping unparseable fields %s for device=%s",
            sorted(str(k) for k in bad), payload.get("deviceid"),
        )
        kept = {k: v for k, v in payload.items() if k not in bad}
        try:
            return RawTelemetryRecord.model_validate(kept)
        except ValidationError:
            return RawTelemetryRecord(deviceid=_text(payload.get("deviceid")))


def normalize_record(
    payload: Any,
    offline_threshold_ms: int = DEFAULT_OFFLINE_THRESHOLD_MS,
    now: Optional[dt.datetime] = None,
    battery_profile: Optional[BatteryProfile] = None,
) -> NormalizedPosition:
    """Normalize one raw GPS51 record. Never raises."""
    now = now or utc_now()
    raw = coerce_record(payload)
    device_id = _text(raw.deviceid) or ""

    try:
        lat, lon = normalize_coordinates(raw)
        speed_kmh = normalize_speed(raw.speed)
        ignition = detect_ignition(raw, speed_kmh)
        last_update = parse_vendor_time(raw.updatetime)
        gps_fix_time = parse_vendor_time(_first_present(raw.gpstime, raw.devicetime))
        overspeed_flag = _to_float(raw.currentoverspeedstate)

        pos = NormalizedPosition(
            device_id=device_id,
            lat=lat,
            lon=lon,
            speed_kmh=speed_kmh,
            heading=_to_float(_first_present(raw.course, raw.direction, raw.heading)),
            altitude=_to_float(raw.altitude),
            battery_percent=normalize_battery(raw, battery_profile),
            signal_strength=normalize_signal_strength(raw.rxlevel),
            ignition_on=ignition.ignition_on,
            ignition_confidence=ignition.confidence,
            ignition_method=ignition.method,
            is_moving=speed_kmh > STATIONARY_SPEED_KMH,
            is_online=is_online(last_update, now, offline_threshold_ms),
            is_overspeeding=overspeed_flag == 1,
            total_mileage=_to_float(raw.totaldistance),
            status_text=_text(raw.strstatus) or _text(raw.strstatusen),
            last_update=last_update,
            gps_fix_time=gps_fix_time,
        )
    except (ValidationError, TypeError, ValueError, OverflowError) as e:
        logger.warning("Normalization failed for device=%s: %s", device_id, e)
        return NormalizedPosition(device_id=device_id)

    pos.data_quality = data_quality(pos)
    if pos.ignition_on is not None and pos.ignition_confidence < 0.5:
        logger.debug(
            "Low ignition confidence %.2f for device=%s method=%s status=%s strstatus=%s",
            pos.ignition_confidence, device_id, pos.ignition_method, raw.status, raw.strstatus,
        )
    return pos
