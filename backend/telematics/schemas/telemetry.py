from __future__ import annotations

import datetime as dt
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

IgnitionMethod = Literal["status_bits", "status_string", "speed_heuristic", "unknown"]
IGNITION_METHODS = ("status_bits", "status_string", "speed_heuristic", "unknown")

DataQuality = Literal["high", "medium", "low"]


class RawTelemetryRecord(BaseModel):
    """One GPS51 `lastposition` record.

    Every field is optional and loosely typed: different device firmware and
    endpoints send numbers as strings, omit fields, or use alternative keys.
    Parsing into real types happens in the normalizer, never here.
    """

    model_config = ConfigDict(extra="allow")

    deviceid: Optional[Any] = None

    status: Optional[Any] = None  # 32-bit JT808/GPS51 bitfield
    strstatus: Optional[Any] = None
    strstatusen: Optional[Any] = None
    moving: Optional[Any] = None

    speed: Optional[Any] = None  # km/h, or m/h on some firmware
    callat: Optional[Any] = None
    callon: Optional[Any] = None
    lat: Optional[Any] = None
    lon: Optional[Any] = None
    lng: Optional[Any] = None
    latitude: Optional[Any] = None
    longitude: Optional[Any] = None
    course: Optional[Any] = None
    direction: Optional[Any] = None
    heading: Optional[Any] = None
    altitude: Optional[Any] = None

    voltagepercent: Optional[Any] = None
    voltagev: Optional[Any] = None
    exvoltage: Optional[Any] = None
    rxlevel: Optional[Any] = None

    updatetime: Optional[Any] = None
    gpstime: Optional[Any] = None
    devicetime: Optional[Any] = None

    currentoverspeedstate: Optional[Any] = None
    totaldistance: Optional[Any] = None


class IgnitionReading(BaseModel):
    ignition_on: Optional[bool] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    method: IgnitionMethod = "unknown"
    signals: dict[str, Optional[bool]] = Field(default_factory=dict)


class NormalizedPosition(BaseModel):
    device_id: str
    lat: Optional[float] = None
    lon: Optional[float] = None
    speed_kmh: float = 0.0
    heading: Optional[float] = None
    altitude: Optional[float] = None
    battery_percent: Optional[int] = None
    signal_strength: Optional[int] = None

    ignition_on: Optional[bool] = None
    ignition_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    ignition_method: IgnitionMethod = "unknown"

    is_moving: bool = False
    is_online: bool = False
    is_overspeeding: bool = False
    total_mileage: Optional[float] = None
    status_text: Optional[str] = None

    last_update: Optional[dt.datetime] = None
    gps_fix_time: Optional[dt.datetime] = None
    data_quality: DataQuality = "low"

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lon is not None


class PositionOut(BaseModel):
    device_id: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    speed: float
    heading: Optional[float] = None
    altitude: Optional[float] = None
    battery_percent: Optional[int] = None
    ignition_on: Optional[bool] = None
    ignition_confidence: float
    ignition_detection_method: str
    is_online: bool
    is_overspeeding: bool
    total_mileage: Optional[float] = None
    data_quality: str
    gps_time: Optional[dt.datetime] = None
    gps_fix_time: Optional[dt.datetime] = None
    cached_at: dt.datetime


class HistorySampleOut(BaseModel):
    id: int
    device_id: str
    latitude: float
    longitude: float
    speed: float
    heading: Optional[float] = None
    battery_percent: Optional[int] = None
    ignition_on: Optional[bool] = None
    gps_time: Optional[dt.datetime] = None
    recorded_at: dt.datetime
