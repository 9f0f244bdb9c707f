from __future__ import annotations

from pydantic import BaseModel, Field
from typing import Any, Dict, Literal
import datetime as dt


EventType = Literal[
    "overspeeding",
    "critical_battery",
    "low_battery",
    "ignition_on",
    "ignition_off",
    "vehicle_moving",
    "upcoming_trip",
    "offline",
]
Severity = Literal["info", "warning", "critical", "error"]


class EventCandidate(BaseModel):
    device_id: str
    event_type: EventType
    severity: Severity
    title: str
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        return (self.device_id, self.event_type)


class EventOut(BaseModel):
    id: str
    device_id: str
    event_type: str
    severity: str
    title: str
    message: str
    metadata: Dict[str, Any]
    created_at: dt.datetime


class AlertTypeInfo(BaseModel):
    event_type: str
    severity: Severity
    title: str
    description: str


class WsMessage(BaseModel):
    kind: str  # position|event
    data: Dict[str, Any]
