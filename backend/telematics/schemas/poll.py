from __future__ import annotations

from pydantic import BaseModel, Field
from typing import Any, Dict, Optional


class PollRequest(BaseModel):
    action: str = "lastposition"
    body_payload: Dict[str, Any] = Field(default_factory=dict)
    use_cache: bool = True


class PollSummary(BaseModel):
    records: int = 0
    positions_updated: int = 0
    stale_skipped: int = 0
    history_written: int = 0
    events_detected: int = 0
    events_inserted: int = 0
    duplicates_filtered: int = 0
    failed_chunks: int = 0


class OfflineCheckResult(BaseModel):
    checked: int = 0
    alerts_created: int = 0
    devices: list[str] = Field(default_factory=list)
    message: Optional[str] = None
