from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Optional, Set

import httpx

from telematics.config import settings

logger = logging.getLogger("telematics.trip_sync")


class TripSyncNotifier:
    """Fire-and-forget trigger for downstream trip ingestion.

    At most once: failures are logged and never retried or surfaced to the
    poll cycle that raised them.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        window: Optional[dt.timedelta] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout_s: float = 10.0,
    ):
        self.url = url if url is not None else settings.trip_sync_url
        self.window = window or dt.timedelta(hours=settings.trip_sync_window_hours)
        self._transport = transport
        self._timeout_s = timeout_s
        self._tasks: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def payload(self, device_id: str, now: dt.datetime) -> dict:
        return {
            "device_id": device_id,
            "time_window_start": (now - self.window).isoformat(),
            "time_window_end": now.isoformat(),
        }

    def notify(self, device_id: str, now: dt.datetime) -> Optional[asyncio.Task]:
        if not self.enabled:
            logger.debug("Trip sync disabled, skipping %s", device_id)
            return None
        task = asyncio.create_task(self._send(self.payload(device_id, now)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _send(self, payload: dict) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                r = await client.post(self.url, json=payload)
                r.raise_for_status()
            logger.info("Trip sync triggered for %s", payload["device_id"])
        except httpx.HTTPError as e:
            logger.warning("Trip sync trigger failed for %s: %s", payload["device_id"], e)

    async def drain(self) -> None:
        """Wait for in-flight triggers (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
