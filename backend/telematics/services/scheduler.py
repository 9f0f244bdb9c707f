from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from telematics.config import settings
from telematics.db.session import SessionLocal
from telematics.schemas.poll import PollRequest
from telematics.services.gps51_client import Gps51Error
from telematics.services.offline_service import OfflineService
from telematics.services.poll_service import PollService

logger = logging.getLogger("telematics.scheduler")


class PollScheduler:
    """In-process replacement for the external cron.

    Each tick runs one uncached lastposition cycle followed by the offline
    sweep. A failed cycle is logged and the loop keeps going.
    """

    def __init__(
        self,
        poll_service: PollService,
        offline_service: Optional[OfflineService] = None,
        interval_s: Optional[float] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.poll_service = poll_service
        self.offline_service = offline_service or OfflineService()
        self.interval_s = interval_s or settings.poll_interval_s
        self.session_factory = session_factory
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def tick(self) -> None:
        """One poll then one offline sweep; a failed poll still gets its sweep."""
        try:
            await self._poll()
        except Gps51Error as e:
            logger.error("Scheduled poll failed: %s", e)
        except Exception:
            logger.exception("Scheduled poll crashed")

        # Vendor outages are when devices go silent, so the sweep runs regardless
        try:
            self._sweep()
        except Exception:
            logger.exception("Scheduled offline check crashed")

    async def _poll(self) -> None:
        # DB sessions are not shared across ticks
        db = self.session_factory()
        try:
            await self.poll_service.run(db, PollRequest(action="lastposition", use_cache=False))
        finally:
            db.close()

    def _sweep(self) -> None:
        db = self.session_factory()
        try:
            self.offline_service.check(db)
        finally:
            db.close()

    async def _loop(self) -> None:
        logger.info("Poll scheduler started (every %.0fs)", self.interval_s)
        while not self._stop.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass
        logger.info("Poll scheduler stopped")
