from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Awaitable, Callable, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from telematics.db.models import AppSetting
from telematics.utils.time import utc_now

logger = logging.getLogger("telematics.gps51.rate_limit")

RATE_LIMIT_STATE_KEY = "gps51_rate_limit_state"


class BackoffStore(Protocol):
    def get_backoff_until(self) -> float: ...

    def set_backoff_until(self, until: float) -> None: ...


class DbBackoffStore:
    """Shares the vendor back-off deadline (epoch seconds) across pollers."""

    def __init__(self, db: Session):
        self.db = db

    def get_backoff_until(self) -> float:
        try:
            row = self.db.get(AppSetting, RATE_LIMIT_STATE_KEY)
        except SQLAlchemyError as e:
            logger.warning("Could not read rate limit state: %s", e)
            return 0.0
        if row is None or not row.value:
            return 0.0
        try:
            return float(json.loads(row.value).get("backoff_until", 0.0))
        except (ValueError, TypeError, AttributeError):
            return 0.0

    def set_backoff_until(self, until: float) -> None:
        now = utc_now()
        value = json.dumps({"backoff_until": until, "updated_at": now.isoformat()})
        try:
            row = self.db.get(AppSetting, RATE_LIMIT_STATE_KEY)
            if row is None:
                row = AppSetting(key=RATE_LIMIT_STATE_KEY, metadata_json=json.dumps({"updated_by": "gps51-client"}))
                self.db.add(row)
            row.value = value
            row.updated_at = now
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("Could not persist rate limit state: %s", e)


class RateLimiter:
    """Paces vendor calls: minimum spacing, burst cap, and a shared back-off.

    One limiter instance is shared by a client; the lock serializes pacing
    when polls overlap inside the same process.
    """

    def __init__(
        self,
        min_interval_s: float = 0.2,
        max_burst_calls: int = 5,
        burst_window_s: float = 1.0,
        store: Optional[BackoffStore] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.min_interval_s = min_interval_s
        self.max_burst_calls = max_burst_calls
        self.burst_window_s = burst_window_s
        self.store = store
        self._sleep = sleep
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_call = 0.0
        self._window_start = 0.0
        self._calls_in_window = 0
        self._backoff_until = 0.0

    def bind_store(self, store: Optional[BackoffStore]) -> None:
        self.store = store

    def _backoff_remaining(self, now: float) -> float:
        until = self._backoff_until
        if self.store is not None:
            until = max(until, self.store.get_backoff_until())
        return max(0.0, until - now)

    async def acquire(self) -> None:
        async with self._lock:
            now = self._clock()
            wait = self._backoff_remaining(now)
            if wait > 0:
                logger.info("Vendor back-off active, waiting %.2fs", wait)
                await self._sleep(wait)
                now = self._clock()

            if now - self._window_start >= self.burst_window_s:
                self._window_start = now
                self._calls_in_window = 0
            if self._calls_in_window >= self.max_burst_calls:
                wait = self.burst_window_s - (now - self._window_start)
                if wait > 0:
                    logger.debug("Burst limit reached, waiting %.2fs", wait)
                    await self._sleep(wait)
                now = self._clock()
                self._window_start = now
                self._calls_in_window = 0

            since_last = now - self._last_call
            if since_last < self.min_interval_s:
                await self._sleep(self.min_interval_s - since_last)

            self._last_call = self._clock()
            self._calls_in_window += 1

    def back_off(self, delay_s: float) -> None:
        until = self._clock() + delay_s
        self._backoff_until = until
        if self.store is not None:
            self.store.set_backoff_until(until)

    def reset(self) -> None:
        self._backoff_until = 0.0
        if self.store is not None and self.store.get_backoff_until() > 0:
            self.store.set_backoff_until(0.0)
