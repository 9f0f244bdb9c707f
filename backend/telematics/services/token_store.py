from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from telematics.config import settings
from telematics.db.models import AppSetting
from telematics.services.gps51_client import Gps51AuthError, Gps51Client
from telematics.utils.hashing import md5_hex
from telematics.utils.time import ensure_utc, utc_now

logger = logging.getLogger("telematics.gps51.token")

TOKEN_KEY = "gps_token"
DEFAULT_SERVERID = "1"


@dataclass(frozen=True)
class VendorToken:
    token: str
    serverid: str
    username: Optional[str]
    expires_at: Optional[dt.datetime]

    def is_valid(self, now: dt.datetime) -> bool:
        return bool(self.token) and (self.expires_at is None or self.expires_at > now)


class TokenStore:
    """Vendor session token kept in app_settings, shared by every poller.

    Refresh is check-then-act without a lock: two pollers that both see an
    expired token log in twice and the later write wins.
    """

    def __init__(
        self,
        db: Session,
        client: Gps51Client,
        username: Optional[str] = None,
        password: Optional[str] = None,
        ttl: Optional[dt.timedelta] = None,
    ):
        self.db = db
        self.client = client
        self.username = username if username is not None else settings.gps51_username
        self.password = password if password is not None else settings.gps51_password
        self.ttl = ttl or dt.timedelta(hours=settings.gps51_token_ttl_hours)

    def load(self) -> Optional[VendorToken]:
        row = self.db.get(AppSetting, TOKEN_KEY)
        if row is None or not row.value:
            return None
        try:
            meta = json.loads(row.metadata_json or "{}")
        except ValueError:
            meta = {}
        return VendorToken(
            token=row.value,
            serverid=str(meta.get("serverid") or DEFAULT_SERVERID),
            username=meta.get("username"),
            expires_at=ensure_utc(row.expires_at),
        )

    async def get_valid_token(self, now: Optional[dt.datetime] = None) -> VendorToken:
        now = now or utc_now()
        current = self.load()
        if current is not None and current.is_valid(now):
            return current
        logger.info("GPS51 token missing or expired, logging in")
        return await self.refresh(now)

    async def refresh(self, now: Optional[dt.datetime] = None) -> VendorToken:
        if not (self.username and self.password):
            raise Gps51AuthError("GPS51 token missing or expired and no credentials are configured")

        now = now or utc_now()
        result = await self.client.login(self.username, md5_hex(self.password))
        token = result.get("token")
        if result.get("status") != 0 or not token:
            cause = result.get("cause") or result.get("message") or "no token returned"
            raise Gps51AuthError(f"GPS51 login failed (status: {result.get('status')}): {cause}")

        vendor_token = VendorToken(
            token=str(token),
            serverid=str(result.get("serverid") or DEFAULT_SERVERID),
            username=self.username,
            expires_at=now + self.ttl,
        )
        self._save(vendor_token, now)
        logger.info("GPS51 token refreshed for %s (serverid=%s)", self.username, vendor_token.serverid)
        return vendor_token

    def invalidate(self, now: Optional[dt.datetime] = None) -> None:
        now = now or utc_now()
        row = self.db.get(AppSetting, TOKEN_KEY)
        if row is None:
            return
        row.expires_at = now
        row.updated_at = now
        self.db.commit()
        logger.warning("GPS51 token invalidated")

    def _save(self, token: VendorToken, now: dt.datetime) -> None:
        row = self.db.get(AppSetting, TOKEN_KEY)
        if row is None:
            row = AppSetting(key=TOKEN_KEY)
            self.db.add(row)
        row.value = token.token
        row.expires_at = token.expires_at
        row.metadata_json = json.dumps({
            "username": token.username,
            "serverid": token.serverid,
            "refreshed_at": now.isoformat(),
        })
        row.updated_at = now
        self.db.commit()
