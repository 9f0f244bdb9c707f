from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from telematics.config import settings
from telematics.utils.time import utc_now

logger = logging.getLogger("telematics.auth")

_bearer_scheme = HTTPBearer(auto_error=False)

# Trigger scopes carried in the space-separated "scope" claim
SCOPE_POLL = "gps:poll"
SCOPE_OFFLINE_CHECK = "gps:offline-check"
SCOPE_VENDOR_AUTH = "gps:vendor-auth"
SCHEDULER_SCOPES = (SCOPE_POLL, SCOPE_OFFLINE_CHECK, SCOPE_VENDOR_AUTH)


def create_access_token(
    subject: str,
    scopes: Iterable[str] = SCHEDULER_SCOPES,
    expires_minutes: Optional[int] = None,
) -> str:
    now = utc_now()
    exp = now + timedelta(minutes=expires_minutes or settings.access_token_expire_minutes)
    claims: Dict[str, Any] = {
        "sub": subject,
        "scope": " ".join(sorted(set(scopes))),
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    """Raises JWTError on a bad signature, audience, issuer or expiry."""
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience,
        issuer=settings.jwt_issuer,
    )


def token_scopes(claims: Dict[str, Any]) -> List[str]:
    raw = claims.get("scope") or ""
    if isinstance(raw, str):
        return raw.split()
    return [str(s) for s in raw]


def _reject(status_code: int, detail: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def require_scope(scope: str) -> Callable[..., Awaitable[Optional[str]]]:
    """Dependency for a trigger endpoint; resolves to the caller's subject.

    Required in production. Elsewhere a missing, invalid or under-scoped
    token is tolerated so a local cron or curl can hit the trigger.
    """

    async def _caller(
        creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    ) -> Optional[str]:
        if creds is None or not creds.credentials:
            if settings.is_production:
                raise _reject(status.HTTP_401_UNAUTHORIZED, "Authentication required")
            return None

        try:
            claims = decode_token(creds.credentials)
        except JWTError as exc:
            if settings.is_production:
                raise _reject(status.HTTP_401_UNAUTHORIZED, f"Invalid token: {exc}")
            logger.warning("Invalid JWT ignored outside production: %s", exc)
            return None

        subject = claims.get("sub")
        if scope not in token_scopes(claims):
            if settings.is_production:
                raise _reject(status.HTTP_403_FORBIDDEN, f"Token lacks scope {scope}")
            logger.warning("Token for %s lacks scope %s; allowed outside production", subject, scope)
        return subject

    return _caller
