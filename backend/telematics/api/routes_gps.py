from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from telematics.auth.jwt import SCOPE_OFFLINE_CHECK, SCOPE_POLL, SCOPE_VENDOR_AUTH, require_scope
from telematics.deps import get_db
from telematics.schemas.poll import OfflineCheckResult, PollRequest
from telematics.services.gps51_client import Gps51Error
from telematics.services.offline_service import OfflineService
from telematics.services.poll_service import PollService
from telematics.utils.time import utc_now

logger = logging.getLogger("telematics.api.gps")
router = APIRouter()
poll_svc: PollService | None = None


def get_poll_service() -> PollService:
    assert poll_svc is not None, "PollService not initialized"
    return poll_svc


def get_offline_service() -> OfflineService:
    return OfflineService()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post("/gps-data")
async def gps_data(
    request: Request,
    db: Session = Depends(get_db),
    svc: PollService = Depends(get_poll_service),
    caller: str | None = Depends(require_scope(SCOPE_POLL)),
):
    """Run one poll cycle (normally hit by a cron every minute, without a body)."""
    body = await request.body()
    raw = {}
    if body.strip():
        try:
            raw = json.loads(body)
        except ValueError as e:
            logger.error("Invalid JSON in request body: %s", e)
            return _error(400, "Invalid JSON in request body")
    try:
        req = PollRequest.model_validate(raw or {})
    except ValidationError as e:
        return _error(400, f"Invalid request body: {e.errors()[0].get('msg', 'validation error')}")

    logger.debug("gps-data %s triggered by %s", req.action, caller or "anonymous")
    try:
        outcome = await svc.run(db, req)
    except Gps51Error as e:
        return _error(500, str(e))
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Poll cycle failed on a database error")
        return _error(500, f"Database error: {e.__class__.__name__}")

    content = {"data": outcome.data}
    if outcome.summary is not None:
        content["summary"] = outcome.summary.model_dump()
    return content


@router.post("/gps-data/offline-check", response_model=OfflineCheckResult)
def offline_check(
    db: Session = Depends(get_db),
    svc: OfflineService = Depends(get_offline_service),
    caller: str | None = Depends(require_scope(SCOPE_OFFLINE_CHECK)),
):
    return svc.check(db)


@router.post("/gps-auth/refresh")
async def refresh_vendor_token(
    db: Session = Depends(get_db),
    svc: PollService = Depends(get_poll_service),
    caller: str | None = Depends(require_scope(SCOPE_VENDOR_AUTH)),
):
    now = utc_now()
    try:
        token = await svc.token_store(db).refresh(now)
    except Gps51Error as e:
        logger.error("GPS51 token refresh failed: %s", e)
        return _error(500, str(e))
    logger.info("GPS51 token refreshed by %s", caller or "anonymous")
    return {
        "success": True,
        "message": "GPS token refreshed successfully",
        "serverid": token.serverid,
        "refreshed_at": now.isoformat(),
        "expires_at": token.expires_at.isoformat() if token.expires_at else None,
    }
