from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session

from telematics.config import settings
from telematics.db.models import VehiclePosition
from telematics.deps import get_db
from telematics.utils.time import ensure_utc

router = APIRouter()


@router.get("/health")
def health(db: Session = Depends(get_db)):
    """Health check with vendor config and data freshness."""
    newest = ensure_utc(db.query(func.max(VehiclePosition.cached_at)).scalar())
    return {
        "status": "ok",
        "environment": settings.environment,
        "gps51_configured": settings.gps51_credentials_configured,
        "scheduler_enabled": settings.poll_scheduler_enabled,
        "last_poll_at": newest.isoformat() if newest else None,
        "version": "0.1.0",
    }
