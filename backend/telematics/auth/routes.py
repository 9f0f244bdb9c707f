from __future__ import annotations

from fastapi import APIRouter, HTTPException

from telematics.auth.jwt import SCHEDULER_SCOPES, create_access_token
from telematics.config import settings

router = APIRouter()


@router.post("/auth/dev-token")
def dev_token():
    """Issue a token carrying every trigger scope, for the poll scheduler outside production."""
    if settings.is_production:
        raise HTTPException(status_code=404, detail="Not found")
    return {
        "access_token": create_access_token("scheduler", SCHEDULER_SCOPES),
        "token_type": "bearer",
        "scope": " ".join(sorted(SCHEDULER_SCOPES)),
    }
