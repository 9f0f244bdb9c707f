from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from telematics.config import settings
from telematics.observability.logging import configure_logging
from telematics.db.session import engine, Base
from telematics.api.routes_health import router as health_router
from telematics.api.routes_gps import router as gps_router
from telematics.api.routes_positions import router as positions_router
from telematics.api.routes_alerts import router as alerts_router
from telematics.api.routes_ws import router as ws_router, hub
from telematics.auth.routes import router as auth_router
from telematics.services.poll_service import PollService
from telematics.services.scheduler import PollScheduler
import telematics.api.routes_gps as routes_gps_module

configure_logging()
logger = logging.getLogger("telematics")


def init_database(max_retries: int = 5, retry_delay: int = 2) -> bool:
    """Create tables, retrying while the database comes up."""
    for attempt in range(max_retries):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            Base.metadata.create_all(bind=engine)
            logger.info("Database initialized")
            return True
        except SQLAlchemyError as e:
            logger.warning("Database connection attempt %d/%d failed: %s", attempt + 1, max_retries, e)
            if attempt < max_retries - 1:
                time.sleep(retry_delay)
    logger.error("Failed to connect to database after all retries")
    # Don't crash; /health will report stale data
    return False


poll_service = PollService()
poll_service.bind_broadcaster(hub.broadcast)
routes_gps_module.poll_svc = poll_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting GPS51 telemetry API (environment=%s)", settings.environment)
    if not settings.gps51_credentials_configured:
        logger.warning("GPS51 credentials not configured; polls will fail until a token is stored")

    init_database()

    scheduler = None
    if settings.poll_scheduler_enabled:
        scheduler = PollScheduler(poll_service)
        scheduler.start()

    yield

    logger.info("Shutting down...")
    if scheduler is not None:
        await scheduler.stop()
    await poll_service.close()


app = FastAPI(
    title="GPS51 Telemetry API",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/")
def root():
    return {
        "name": "GPS51 Telemetry API",
        "status": "ok",
        "docs": "/docs",
        "health": "/health",
    }


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(auth_router)
app.include_router(gps_router)
app.include_router(positions_router)
app.include_router(alerts_router)
app.include_router(ws_router)
