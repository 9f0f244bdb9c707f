from __future__ import annotations

import secrets
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def generate_secret() -> str:
    """Generate a secure random token."""
    return secrets.token_hex(32)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ------------------------------------------------------------
    # Server
    # ------------------------------------------------------------
    backend_host: str = "0.0.0.0"
    backend_port: int = 8080
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"

    # ------------------------------------------------------------
    # Database
    # ------------------------------------------------------------
    database_url: str = "sqlite:///./data/telematics.db"

    # ------------------------------------------------------------
    # Authentication (JWT) for the trigger endpoints
    # ------------------------------------------------------------
    # In production, MUST be set via env var JWT_SECRET
    jwt_secret: str = Field(default_factory=generate_secret)
    jwt_issuer: str = "telematics"
    jwt_audience: str = "telematics-scheduler"
    access_token_expire_minutes: int = 720
    jwt_algorithm: str = "HS256"

    # ------------------------------------------------------------
    # CORS
    # ------------------------------------------------------------
    cors_origins: str = "http://localhost:3000"

    # ------------------------------------------------------------
    # GPS51 vendor API
    # ------------------------------------------------------------
    # Calls go through an HTTP forwarding proxy which posts to targetUrl.
    gps51_api_url: str = "https://api.gps51.com/openapi"
    gps51_proxy_url: str = "http://127.0.0.1:8090/proxy"
    gps51_username: Optional[str] = None
    gps51_password: Optional[str] = None
    gps51_timeout_s: float = 30.0
    gps51_token_ttl_hours: int = 24
    gps51_min_call_interval_ms: int = 200
    gps51_max_burst_calls: int = 5
    gps51_max_retries: int = 3

    # ------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------
    offline_threshold_ms: int = 600_000
    cache_ttl_s: int = 30
    batch_size: int = 50

    # Smart history sampling
    history_distance_threshold_m: float = Field(default=50.0, ge=50.0, le=75.0)
    history_time_threshold_s: int = Field(default=300, ge=300, le=420)

    # Proactive events
    alert_cooldown_minutes: int = 30
    offline_alert_hours: int = 1
    offline_alert_cooldown_minutes: int = 60

    # Trip ingestion trigger (fire-and-forget on ignition off)
    trip_sync_url: Optional[str] = None
    trip_sync_window_hours: int = 24

    # In-process scheduler (normally an external cron hits POST /gps-data)
    poll_scheduler_enabled: bool = False
    poll_interval_s: float = 60.0

    @property
    def cors_origins_list(self) -> List[str]:
        return [x.strip() for x in self.cors_origins.split(",") if x.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def gps51_credentials_configured(self) -> bool:
        return bool(self.gps51_username and self.gps51_password)

    def validate_runtime(self) -> None:
        """Fail fast on missing critical config in production."""
        import os
        if self.is_production:
            missing = []
            # Require explicitly-set secrets in production (not auto-generated)
            if not os.environ.get("JWT_SECRET"):
                missing.append("JWT_SECRET")
            if not self.gps51_credentials_configured:
                missing.append("GPS51_USERNAME/GPS51_PASSWORD")
            if missing:
                raise RuntimeError(
                    f"Missing required environment variables in production: {', '.join(missing)}"
                )


settings = Settings()
settings.validate_runtime()
