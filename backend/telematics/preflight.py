from __future__ import annotations

"""Preflight checks for container startup.

- ensures data directory exists for SQLite
- prints a masked config summary
"""

import os
from telematics.config import settings


def _mask_url(url: str) -> str:
    if "@" not in url:
        return url
    parts = url.split("@")
    return parts[0].split("://")[0] + "://***@" + parts[-1]


def main():
    os.makedirs("data", exist_ok=True)
    print("Preflight OK")
    print(f"DATABASE_URL={_mask_url(settings.database_url)}")
    print(f"GPS51_API_URL={settings.gps51_api_url}")
    print(f"GPS51_PROXY_URL={_mask_url(settings.gps51_proxy_url)}")
    print(f"GPS51_USERNAME={settings.gps51_username or '(unset)'}")
    print(f"GPS51_PASSWORD={'***' if settings.gps51_password else '(unset)'}")
    print(f"TRIP_SYNC_URL={settings.trip_sync_url or '(disabled)'}")
    print(f"POLL_SCHEDULER_ENABLED={settings.poll_scheduler_enabled}")
    print(f"CORS_ORIGINS={settings.cors_origins}")


if __name__ == "__main__":
    main()
