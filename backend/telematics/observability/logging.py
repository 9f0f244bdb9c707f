from __future__ import annotations

import logging
import sys

from telematics.config import settings

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once for the API process and the scheduler."""
    resolved = (level or settings.log_level or "INFO").upper()
    root = logging.getLogger()
    if getattr(root, "_telematics_configured", False):
        root.setLevel(resolved)
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    root.setLevel(resolved)
    root._telematics_configured = True  # type: ignore[attr-defined]

    # httpx logs every request at INFO; keep vendor polling quiet
    logging.getLogger("httpx").setLevel(logging.WARNING)
