from __future__ import annotations

import hashlib


def md5_hex(text: str) -> str:
    """GPS51 login expects the password as a lowercase MD5 hex digest."""
    return hashlib.md5(text.encode("utf-8")).hexdigest()
