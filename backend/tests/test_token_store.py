import asyncio
import datetime as dt
import hashlib
import json

import pytest

from telematics.db.models import AppSetting
from telematics.services.gps51_client import Gps51AuthError
from telematics.services.token_store import TOKEN_KEY, TokenStore
from telematics.utils.time import ensure_utc

NOW = dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.timezone.utc)


def _store(db, client, **kw):
    kw.setdefault("username", "fleet-admin")
    kw.setdefault("password", "s3cret")
    return TokenStore(db, client, **kw)


def test_missing_token_triggers_login(db, vendor, make_client):
    token = asyncio.run(_store(db, make_client()).get_valid_token(NOW))

    assert token.token == "tok-1"
    assert token.serverid == "7"
    assert token.expires_at == NOW + dt.timedelta(hours=24)
    assert vendor.calls[0]["data"]["password"] == hashlib.md5(b"s3cret").hexdigest()

    row = db.get(AppSetting, TOKEN_KEY)
    assert row.value == "tok-1"
    meta = json.loads(row.metadata_json)
    assert meta["username"] == "fleet-admin"
    assert meta["serverid"] == "7"


def test_valid_token_is_reused(db, vendor, make_client):
    store = _store(db, make_client())
    asyncio.run(store.get_valid_token(NOW))
    asyncio.run(store.get_valid_token(NOW + dt.timedelta(hours=1)))
    assert vendor.actions() == ["login"]


def test_expired_token_is_refreshed(db, vendor, make_client):
    store = _store(db, make_client())
    asyncio.run(store.get_valid_token(NOW))
    vendor.on("login", {"status": 0, "token": "tok-2", "serverid": "7"})

    token = asyncio.run(store.get_valid_token(NOW + dt.timedelta(hours=25)))

    assert token.token == "tok-2"
    assert vendor.actions() == ["login", "login"]


def test_invalidate_forces_login(db, vendor, make_client):
    store = _store(db, make_client())
    asyncio.run(store.get_valid_token(NOW))
    store.invalidate(NOW)

    assert ensure_utc(db.get(AppSetting, TOKEN_KEY).expires_at) == NOW
    asyncio.run(store.get_valid_token(NOW))
    assert vendor.actions() == ["login", "login"]


def test_no_credentials_raises(db, make_client):
    store = _store(db, make_client(), username="", password="")
    with pytest.raises(Gps51AuthError):
        asyncio.run(store.get_valid_token(NOW))


def test_login_failure_raises(db, vendor, make_client):
    vendor.on("login", {"status": 1, "cause": "wrong password"})
    with pytest.raises(Gps51AuthError, match="wrong password"):
        asyncio.run(_store(db, make_client()).get_valid_token(NOW))
    assert db.get(AppSetting, TOKEN_KEY) is None
