import asyncio
import json

import httpx
import pytest

from telematics.db.models import AppSetting
from telematics.services.gps51_client import (
    Gps51RateLimitError,
    Gps51TransportError,
)
from telematics.services.rate_limit import RATE_LIMIT_STATE_KEY, DbBackoffStore, RateLimiter


class Sleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(round(seconds, 3))


def test_call_posts_proxy_envelope(vendor, make_client):
    vendor.on("lastposition", {"status": 0, "records": []})
    client = make_client()

    result = asyncio.run(client.call("lastposition", "tok-9", "3", {"deviceids": ["D1"]}))

    assert result == {"status": 0, "records": []}
    call = vendor.calls[0]
    assert call["action"] == "lastposition"
    assert call["token"] == "tok-9"
    assert call["serverid"] == "3"
    assert call["method"] == "POST"
    assert call["data"] == {"deviceids": ["D1"]}


def test_rate_limit_code_is_retried(vendor, make_client):
    vendor.on("lastposition", [{"status": 8902, "cause": "ip limit"}, {"status": 0, "records": []}])
    client = make_client()

    result = asyncio.run(client.call("lastposition", "tok", "1", {}))

    assert result["status"] == 0
    assert vendor.actions() == ["lastposition", "lastposition"]


def test_rate_limit_gives_up_after_max_retries(vendor, make_client):
    vendor.on("lastposition", {"status": 8902, "cause": "ip limit"})
    client = make_client(max_retries=3)

    with pytest.raises(Gps51RateLimitError):
        asyncio.run(client.call("lastposition", "tok", "1", {}))
    assert len(vendor.calls) == 4


@pytest.mark.parametrize("code", [9903, 9906])
def test_token_codes_are_not_retried(vendor, make_client, code):
    vendor.on("lastposition", {"status": code})
    client = make_client()

    result = asyncio.run(client.call("lastposition", "tok", "1", {}))

    assert result["status"] == code
    assert len(vendor.calls) == 1


def test_http_error_is_transport_error(vendor, make_client):
    vendor.on("lastposition", httpx.Response(502, text="bad gateway"))
    with pytest.raises(Gps51TransportError, match="502"):
        asyncio.run(make_client().call("lastposition", "tok", "1", {}))


def test_non_json_is_transport_error(vendor, make_client):
    vendor.on("lastposition", httpx.Response(200, text="<html>proxy error</html>"))
    with pytest.raises(Gps51TransportError):
        asyncio.run(make_client().call("lastposition", "tok", "1", {}))


def test_timeout_is_transport_error(vendor, make_client):
    def slow(_body):
        raise httpx.ReadTimeout("vendor too slow")

    vendor.on("lastposition", slow)
    with pytest.raises(Gps51TransportError, match="timed out"):
        asyncio.run(make_client().call("lastposition", "tok", "1", {}))


def test_login_sends_md5_password(vendor, make_client):
    result = asyncio.run(make_client().login("fleet-admin", "5ebe2294ecd0e0f08eab7690d2a6ee69"))
    assert result["token"] == "tok-1"
    call = vendor.calls[0]
    assert call["action"] == "login"
    assert call["token"] is None
    assert call["data"]["username"] == "fleet-admin"
    assert call["data"]["password"] == "5ebe2294ecd0e0f08eab7690d2a6ee69"
    assert call["data"]["type"] == "USER"


# --- Rate limiter ---

def test_limiter_enforces_min_spacing():
    sleeps = Sleeps()
    limiter = RateLimiter(min_interval_s=0.2, sleep=sleeps, clock=lambda: 1000.0)

    async def go():
        await limiter.acquire()
        await limiter.acquire()

    asyncio.run(go())
    assert sleeps.calls == [0.2]


def test_limiter_caps_burst():
    sleeps = Sleeps()
    limiter = RateLimiter(min_interval_s=0.0, max_burst_calls=5, sleep=sleeps, clock=lambda: 1000.0)

    async def go():
        for _ in range(6):
            await limiter.acquire()

    asyncio.run(go())
    assert sleeps.calls == [1.0]


def test_backoff_is_shared_through_app_settings(db):
    store = DbBackoffStore(db)
    RateLimiter(store=store, clock=lambda: 1000.0).back_off(4.0)

    row = db.get(AppSetting, RATE_LIMIT_STATE_KEY)
    assert json.loads(row.value)["backoff_until"] == 1004.0

    sleeps = Sleeps()
    other = RateLimiter(min_interval_s=0.0, store=DbBackoffStore(db), sleep=sleeps, clock=lambda: 1001.0)
    asyncio.run(other.acquire())
    assert sleeps.calls == [3.0]
