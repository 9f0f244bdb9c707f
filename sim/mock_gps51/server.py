from __future__ import annotations

"""Mock GPS51 forwarding proxy

- Accepts the proxy envelope {"targetUrl", "method", "data"} on POST /proxy.
- Answers the vendor actions the poller uses: login, querymonitorlist,
  lastposition.
- Keeps a small fleet in memory; vehicles drift along a heading while
  their ignition is on.
- Supports deterministic scenario injection via POST /scenario.

Run with: uvicorn sim.mock_gps51.server:app --port 8090
"""

import math
import os
import random
import time
import uuid
from typing import Any, Dict, List
from urllib.parse import parse_qs, urlparse

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

app = FastAPI(title="Mock GPS51 Proxy", version="0.1.0")

MOCK_USERNAME = os.getenv("GPS51_USERNAME", "demo")
FLEET_SIZE = int(os.getenv("MOCK_FLEET_SIZE", "5"))
ACC_BIT = 0x1


class ProxyEnvelope(BaseModel):
    targetUrl: str
    method: str = "POST"
    data: Dict[str, Any] = Field(default_factory=dict)


class ScenarioRequest(BaseModel):
    scenario: str = Field(..., description="ignition_off|overspeed|low_battery|token_expired|rate_limited|clear")
    deviceid: str | None = None


def _new_vehicle(i: int) -> Dict[str, Any]:
    return {
        "deviceid": f"MOCK{i:04d}",
        "devicename": f"Mock Vehicle {i}",
        "lat": 6.5244 + random.uniform(-0.05, 0.05),
        "lon": 3.3792 + random.uniform(-0.05, 0.05),
        "course": random.uniform(0, 360),
        "speed_kmh": 0.0,
        "acc": False,
        "battery": random.randint(40, 100),
        "overspeed": 0,
    }


fleet: List[Dict[str, Any]] = [_new_vehicle(i) for i in range(1, FLEET_SIZE + 1)]
tokens: Dict[str, float] = {}
forced_status: Dict[str, int] = {}
_last_tick = time.time()


def _tick() -> None:
    global _last_tick
    now = time.time()
    dt = now - _last_tick
    _last_tick = now
    for v in fleet:
        if random.random() < 0.02:
            v["acc"] = not v["acc"]
        v["speed_kmh"] = random.uniform(20, 80) if v["acc"] else 0.0
        if v["overspeed"]:
            v["speed_kmh"] = 135.0
        dist_deg = v["speed_kmh"] / 3600.0 * dt / 111.0
        v["lat"] += dist_deg * math.cos(math.radians(v["course"]))
        v["lon"] += dist_deg * math.sin(math.radians(v["course"]))


def _record(v: Dict[str, Any]) -> Dict[str, Any]:
    now_ms = int(time.time() * 1000)
    return {
        "deviceid": v["deviceid"],
        "callat": round(v["lat"], 6),
        "callon": round(v["lon"], 6),
        "speed": round(v["speed_kmh"] * 1000),  # firmware reports m/h
        "course": round(v["course"]),
        "status": ACC_BIT if v["acc"] else 0,
        "strstatus": "ACC ON" if v["acc"] else "ACC OFF",
        "moving": 1 if v["speed_kmh"] > 3 else 0,
        "voltagepercent": v["battery"],
        "updatetime": now_ms,
        "gpstime": now_ms,
        "currentoverspeedstate": v["overspeed"],
        "totaldistance": 123456,
    }


def _find(deviceid: str) -> Dict[str, Any]:
    for v in fleet:
        if v["deviceid"] == deviceid:
            return v
    raise HTTPException(status_code=404, detail="Unknown device")


@app.post("/proxy")
def proxy(env: ProxyEnvelope):
    query = parse_qs(urlparse(env.targetUrl).query)
    action = (query.get("action") or [""])[0]
    token = (query.get("token") or [""])[0]

    if action in forced_status:
        return {"status": forced_status[action], "cause": "forced by scenario"}

    if action == "login":
        new_token = uuid.uuid4().hex
        tokens[new_token] = time.time()
        return {"status": 0, "token": new_token, "serverid": "1"}

    if token not in tokens:
        return {"status": 9906, "cause": "token invalid"}

    if action == "querymonitorlist":
        return {
            "status": 0,
            "groups": [{
                "groupid": 1,
                "groupname": "Default",
                "devices": [
                    {"deviceid": v["deviceid"], "devicename": v["devicename"], "devicetype": 1, "creater": MOCK_USERNAME}
                    for v in fleet
                ],
            }],
        }

    if action == "lastposition":
        _tick()
        wanted = set(env.data.get("deviceids") or [v["deviceid"] for v in fleet])
        return {
            "status": 0,
            "lastquerypositiontime": int(time.time() * 1000),
            "records": [_record(v) for v in fleet if v["deviceid"] in wanted],
        }

    return {"status": 1, "cause": f"unsupported action {action}"}


@app.post("/scenario")
def scenario(req: ScenarioRequest):
    target = _find(req.deviceid) if req.deviceid else fleet[0]
    if req.scenario == "ignition_off":
        target["acc"] = False
    elif req.scenario == "overspeed":
        target["acc"] = True
        target["overspeed"] = 1
    elif req.scenario == "low_battery":
        target["battery"] = 15
    elif req.scenario == "token_expired":
        tokens.clear()
    elif req.scenario == "rate_limited":
        forced_status["lastposition"] = 8902
    elif req.scenario == "clear":
        forced_status.clear()
        for v in fleet:
            v["overspeed"] = 0
    else:
        raise HTTPException(status_code=400, detail="Unknown scenario")
    return {"ok": True, "scenario": req.scenario, "deviceid": target["deviceid"]}
