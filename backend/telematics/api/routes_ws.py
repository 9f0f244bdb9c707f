from __future__ import annotations

import asyncio
import json
import logging
from typing import Dict, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger("telematics.ws")
router = APIRouter()

ALL_DEVICES = "*"


class WsHub:
    """Fan-out of position updates and inserted events to dashboard sockets.

    Subscribers register per device, or under ALL_DEVICES for the fleet view.
    """

    def __init__(self):
        self._clients: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, topic: str, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._clients.setdefault(topic, set()).add(ws)

    async def disconnect(self, topic: str, ws: WebSocket) -> None:
        async with self._lock:
            subs = self._clients.get(topic)
            if subs and ws in subs:
                subs.remove(ws)
                if not subs:
                    self._clients.pop(topic, None)

    async def _send(self, topic: str, payload: str) -> None:
        async with self._lock:
            clients = list(self._clients.get(topic, set()))
        dead = []
        for ws in clients:
            try:
                await ws.send_text(payload)
            except (WebSocketDisconnect, RuntimeError):
                dead.append(ws)
        for ws in dead:
            await self.disconnect(topic, ws)

    async def broadcast(self, device_id: str, message: dict) -> None:
        logger.debug("Broadcasting %s for %s", message.get("kind", "?"), device_id)
        payload = json.dumps(message, ensure_ascii=False, default=str)
        await self._send(device_id, payload)
        await self._send(ALL_DEVICES, payload)

    def subscriber_count(self, topic: str) -> int:
        return len(self._clients.get(topic, ()))


hub = WsHub()


async def _serve(topic: str, ws: WebSocket) -> None:
    logger.info("WS connect: %s", topic)
    await hub.connect(topic, ws)
    try:
        while True:
            _ = await ws.receive_text()
    except WebSocketDisconnect:
        logger.info("WS disconnect: %s", topic)
    finally:
        await hub.disconnect(topic, ws)


@router.websocket("/ws/devices")
async def ws_fleet(ws: WebSocket):
    await _serve(ALL_DEVICES, ws)


@router.websocket("/ws/devices/{device_id}")
async def ws_device(device_id: str, ws: WebSocket):
    await _serve(device_id, ws)
