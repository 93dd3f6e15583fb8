import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from core.logger import log_event

logger = logging.getLogger("app.services.dispatcher")

TOPICS = frozenset({"status", "audio", "text", "transcript", "error", "report", "pong"})


class OutboundDispatcher:
    """
    Delivers relay events to the client connection they belong to.

    Each registered websocket gets its own send lock, so frames from the link
    reader, the grading task and the receive loop never interleave on the wire.
    """

    def __init__(self):
        self._registry_lock = asyncio.Lock()
        self._connections: dict[str, WebSocket] = {}
        self._send_locks: dict[str, asyncio.Lock] = {}

    async def register(self, client_id: str, websocket: WebSocket) -> None:
        async with self._registry_lock:
            self._connections[client_id] = websocket
            self._send_locks.setdefault(client_id, asyncio.Lock())

    async def unregister(self, client_id: str) -> None:
        async with self._registry_lock:
            self._connections.pop(client_id, None)
            self._send_locks.pop(client_id, None)

    async def send(self, client_id: str, topic: str, payload: dict[str, Any]) -> bool:
        if topic not in TOPICS:
            raise ValueError(f"Unknown outbound topic: {topic}")

        async with self._registry_lock:
            websocket = self._connections.get(client_id)
            send_lock = self._send_locks.get(client_id)
        if websocket is None or send_lock is None:
            logger.debug("Outbound dropped, client gone | client=%s topic=%s", client_id, topic)
            return False
        if websocket.client_state != WebSocketState.CONNECTED:
            return False

        try:
            encoded = json.dumps({"type": topic, **(payload or {})}, ensure_ascii=False)
        except Exception as exc:
            logger.warning("Outbound payload encode failed | client=%s topic=%s err=%s", client_id, topic, exc)
            return False

        try:
            async with send_lock:
                await websocket.send_text(encoded)
        except Exception as exc:
            logger.warning("Outbound send failed | client=%s topic=%s err=%s", client_id, topic, exc)
            return False

        if topic != "audio":
            log_event("dispatcher", "message_sent", client_id, topic=topic, bytes=len(encoded.encode("utf-8")))
        return True

    async def send_status(self, client_id: str, status: str, message: str = "", **fields: Any) -> bool:
        return await self.send(client_id, "status", {"status": status, "message": message, **fields})

    async def send_error(
        self,
        client_id: str,
        message: str,
        rate_limited: bool = False,
        invalid_key: bool = False,
        requires_api_key: bool = False,
    ) -> bool:
        payload: dict[str, Any] = {"message": message}
        if rate_limited:
            payload["rateLimited"] = True
        if invalid_key:
            payload["invalidKey"] = True
        if requires_api_key:
            payload["requiresApiKey"] = True
        return await self.send(client_id, "error", payload)
