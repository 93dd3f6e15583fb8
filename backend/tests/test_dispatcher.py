import asyncio
import json

import pytest
from starlette.websockets import WebSocketState

from app.services.dispatcher import OutboundDispatcher
from conftest import FakeWebSocket


@pytest.mark.asyncio
async def test_send_serializes_frames_for_one_connection():
    dispatcher = OutboundDispatcher()
    ws = FakeWebSocket()
    await dispatcher.register("c1", ws)

    await asyncio.gather(*[dispatcher.send("c1", "text", {"index": i}) for i in range(50)])

    assert len(ws.sent) == 50
    decoded = [json.loads(item) for item in ws.sent]
    assert {item["type"] for item in decoded} == {"text"}
    assert sorted(item["index"] for item in decoded) == list(range(50))


@pytest.mark.asyncio
async def test_send_routes_by_client_id():
    dispatcher = OutboundDispatcher()
    ws_a = FakeWebSocket()
    ws_b = FakeWebSocket()
    await dispatcher.register("a", ws_a)
    await dispatcher.register("b", ws_b)

    await dispatcher.send_status("a", "CONNECTED", "Connected to interviewer")

    assert json.loads(ws_a.sent[0]) == {"type": "status", "status": "CONNECTED", "message": "Connected to interviewer"}
    assert ws_b.sent == []


@pytest.mark.asyncio
async def test_error_flags_are_only_present_when_set():
    dispatcher = OutboundDispatcher()
    ws = FakeWebSocket()
    await dispatcher.register("c1", ws)

    await dispatcher.send_error("c1", "Invalid API key", invalid_key=True)
    await dispatcher.send_error("c1", "Something failed")

    first, second = (json.loads(item) for item in ws.sent)
    assert first == {"type": "error", "message": "Invalid API key", "invalidKey": True}
    assert second == {"type": "error", "message": "Something failed"}


@pytest.mark.asyncio
async def test_send_to_missing_or_closed_connection_is_dropped():
    dispatcher = OutboundDispatcher()
    assert await dispatcher.send("ghost", "status", {"status": "CONNECTED"}) is False

    ws = FakeWebSocket()
    ws.client_state = WebSocketState.DISCONNECTED
    await dispatcher.register("c1", ws)
    assert await dispatcher.send("c1", "status", {"status": "CONNECTED"}) is False

    await dispatcher.unregister("c1")
    assert await dispatcher.send("c1", "status", {"status": "CONNECTED"}) is False
    assert ws.sent == []


@pytest.mark.asyncio
async def test_unknown_topic_is_rejected():
    dispatcher = OutboundDispatcher()
    with pytest.raises(ValueError):
        await dispatcher.send("c1", "broadcast", {})
