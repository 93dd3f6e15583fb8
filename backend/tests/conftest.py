import asyncio
import os
import sys
import tempfile
from pathlib import Path

import pytest
from starlette.websockets import WebSocketState


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Module-level singletons read these at import time.
os.environ.setdefault("APP_MODE", "DEV")
os.environ.setdefault("GEMINI_API_KEY", "dev-key-0123456789")
os.environ.setdefault("INTERVIEW_STORE_PATH", str(Path(tempfile.mkdtemp()) / "interview_store.json"))


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("APP_MODE", "DEV")
    monkeypatch.setenv("GEMINI_API_KEY", "dev-key-0123456789")


class FakeWebSocket:
    def __init__(self):
        self.client_state = WebSocketState.CONNECTED
        self.sent = []

    async def send_text(self, payload: str):
        await asyncio.sleep(0)
        self.sent.append(payload)


class FakeLink:
    """Stands in for UpstreamLink: records calls, events are pushed by the test."""

    created: list["FakeLink"] = []

    def __init__(self, credential, model, voice, handler, system_instruction=None):
        self.link_id = f"fake-{len(FakeLink.created) + 1}"
        self.credential = credential
        self.model = model
        self.voice = voice
        self.handler = handler
        self.system_instruction = system_instruction
        self.resumption_token = None
        self.opened_with: list[str | None] = []
        self.sent_audio: list[bytes] = []
        self.sent_text: list[str] = []
        self.stream_ends = 0
        self.closed = False
        FakeLink.created.append(self)

    async def open(self, resumption_token=None):
        self.resumption_token = resumption_token
        self.opened_with.append(resumption_token)

    async def send_audio(self, chunk: bytes):
        self.sent_audio.append(bytes(chunk))

    async def send_text(self, utterance: str):
        self.sent_text.append(utterance)

    async def send_audio_stream_end(self):
        self.stream_ends += 1

    async def close(self):
        self.closed = True

    async def emit(self, event):
        await self.handler.on_link_event(self, event)


class RecordingDispatcher:
    def __init__(self):
        self.messages: list[tuple[str, str, dict]] = []

    async def send(self, client_id, topic, payload):
        self.messages.append((client_id, topic, dict(payload or {})))
        return True

    async def send_status(self, client_id, status, message="", **fields):
        return await self.send(client_id, "status", {"status": status, "message": message, **fields})

    async def send_error(self, client_id, message, rate_limited=False, invalid_key=False, requires_api_key=False):
        payload = {"message": message}
        if rate_limited:
            payload["rateLimited"] = True
        if invalid_key:
            payload["invalidKey"] = True
        if requires_api_key:
            payload["requiresApiKey"] = True
        return await self.send(client_id, "error", payload)

    def topics(self, topic):
        return [payload for _, t, payload in self.messages if t == topic]

    def statuses(self):
        return [payload["status"] for payload in self.topics("status")]


class FakeGrader:
    def __init__(self, result=None, error: Exception | None = None):
        self.result = result or {"sessionId": "s", "overallScore": 80, "verdict": "HIRE"}
        self.error = error
        self.calls: list[tuple[str, str | None]] = []

    async def grade(self, conversation_id, credential=None):
        self.calls.append((conversation_id, credential))
        if self.error is not None:
            raise self.error
        return dict(self.result)


@pytest.fixture
def fake_links():
    FakeLink.created = []
    yield FakeLink.created
    FakeLink.created = []
