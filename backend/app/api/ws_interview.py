import base64
import binascii
import json
import logging
import os
import time
import uuid

from fastapi import APIRouter, WebSocket
from pydantic import ValidationError

from app.conversation.service import ConversationService
from app.credentials.rotation import CredentialRotationPolicy
from app.schemas import StartInterviewRequest
from app.services.dispatcher import OutboundDispatcher
from app.services.grading import GradingService
from app.services.interview_store import interview_store
from app.system_metrics import decrement_metric, increment_metric
from core.logger import log_event

logging.basicConfig(
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    level=logging.INFO,
)

logger = logging.getLogger("ws_interview")

MAX_WS_TEXT_BYTES = max(1024, int(os.getenv("WS_MAX_TEXT_BYTES", "262144")))
MAX_WS_AUDIO_BYTES = max(1024, int(os.getenv("WS_MAX_AUDIO_BYTES", "131072")))

router = APIRouter()

dispatcher = OutboundDispatcher()
rotation_policy = CredentialRotationPolicy()
grading_service = GradingService(interview_store, rotation_policy)
conversation_service = ConversationService(interview_store, grading_service, dispatcher, rotation_policy)


def _decode_audio(data) -> bytes | None:
    text = str(data or "").strip()
    if not text:
        return None
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None


@router.websocket("/ws/interview")
async def interview_ws(websocket: WebSocket):
    client_id = str(uuid.uuid4())
    await websocket.accept()
    await dispatcher.register(client_id, websocket)
    increment_metric("ws_connections_active")

    def _log_event(event: str, **fields):
        log_event("ws_interview", event, client_id, **fields)

    _log_event("connect")
    stop_reason = "client_disconnect"

    try:
        while True:
            msg = await websocket.receive()

            if msg["type"] == "websocket.disconnect":
                break

            raw_bytes = msg.get("bytes")
            if raw_bytes:
                if len(raw_bytes) > MAX_WS_AUDIO_BYTES:
                    logger.warning("Audio frame too large | client=%s bytes=%s", client_id, len(raw_bytes))
                    continue
                await conversation_service.send_audio(client_id, raw_bytes)
                continue

            text_payload = str(msg.get("text") or "")
            if not text_payload:
                continue
            if len(text_payload.encode("utf-8")) > MAX_WS_TEXT_BYTES:
                logger.warning("WS message too large | client=%s bytes=%s", client_id, len(text_payload.encode("utf-8")))
                await dispatcher.send_error(client_id, "Message too large.")
                continue

            try:
                payload = json.loads(text_payload)
            except json.JSONDecodeError:
                await dispatcher.send_error(client_id, "Malformed message.")
                continue
            if not isinstance(payload, dict):
                await dispatcher.send_error(client_id, "Malformed message.")
                continue

            payload_type = str(payload.get("type") or "").strip().lower()

            if payload_type == "ping":
                await dispatcher.send(client_id, "pong", {"ts": time.time()})
                continue

            if payload_type == "audio":
                chunk = _decode_audio(payload.get("data"))
                if chunk is None:
                    logger.debug("Ignoring undecodable audio payload | client=%s", client_id)
                    continue
                await conversation_service.send_audio(client_id, chunk)
                continue

            if payload_type == "start":
                try:
                    request = StartInterviewRequest.model_validate(payload.get("payload") or {})
                except ValidationError as exc:
                    logger.info("Rejected start request | client=%s errors=%s", client_id, exc.error_count())
                    await dispatcher.send_error(client_id, "Invalid interview setup.")
                    continue
                _log_event("start_requested", language=request.language, difficulty=request.difficulty)
                await conversation_service.start_conversation(client_id, request)
                continue

            if payload_type == "mic_off":
                await conversation_service.send_audio_stream_end(client_id)
                continue

            if payload_type == "end":
                stop_reason = "end_command"
                await conversation_service.end_conversation(client_id)
                continue

            logger.debug("Unknown message type | client=%s type=%s", client_id, payload_type)
    except Exception as exc:
        stop_reason = "receive_error"
        logger.warning("WS receive loop failed | client=%s err=%s", client_id, exc)
    finally:
        await conversation_service.handle_disconnect(client_id)
        await dispatcher.unregister(client_id)
        decrement_metric("ws_connections_active")
        _log_event("disconnect", reason=stop_reason)
