"""
Gemini Live wire codec.

Outbound frames are plain dicts serialized with json.dumps; inbound frames are
decoded into the typed events of app.live.events. Decoding never raises: a frame
that cannot be understood becomes a PROTOCOL LinkError event.
"""

import base64
import binascii
import json
import logging

from app.live.events import (
    AudioReceived,
    GoAway,
    InputTranscript,
    Interrupted,
    LinkError,
    LinkEvent,
    OutputTranscript,
    ResumptionUpdated,
    SetupComplete,
    TextReceived,
    TurnComplete,
)
from core.state import LinkErrorKind

logger = logging.getLogger("live_protocol")

# Top-level keys the provider may send that carry nothing the relay acts on.
_IGNORED_TOP_LEVEL_KEYS = {"usageMetadata", "toolCall", "toolCallCancellation"}

_RATE_LIMIT_MARKERS = ("resource_exhausted", "quota", "rate limit", "rate-limit", "too many requests")
_INVALID_CREDENTIAL_MARKERS = (
    "api key not valid",
    "api_key_invalid",
    "invalid api key",
    "permission_denied",
    "unauthenticated",
    "unauthorized",
)


def _model_path(model: str) -> str:
    value = str(model or "").strip()
    return value if value.startswith("models/") else f"models/{value}"


def build_setup_frame(
    model: str,
    voice: str,
    system_instruction: str | None = None,
    resumption_token: str | None = None,
) -> dict:
    setup: dict = {
        "model": _model_path(model),
        "generationConfig": {
            "responseModalities": ["AUDIO"],
            "speechConfig": {
                "voiceConfig": {
                    "prebuiltVoiceConfig": {"voiceName": voice},
                },
            },
        },
        "contextWindowCompression": {"slidingWindow": {}},
        "sessionResumption": {"handle": resumption_token} if resumption_token else {},
        "inputAudioTranscription": {},
        "outputAudioTranscription": {},
    }
    # A resumed session keeps the instruction on the provider side.
    if not resumption_token and system_instruction:
        setup["systemInstruction"] = {"parts": [{"text": system_instruction}]}
    return {"setup": setup}


def build_audio_frame(chunk: bytes, mime_type: str) -> dict:
    return {
        "realtimeInput": {
            "audio": {
                "data": base64.b64encode(bytes(chunk)).decode("ascii"),
                "mimeType": mime_type,
            },
        },
    }


def build_audio_stream_end_frame() -> dict:
    return {"realtimeInput": {"audioStreamEnd": True}}


def build_client_text_frame(text: str, role: str = "user") -> dict:
    return {
        "clientContent": {
            "turns": [{"role": role, "parts": [{"text": text}]}],
            "turnComplete": True,
        },
    }


def encode_frame(frame: dict) -> str:
    return json.dumps(frame, ensure_ascii=False)


def _protocol_error(message: str) -> list[LinkEvent]:
    return [LinkError(kind=LinkErrorKind.PROTOCOL, message=message)]


def _decode_server_content(content: dict) -> list[LinkEvent]:
    events: list[LinkEvent] = []

    model_turn = content.get("modelTurn")
    if isinstance(model_turn, dict):
        for part in model_turn.get("parts") or []:
            if not isinstance(part, dict):
                continue
            inline = part.get("inlineData")
            if isinstance(inline, dict) and inline.get("data"):
                try:
                    events.append(AudioReceived(data=base64.b64decode(str(inline["data"]), validate=True)))
                except (binascii.Error, ValueError) as exc:
                    events.append(LinkError(kind=LinkErrorKind.PROTOCOL, message=f"Invalid inline audio: {exc}"))
            text = part.get("text")
            if isinstance(text, str) and text and not part.get("thought"):
                events.append(TextReceived(text=text))

    input_tx = content.get("inputTranscription")
    if isinstance(input_tx, dict) and input_tx.get("text"):
        events.append(InputTranscript(text=str(input_tx["text"])))

    output_tx = content.get("outputTranscription")
    if isinstance(output_tx, dict) and output_tx.get("text"):
        events.append(OutputTranscript(text=str(output_tx["text"])))

    if content.get("interrupted"):
        events.append(Interrupted())

    if content.get("turnComplete"):
        events.append(TurnComplete())

    return events


def decode_server_message(raw: str | bytes) -> list[LinkEvent]:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            return _protocol_error(f"Failed to decode frame: {exc}")

    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as exc:
        return _protocol_error(f"Failed to parse message: {exc}")

    if not isinstance(message, dict):
        return _protocol_error("Unexpected frame shape")

    events: list[LinkEvent] = []
    recognized = False

    if "setupComplete" in message:
        recognized = True
        events.append(SetupComplete())

    update = message.get("sessionResumptionUpdate")
    if isinstance(update, dict):
        recognized = True
        handle = update.get("newHandle")
        events.append(
            ResumptionUpdated(
                handle=str(handle) if handle else None,
                resumable=bool(update.get("resumable")),
            )
        )

    content = message.get("serverContent")
    if isinstance(content, dict):
        recognized = True
        events.extend(_decode_server_content(content))

    go_away = message.get("goAway")
    if isinstance(go_away, dict):
        recognized = True
        time_left = go_away.get("timeLeft")
        events.append(GoAway(time_left=str(time_left) if time_left is not None else None))

    error = message.get("error")
    if isinstance(error, dict):
        recognized = True
        detail = str(error.get("message") or error.get("status") or error)
        events.append(LinkError(kind=classify_failure(error.get("code"), detail), message=detail))

    if not recognized:
        if any(key in message for key in _IGNORED_TOP_LEVEL_KEYS):
            return []
        logger.debug("Unrecognized live frame keys=%s", sorted(message.keys()))
        return _protocol_error(f"Unrecognized frame: {sorted(message.keys())}")

    return events


def classify_failure(status_code: int | None, reason: str | None) -> LinkErrorKind:
    try:
        code = int(status_code) if status_code is not None else None
    except (TypeError, ValueError):
        code = None
    text = str(reason or "").lower()

    if code in {429, 1013} or any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return LinkErrorKind.RATE_LIMITED
    if code in {401, 403} or any(marker in text for marker in _INVALID_CREDENTIAL_MARKERS):
        return LinkErrorKind.INVALID_CREDENTIAL
    return LinkErrorKind.TRANSPORT


def is_daily_quota(reason: str | None) -> bool:
    text = str(reason or "").lower()
    return "perday" in text or "per day" in text or "per_day" in text or "daily" in text
