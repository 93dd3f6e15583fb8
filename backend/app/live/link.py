import asyncio
import logging
import time
import uuid

import websockets
from websockets.exceptions import ConnectionClosed

from app.live.events import (
    GoAway,
    LinkClosed,
    LinkError,
    LinkEvent,
    LinkEventHandler,
    ResumptionUpdated,
    SetupComplete,
)
from app.live.protocol import (
    build_audio_frame,
    build_audio_stream_end_frame,
    build_client_text_frame,
    build_setup_frame,
    classify_failure,
    decode_server_message,
    encode_frame,
)
from core.config import (
    GEMINI_LIVE_WS_URL,
    LIVE_INPUT_MIME_TYPE,
    LIVE_PING_INTERVAL_SEC,
    LIVE_PING_TIMEOUT_SEC,
)
from core.state import LinkErrorKind, LinkState

logging.basicConfig(
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    level=logging.INFO,
)

logger = logging.getLogger("upstream_link")


def _failure_status(exc: BaseException) -> int | None:
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None) or getattr(exc, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _close_details(exc: ConnectionClosed | None, ws) -> tuple[int | None, str]:
    if exc is not None and getattr(exc, "rcvd", None) is not None:
        return exc.rcvd.code, str(exc.rcvd.reason or "")
    code = getattr(ws, "close_code", None)
    reason = getattr(ws, "close_reason", None)
    return code, str(reason or "")


class UpstreamLink:
    """
    One streaming connection to the Live API.

    Every inbound frame is decoded into typed events and delivered, in order, to a
    single handler. Nothing raised by the transport escapes this class: failures are
    delivered as LinkError / LinkClosed events instead.
    """

    def __init__(
        self,
        credential: str,
        model: str,
        voice: str,
        handler: LinkEventHandler,
        system_instruction: str | None = None,
        url: str = GEMINI_LIVE_WS_URL,
        mime_type: str = LIVE_INPUT_MIME_TYPE,
        connect=None,
    ):
        self.link_id = str(uuid.uuid4())
        self.model = model
        self.voice = voice
        self.system_instruction = system_instruction
        self.resumption_token: str | None = None
        self.state = LinkState.CREATED
        self.connected = False
        self.started_at: float | None = None
        self._credential = credential
        self._handler = handler
        self._url = url
        self._mime_type = mime_type
        self._connect = connect or websockets.connect
        self._ws = None
        self._reader_task: asyncio.Task | None = None
        self._closing = False
        self._send_failed = False

    async def open(self, resumption_token: str | None = None) -> None:
        if self.state != LinkState.CREATED:
            raise RuntimeError(f"UpstreamLink {self.link_id} cannot be reopened (state={self.state.value})")

        self.state = LinkState.CONNECTING
        self.resumption_token = resumption_token
        logger.info(
            "Opening live link | link=%s model=%s voice=%s resuming=%s",
            self.link_id,
            self.model,
            self.voice,
            bool(resumption_token),
        )

        try:
            self._ws = await self._connect(
                f"{self._url}?key={self._credential}",
                ping_interval=LIVE_PING_INTERVAL_SEC,
                ping_timeout=LIVE_PING_TIMEOUT_SEC,
                max_size=None,
            )
        except Exception as exc:
            if self._closing:
                await self._closed_before_ready(str(exc))
                return
            status = _failure_status(exc)
            kind = classify_failure(status, str(exc))
            logger.error("Live link connect failed | link=%s status=%s kind=%s err=%s", self.link_id, status, kind.value, exc)
            self.state = LinkState.FAILED
            await self._emit(LinkError(kind=kind, message=str(exc)))
            await self._emit(LinkClosed(code=status, reason=str(exc), expected=False, error_kind=kind))
            return

        if self._closing:
            await self._shutdown_socket()
            await self._closed_before_ready("Closed while connecting")
            return

        self.started_at = time.time()
        setup = build_setup_frame(
            model=self.model,
            voice=self.voice,
            system_instruction=self.system_instruction,
            resumption_token=resumption_token,
        )
        await self._send_frame(setup, "setup")
        self._reader_task = asyncio.create_task(self._read_loop())

    async def send_audio(self, chunk: bytes) -> None:
        if not self.connected:
            logger.warning("Audio dropped, link not connected | link=%s state=%s", self.link_id, self.state.value)
            return
        await self._send_frame(build_audio_frame(chunk, self._mime_type), "audio")

    async def send_text(self, utterance: str) -> None:
        if not self.connected:
            logger.warning("Text dropped, link not connected | link=%s", self.link_id)
            return
        await self._send_frame(build_client_text_frame(utterance), "text")

    async def send_audio_stream_end(self) -> None:
        if not self.connected:
            return
        await self._send_frame(build_audio_stream_end_frame(), "audio_stream_end")

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self.connected = False
        logger.info("Closing live link | link=%s", self.link_id)
        if self.state == LinkState.CREATED:
            await self._closed_before_ready("Closed before opening")
            return
        await self._shutdown_socket()

    async def _closed_before_ready(self, reason: str) -> None:
        # No reader task exists yet, so the closure is reported from here.
        self.state = LinkState.CLOSED
        await self._emit(LinkClosed(code=1000, reason=reason, expected=True))

    async def _shutdown_socket(self) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.close(code=1000, reason="Client closing")
        except Exception as exc:
            logger.debug("Live link close ignored | link=%s err=%s", self.link_id, exc)

    async def _send_frame(self, frame: dict, label: str) -> bool:
        if self._ws is None:
            return False
        try:
            await self._ws.send(encode_frame(frame))
            return True
        except Exception as exc:
            if self._send_failed:
                logger.debug("Live send failed again | link=%s frame=%s err=%s", self.link_id, label, exc)
                return False
            self._send_failed = True
            logger.error("Live send failed | link=%s frame=%s err=%s", self.link_id, label, exc)
            await self._emit(LinkError(kind=LinkErrorKind.TRANSPORT, message=f"Failed to send {label}: {exc}"))
            return False

    async def _read_loop(self) -> None:
        closed_exc: ConnectionClosed | None = None
        failure: Exception | None = None
        try:
            async for raw in self._ws:
                for event in decode_server_message(raw):
                    await self._dispatch(event)
        except ConnectionClosed as exc:
            closed_exc = exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            failure = exc
            logger.exception("Live reader crashed | link=%s", self.link_id)

        self.connected = False
        code, reason = _close_details(closed_exc, self._ws)
        if failure is not None:
            reason = str(failure)

        if self._closing:
            self.state = LinkState.CLOSED
            await self._emit(LinkClosed(code=code, reason=reason, expected=True))
            return

        kind = classify_failure(code, reason)
        if self.state != LinkState.RETIRING:
            self.state = LinkState.FAILED
        logger.warning(
            "Live link closed unexpectedly | link=%s code=%s kind=%s reason=%s",
            self.link_id,
            code,
            kind.value,
            reason,
        )
        if kind != LinkErrorKind.TRANSPORT:
            await self._emit(LinkError(kind=kind, message=reason or f"Connection closed ({code})"))
        await self._emit(LinkClosed(code=code, reason=reason, expected=False, error_kind=kind))

    async def _dispatch(self, event: LinkEvent) -> None:
        if isinstance(event, SetupComplete):
            self.connected = True
            self.state = LinkState.CONNECTED
            logger.info("Live setup complete | link=%s", self.link_id)
        elif isinstance(event, ResumptionUpdated):
            if event.resumable and event.handle:
                self.resumption_token = event.handle
        elif isinstance(event, GoAway):
            self.state = LinkState.RETIRING
            logger.warning("Live goAway | link=%s time_left=%s", self.link_id, event.time_left)
        await self._emit(event)

    async def _emit(self, event: LinkEvent) -> None:
        try:
            await self._handler.on_link_event(self, event)
        except Exception:
            logger.exception("Link event handler failed | link=%s event=%s", self.link_id, type(event).__name__)
