import asyncio
import base64
import logging
from typing import Callable

from app.conversation.conclusion import ConclusionDetector, conclusion_detector, greeting_for
from app.conversation.finalization import FinalizationHandoff
from app.conversation.reconnection import ReconnectionCoordinator
from app.conversation.state import ConversationConfig, ConversationState
from app.credentials.rotation import CredentialRotationPolicy
from app.live.events import (
    AudioReceived,
    GoAway,
    InputTranscript,
    Interrupted,
    LinkClosed,
    LinkError,
    LinkEvent,
    OutputTranscript,
    ResumptionUpdated,
    SetupComplete,
    TextReceived,
    TurnComplete,
)
from app.live.link import UpstreamLink
from app.live.protocol import is_daily_quota
from app.schemas import StartInterviewRequest
from app.services.dispatcher import OutboundDispatcher
from app.services.grading import GradingService
from app.services.interview_store import InterviewStore
from app.services.prompts import generate_system_instruction
from app.session.registry import SessionRegistry
from app.system_metrics import increment_metric, set_metric
from core.config import GEMINI_LIVE_MODEL, RECONNECT_MAX_ATTEMPTS
from core.logger import log_event
from core.state import LinkErrorKind

logger = logging.getLogger("conversation_service")

LinkFactory = Callable[..., UpstreamLink]

_NO_RECONNECT_KINDS = {LinkErrorKind.INVALID_CREDENTIAL, LinkErrorKind.RATE_LIMITED}


class ConversationService:
    """
    Relays one client connection to one live interview.

    Every upstream link reports to `on_link_event`. Events from a link that is
    no longer its session's active link are dropped, which is what makes a
    replaced link's late close or second retirement notice harmless.
    """

    def __init__(
        self,
        store: InterviewStore,
        grader: GradingService,
        dispatcher: OutboundDispatcher,
        rotation: CredentialRotationPolicy,
        registry: SessionRegistry | None = None,
        link_factory: LinkFactory = UpstreamLink,
        detector: ConclusionDetector = conclusion_detector,
        live_model: str = GEMINI_LIVE_MODEL,
        max_reconnect_attempts: int = RECONNECT_MAX_ATTEMPTS,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.rotation = rotation
        self.registry = registry if registry is not None else SessionRegistry()
        self.detector = detector
        self.live_model = live_model
        self._link_factory = link_factory
        self._link_owners: dict[str, str] = {}
        self.reconnection = ReconnectionCoordinator(self._new_link, dispatcher, max_reconnect_attempts)
        self.finalization = FinalizationHandoff(store, grader, dispatcher, self.registry)

    def _new_link(self, state: ConversationState) -> UpstreamLink:
        config = state.config
        link = self._link_factory(
            credential=config.credential,
            model=config.live_model,
            voice=config.voice,
            handler=self,
            system_instruction=config.system_instruction,
        )
        self._link_owners[link.link_id] = state.client_id
        increment_metric("live_links_opened_total")
        return link

    def _state_for(self, link: UpstreamLink) -> ConversationState | None:
        client_id = self._link_owners.get(link.link_id)
        if client_id is None:
            return None
        state = self.registry.get(client_id)
        if state is None or state.active_link is not link:
            return None
        return state

    def _forget_link(self, link: UpstreamLink | None) -> None:
        if link is not None:
            self._link_owners.pop(link.link_id, None)

    # ----- client-facing operations -----

    async def start_conversation(self, client_id: str, request: StartInterviewRequest) -> ConversationState | None:
        existing = self.registry.get(client_id)
        if existing is not None:
            if not existing.disconnected:
                await self.dispatcher.send_error(client_id, "An interview is already in progress on this connection.")
                return None
            await self._retire(existing, reason="restarted")

        credential = self.rotation.credential_for(self.live_model, request.api_key)
        if not credential:
            logger.warning("No credential for live session | client=%s mode=%s", client_id, self.rotation.mode)
            await self.dispatcher.send_error(client_id, "An API key is required to start the interview.", requires_api_key=True)
            return None

        try:
            conversation_id = await asyncio.to_thread(
                self.store.create_session,
                request.candidate_name,
                request.position,
                request.difficulty,
                request.language,
            )
        except Exception:
            logger.exception("Failed to create interview session | client=%s", client_id)
            await self.dispatcher.send_error(client_id, "Failed to start interview. Please try again.")
            return None

        system_instruction = generate_system_instruction(
            request.position,
            request.difficulty,
            request.language,
            request.cv_text,
            request.interviewer_name_en,
            request.interviewer_name_bg,
        )
        config = ConversationConfig(
            candidate_name=request.candidate_name,
            position=request.position,
            difficulty=request.difficulty,
            language=request.language,
            voice=request.voice,
            system_instruction=system_instruction,
            credential=credential,
            live_model=self.live_model,
        )
        state = ConversationState(client_id=client_id, conversation_id=conversation_id, config=config)
        link = self._new_link(state)
        state.active_link = link
        self.registry.create(state)

        increment_metric("conversations_started_total")
        set_metric("conversations_active", float(len(self.registry)))
        log_event(
            "conversation",
            "started",
            conversation_id,
            client_id=client_id,
            position=request.position,
            difficulty=request.difficulty,
            language=request.language,
            voice=request.voice,
            credential=credential,
        )

        await link.open()
        return state

    async def send_audio(self, client_id: str, chunk: bytes) -> None:
        state = self.registry.get(client_id)
        if state is None or not chunk:
            return
        async with state.lock:
            if state.ended:
                return
            if state.buffer_audio(chunk):
                return
            link = state.active_link
            if link is not None:
                await link.send_audio(chunk)

    async def send_audio_stream_end(self, client_id: str) -> None:
        state = self.registry.get(client_id)
        if state is None or state.ended or state.reconnecting:
            return
        link = state.active_link
        if link is not None:
            await link.send_audio_stream_end()

    async def end_conversation(self, client_id: str) -> bool:
        state = self.registry.get(client_id)
        if state is None:
            return False
        async with state.lock:
            ready = state.ready
        if not ready:
            # Nothing was said, so there is nothing to grade.
            if await self._retire(state, reason="ended_before_ready"):
                await self.dispatcher.send_status(client_id, "DISCONNECTED", "Interview ended before it started")
            return False
        return await self.finalization.finalize(state, reason="client_end")

    async def handle_disconnect(self, client_id: str) -> None:
        """Client went away: tear down without grading."""
        state = self.registry.get(client_id)
        if state is None:
            return
        await self._retire(state, reason="client_disconnected")

    async def _retire(self, state: ConversationState, reason: str) -> bool:
        """Ends a session without persisting its end or grading it."""
        async with state.lock:
            retired = state.mark_ended()
            link = state.active_link
        self.registry.remove(state.client_id, expected=state)
        set_metric("conversations_active", float(len(self.registry)))
        if not retired:
            return False
        self._forget_link(link)
        if link is not None:
            await link.close()
        log_event("conversation", "retired", state.conversation_id, client_id=state.client_id, reason=reason)
        return True

    # ----- upstream events -----

    async def on_link_event(self, link: UpstreamLink, event: LinkEvent) -> None:
        state = self._state_for(link)
        if state is None or state.ended:
            if isinstance(event, LinkClosed):
                self._forget_link(link)
            return

        if isinstance(event, SetupComplete):
            await self._on_connected(state, link)
        elif isinstance(event, AudioReceived):
            await self.dispatcher.send(
                state.client_id,
                "audio",
                {"data": base64.b64encode(event.data).decode("ascii")},
            )
        elif isinstance(event, TextReceived):
            await self.dispatcher.send(state.client_id, "text", {"text": event.text})
        elif isinstance(event, InputTranscript):
            async with state.lock:
                state.transcript.append_user(event.text)
            await self.dispatcher.send(state.client_id, "transcript", {"speaker": "user", "text": event.text})
        elif isinstance(event, OutputTranscript):
            async with state.lock:
                state.transcript.append_ai(event.text)
            await self.dispatcher.send(state.client_id, "transcript", {"speaker": "ai", "text": event.text})
        elif isinstance(event, TurnComplete):
            await self._on_turn_complete(state)
        elif isinstance(event, Interrupted):
            async with state.lock:
                state.transcript.discard_turn()
            await self.dispatcher.send_status(state.client_id, "INTERRUPTED", "Interviewer interrupted")
        elif isinstance(event, ResumptionUpdated):
            if event.resumable and event.handle:
                async with state.lock:
                    state.resumption_token = event.handle
        elif isinstance(event, GoAway):
            log_event("conversation", "go_away", state.conversation_id, time_left=event.time_left)
            await self.reconnection.reconnect(state, link, reason=f"goAway (time left {event.time_left})")
        elif isinstance(event, LinkError):
            # Handled without the session lock: links report send failures from
            # inside calls the service makes while holding it.
            await self._on_link_error(state, event)
        elif isinstance(event, LinkClosed):
            await self._on_link_closed(state, link, event)

    async def _on_connected(self, state: ConversationState, link: UpstreamLink) -> None:
        if state.reconnecting:
            await self.reconnection.resumed(state, link)
            return

        async with state.lock:
            state.ready = True
        logger.info("Interview connected | client=%s session=%s", state.client_id, state.conversation_id)
        await self.dispatcher.send_status(state.client_id, "CONNECTED", "Connected to interviewer")
        await link.send_text(greeting_for(state.language))

    async def _on_turn_complete(self, state: ConversationState) -> None:
        async with state.lock:
            turn_text = state.transcript.complete_turn()
        await self.dispatcher.send_status(state.client_id, "TURN_COMPLETE", "")

        if self.detector.is_concluding(turn_text, state.language):
            logger.info("Interviewer concluded the interview | client=%s", state.client_id)
            await self.finalization.finalize(state, reason="conclusion_detected")

    async def _on_link_error(self, state: ConversationState, event: LinkError) -> None:
        increment_metric("live_link_errors_total")
        rate_limited = event.kind == LinkErrorKind.RATE_LIMITED
        invalid_key = event.kind == LinkErrorKind.INVALID_CREDENTIAL
        if rate_limited:
            increment_metric("live_link_rate_limited_total")
            message = "API rate limit reached. Please wait a moment and try again."
        elif invalid_key:
            increment_metric("live_link_invalid_credential_total")
            message = "Invalid API key. Please check your key and try again."
        else:
            message = f"Connection error: {event.message}"
        log_event("conversation", "link_error", state.conversation_id, kind=event.kind.value)
        await self.dispatcher.send_error(state.client_id, message, rate_limited=rate_limited, invalid_key=invalid_key)

    async def _on_link_closed(self, state: ConversationState, link: UpstreamLink, event: LinkClosed) -> None:
        self._forget_link(link)
        if event.expected:
            return

        if event.error_kind in _NO_RECONNECT_KINDS:
            if event.error_kind == LinkErrorKind.RATE_LIMITED:
                self.rotation.flag_exhausted(state.config.credential, state.config.live_model, is_daily_quota(event.reason))
            async with state.lock:
                dropped = state.mark_disconnected()
            if dropped:
                increment_metric("dropped_audio_chunks_total", dropped)
            logger.warning(
                "Live link closed, not reconnecting | client=%s kind=%s code=%s",
                state.client_id,
                event.error_kind.value,
                event.code,
            )
            await self.dispatcher.send_status(state.client_id, "DISCONNECTED", "Connection closed by the provider")
            return

        if state.reconnecting:
            await self.reconnection.attempt_failed(state, link, event.reason or f"closed ({event.code})")
            return

        await self.reconnection.reconnect(state, link, reason=event.reason or f"closed ({event.code})")
