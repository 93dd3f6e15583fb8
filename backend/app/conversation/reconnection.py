import logging
from typing import Callable

from app.conversation.state import ConversationState
from app.live.link import UpstreamLink
from app.services.dispatcher import OutboundDispatcher
from app.system_metrics import increment_metric
from core.config import RECONNECT_MAX_ATTEMPTS
from core.logger import log_event

logger = logging.getLogger("reconnection")

NO_TOKEN_MESSAGE = "Connection lost - no resumption token"
BUDGET_SPENT_MESSAGE = "Connection lost - reconnection failed"


class ReconnectionCoordinator:
    """
    Replaces a session's upstream link after a retirement notice or an
    unexpected closure, resuming the provider-side session from its token.

    While `reconnecting` is set, client audio goes to the session's replay
    buffer; the service flushes it when the replacement link is ready. Every
    failure path clears the flag and drops the buffer. Consecutive failures
    are bounded by `max_attempts`, after which the client gets a terminal
    DISCONNECTED status.
    """

    def __init__(
        self,
        new_link: Callable[[ConversationState], UpstreamLink],
        dispatcher: OutboundDispatcher,
        max_attempts: int = RECONNECT_MAX_ATTEMPTS,
    ):
        self._new_link = new_link
        self._dispatcher = dispatcher
        self.max_attempts = max(1, int(max_attempts))

    async def reconnect(self, state: ConversationState, outgoing: UpstreamLink, reason: str) -> bool:
        replacement: UpstreamLink | None = None
        token: str | None = None

        # The lock is released before any link I/O: links report failures
        # through the service, which takes the same lock.
        async with state.lock:
            if state.ended or state.reconnecting:
                return False
            if state.active_link is not outgoing:
                return False

            token = outgoing.resumption_token or state.resumption_token
            if token:
                state.reconnecting = True
                state.resumption_token = token
                replacement = self._new_link(state)
                state.active_link = replacement
            else:
                state.mark_disconnected()

        if replacement is None:
            logger.warning("Reconnect impossible, no resumption token | client=%s reason=%s", state.client_id, reason)
            log_event("reconnection", "no_token", state.conversation_id, level=logging.WARNING, reason=reason)
            await self._dispatcher.send_status(state.client_id, "DISCONNECTED", NO_TOKEN_MESSAGE)
            return False

        logger.info(
            "Reconnecting live link | client=%s old=%s new=%s reason=%s",
            state.client_id,
            outgoing.link_id,
            replacement.link_id,
            reason,
        )
        log_event("reconnection", "started", state.conversation_id, reason=reason, resumption_token=token)
        increment_metric("reconnections_total")

        try:
            await outgoing.close()
        except Exception as exc:
            logger.debug("Outgoing link close ignored | link=%s err=%s", outgoing.link_id, exc)

        await self._dispatcher.send_status(state.client_id, "RECONNECTING", "Reconnecting to interviewer...")

        try:
            await replacement.open(resumption_token=token)
        except Exception as exc:
            logger.exception("Replacement link failed to open | client=%s link=%s", state.client_id, replacement.link_id)
            await self.attempt_failed(state, replacement, str(exc))
            return False
        return True

    async def attempt_failed(self, state: ConversationState, link: UpstreamLink, reason: str) -> None:
        """A replacement link failed before it became ready."""
        async with state.lock:
            if state.ended or state.active_link is not link:
                return
            dropped = state.stop_reconnecting()
            state.reconnect_failures += 1
            failures = state.reconnect_failures
            if failures >= self.max_attempts:
                state.mark_disconnected()

        increment_metric("reconnections_failed_total")
        if dropped:
            increment_metric("dropped_audio_chunks_total", dropped)
        logger.warning(
            "Reconnect attempt failed | client=%s attempt=%s/%s dropped_chunks=%s reason=%s",
            state.client_id,
            failures,
            self.max_attempts,
            dropped,
            reason,
        )

        if failures < self.max_attempts:
            await self.reconnect(state, link, reason=f"retry after: {reason}")
            return

        log_event("reconnection", "gave_up", state.conversation_id, level=logging.WARNING, attempts=failures)
        await self._dispatcher.send_status(state.client_id, "DISCONNECTED", BUDGET_SPENT_MESSAGE)

    async def resumed(self, state: ConversationState, link: UpstreamLink) -> bool:
        """
        Replacement link is ready: clears `reconnecting` and replays buffered
        audio oldest first. Returns False if this link is not the one being
        waited on.
        """
        async with state.lock:
            if state.ended or state.active_link is not link or not state.reconnecting:
                return False
            state.reconnecting = False
            state.reconnect_failures = 0
            buffered = state.drain_audio_buffer()
            # Still under the lock so live audio cannot overtake the replay.
            for chunk in buffered:
                await link.send_audio(chunk)

        if buffered:
            increment_metric("replayed_audio_chunks_total", len(buffered))
        logger.info("Live link resumed | client=%s link=%s replayed=%s", state.client_id, link.link_id, len(buffered))
        log_event("reconnection", "resumed", state.conversation_id, replayed=len(buffered))
        await self._dispatcher.send_status(state.client_id, "RESUMED", "Reconnected")
        return True
