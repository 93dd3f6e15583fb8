import asyncio
import logging

from app.conversation.state import ConversationState
from app.errors import RateLimitError
from app.services.dispatcher import OutboundDispatcher
from app.services.grading import GradingService
from app.services.interview_store import InterviewStore
from app.session.registry import SessionRegistry
from app.system_metrics import increment_metric, set_metric
from core.logger import log_event

logger = logging.getLogger("finalization")


class FinalizationHandoff:
    def __init__(
        self,
        store: InterviewStore,
        grader: GradingService,
        dispatcher: OutboundDispatcher,
        registry: SessionRegistry,
    ):
        self._store = store
        self._grader = grader
        self._dispatcher = dispatcher
        self._registry = registry
        self._grading_tasks: set[asyncio.Task] = set()

    async def finalize(self, state: ConversationState, reason: str) -> bool:
        """Ends the session exactly once. Later callers return False immediately."""
        async with state.lock:
            if not state.mark_ended():
                return False
            link = state.active_link
            transcript = state.transcript.full_transcript()

        logger.info("Finalizing interview | client=%s session=%s reason=%s", state.client_id, state.conversation_id, reason)
        log_event("finalization", "started", state.conversation_id, reason=reason, lines=state.transcript.line_count)
        increment_metric("conversations_finalized_total")

        if link is not None:
            try:
                await link.close()
            except Exception as exc:
                logger.debug("Link close during finalization ignored | link=%s err=%s", link.link_id, exc)

        self._registry.remove(state.client_id, expected=state)
        set_metric("conversations_active", float(len(self._registry)))

        try:
            await asyncio.to_thread(self._store.append_transcript, state.conversation_id, transcript)
            await asyncio.to_thread(self._store.mark_ended, state.conversation_id)
        except Exception:
            logger.exception("Failed to persist transcript | session=%s", state.conversation_id)
            await self._dispatcher.send_error(state.client_id, "Failed to save interview. Please try again.")
            return True

        await self._dispatcher.send_status(state.client_id, "GRADING", "Interview complete. Generating your report...")

        task = asyncio.create_task(self._grade(state))
        self._grading_tasks.add(task)
        task.add_done_callback(self._grading_tasks.discard)
        return True

    async def _grade(self, state: ConversationState) -> None:
        try:
            feedback = await self._grader.grade(state.conversation_id, state.config.credential)
        except RateLimitError as exc:
            logger.warning("Grading rate limited | session=%s err=%s", state.conversation_id, exc)
            await self._dispatcher.send_error(
                state.client_id,
                "API rate limit reached. Please wait a moment and try again.",
                rate_limited=True,
            )
            return
        except Exception:
            increment_metric("grading_failures_total")
            logger.exception("Grading failed | session=%s", state.conversation_id)
            await self._dispatcher.send_error(state.client_id, "Failed to generate interview report.")
            return

        await self._dispatcher.send(state.client_id, "report", feedback)

    async def drain(self) -> None:
        """Waits for in-flight grading tasks."""
        if self._grading_tasks:
            await asyncio.gather(*list(self._grading_tasks), return_exceptions=True)
