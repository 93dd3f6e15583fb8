from __future__ import annotations

from threading import Lock
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.conversation.state import ConversationState


class SessionRegistry:
    """Client-connection id -> ConversationState. Create, lookup and remove only."""

    def __init__(self):
        self._lock = Lock()
        self._sessions: dict[str, ConversationState] = {}

    def create(self, state: ConversationState) -> None:
        with self._lock:
            if state.client_id in self._sessions:
                raise ValueError(f"Session already registered for client {state.client_id}")
            self._sessions[state.client_id] = state

    def get(self, client_id: str) -> ConversationState | None:
        with self._lock:
            return self._sessions.get(client_id)

    def remove(self, client_id: str, expected: ConversationState | None = None) -> ConversationState | None:
        with self._lock:
            current = self._sessions.get(client_id)
            if current is None:
                return None
            if expected is not None and current is not expected:
                return None
            return self._sessions.pop(client_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
