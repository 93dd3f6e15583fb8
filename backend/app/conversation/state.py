from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from app.conversation.accumulator import TurnAccumulator

if TYPE_CHECKING:
    from app.live.link import UpstreamLink


@dataclass
class ConversationConfig:
    candidate_name: str
    position: str
    difficulty: str
    language: str
    voice: str
    system_instruction: str
    credential: str
    live_model: str


@dataclass
class ConversationState:
    """
    Aggregate for one live conversation.

    All mutation happens under `lock`. `ended` only ever goes False -> True, the
    replay buffer only holds audio while `reconnecting` is True, and `active_link`
    is replaced wholesale on reconnection. `ready` turns True on the first
    live setup; `disconnected` marks a session whose link is gone for good.
    """

    client_id: str
    conversation_id: str
    config: ConversationConfig
    active_link: UpstreamLink | None = None
    transcript: TurnAccumulator = field(default_factory=TurnAccumulator)
    ended: bool = False
    reconnecting: bool = False
    audio_replay_buffer: list[bytes] = field(default_factory=list)
    resumption_token: str | None = None
    reconnect_failures: int = 0
    ready: bool = False
    disconnected: bool = False
    created_at: float = field(default_factory=time.time)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def language(self) -> str:
        return self.config.language

    def buffer_audio(self, chunk: bytes) -> bool:
        if not self.reconnecting:
            return False
        self.audio_replay_buffer.append(bytes(chunk))
        return True

    def drain_audio_buffer(self) -> list[bytes]:
        drained = list(self.audio_replay_buffer)
        self.audio_replay_buffer.clear()
        return drained

    def stop_reconnecting(self) -> int:
        """Clears the reconnecting flag and drops any audio buffered for a replay that will not happen."""
        dropped = len(self.audio_replay_buffer)
        self.reconnecting = False
        self.audio_replay_buffer.clear()
        return dropped

    def mark_disconnected(self) -> int:
        """No live link will follow. The session waits for the client to end or restart it."""
        self.disconnected = True
        return self.stop_reconnecting()

    def mark_ended(self) -> bool:
        if self.ended:
            return False
        self.ended = True
        self.stop_reconnecting()
        return True
