import json
import logging
import time
import uuid
from pathlib import Path
from threading import Lock
from typing import Any

from app.errors import SessionNotFoundError
from core.config import INTERVIEW_STORE_PATH

logger = logging.getLogger("app.services.interview_store")


class InterviewStore:
    """JSON-file store for interview sessions and their feedback."""

    def __init__(self, path: Path = INTERVIEW_STORE_PATH):
        self._path = Path(path)
        self._lock = Lock()
        self._sessions: dict[str, dict[str, Any]] = {}
        self._feedback: dict[str, dict[str, Any]] = {}
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except Exception as exc:
            logger.warning("Interview store unreadable, starting empty | path=%s err=%s", self._path, exc)
            return
        if not isinstance(payload, dict):
            return
        sessions = payload.get("sessions")
        feedback = payload.get("feedback")
        if isinstance(sessions, dict):
            self._sessions = {str(k): v for k, v in sessions.items() if isinstance(v, dict)}
        if isinstance(feedback, dict):
            self._feedback = {str(k): v for k, v in feedback.items() if isinstance(v, dict)}

    def _persist(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_suffix(".tmp")
        temp_path.write_text(
            json.dumps({"sessions": self._sessions, "feedback": self._feedback}, ensure_ascii=False),
            encoding="utf-8",
        )
        temp_path.replace(self._path)

    def create_session(self, candidate_name: str, position: str, difficulty: str, language: str = "en") -> str:
        session_id = str(uuid.uuid4())
        with self._lock:
            self._sessions[session_id] = {
                "id": session_id,
                "candidate_name": str(candidate_name or ""),
                "position": str(position or ""),
                "difficulty": str(difficulty or ""),
                "language": str(language or "en"),
                "started_at": time.time(),
                "ended_at": None,
                "transcript": "",
                "score": None,
            }
            self._persist()
        logger.info("Started interview session %s", session_id)
        return session_id

    def append_transcript(self, session_id: str, text: str) -> None:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            record["transcript"] = str(record.get("transcript") or "") + str(text or "")
            self._persist()

    def mark_ended(self, session_id: str) -> None:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            record["ended_at"] = time.time()
            self._persist()
        logger.info("Finalized interview session %s", session_id)

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._sessions.get(session_id)
            return dict(record) if record else None

    def save_feedback(self, session_id: str, feedback: dict[str, Any]) -> None:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            self._feedback[session_id] = dict(feedback or {})
            record["score"] = feedback.get("overallScore")
            self._persist()

    def get_feedback(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            data = self._feedback.get(session_id)
            return dict(data) if data else None

    def delete_sessions_started_before(self, cutoff_ts: float) -> int:
        with self._lock:
            stale = [
                session_id
                for session_id, record in self._sessions.items()
                if float(record.get("started_at") or 0.0) < cutoff_ts
            ]
            for session_id in stale:
                self._feedback.pop(session_id, None)
                self._sessions.pop(session_id, None)
            if stale:
                self._persist()
        return len(stale)


interview_store = InterviewStore()
