class TurnAccumulator:
    """Per-session transcript buffers. Callers serialize access with the session lock."""

    def __init__(self):
        self._lines: list[str] = []
        self._current_turn: list[str] = []

    def append_user(self, text: str) -> None:
        self._lines.append(f"[Candidate]: {text}")

    def append_ai(self, text: str) -> None:
        self._lines.append(f"[Interviewer]: {text}")
        self._current_turn.append(text)

    def current_turn(self) -> str:
        return "".join(self._current_turn)

    def complete_turn(self) -> str:
        turn_text = "".join(self._current_turn)
        self._current_turn.clear()
        return turn_text

    def discard_turn(self) -> None:
        self._current_turn.clear()

    @property
    def line_count(self) -> int:
        return len(self._lines)

    def full_transcript(self) -> str:
        return "".join(f"\n{line}" for line in self._lines)
