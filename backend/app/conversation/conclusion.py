import logging
import re

from app.conversation.conclusion_phrases import (
    CONCLUSION_PHRASES,
    CONCLUSION_PHRASES_VERSION,
    DEFAULT_LANGUAGE,
    GREETINGS,
)

logger = logging.getLogger("conclusion")


def normalize_language(language: str | None) -> str:
    value = str(language or "").strip().lower()
    return value if value in CONCLUSION_PHRASES else DEFAULT_LANGUAGE


def greeting_for(language: str | None) -> str:
    return GREETINGS.get(normalize_language(language), GREETINGS[DEFAULT_LANGUAGE])


class ConclusionDetector:
    def __init__(self, phrases: dict[str, list[str]] | None = None, version: int = CONCLUSION_PHRASES_VERSION):
        source = phrases if phrases is not None else CONCLUSION_PHRASES
        self.version = version
        self._matchers: dict[str, list[re.Pattern]] = {
            language: [re.compile(pattern, re.IGNORECASE) for pattern in patterns]
            for language, patterns in source.items()
        }

    @property
    def languages(self) -> list[str]:
        return sorted(self._matchers)

    def is_concluding(self, text: str | None, language: str | None = None) -> bool:
        if not str(text or "").strip():
            return False

        key = str(language or "").strip().lower()
        matchers = self._matchers.get(key) or self._matchers.get(DEFAULT_LANGUAGE) or []
        for pattern in matchers:
            if pattern.search(text):
                logger.debug("Conclusion phrase matched | lang=%s pattern=%s", key or DEFAULT_LANGUAGE, pattern.pattern)
                return True
        return False


conclusion_detector = ConclusionDetector()
