import os
from pathlib import Path
from dotenv import load_dotenv

_BACKEND_ROOT = Path(__file__).resolve().parents[1]
_BACKEND_ENV_PATH = _BACKEND_ROOT / ".env"
load_dotenv(dotenv_path=_BACKEND_ENV_PATH, override=True)


def _csv(raw: str | None) -> list[str]:
    return [item.strip() for item in str(raw or "").split(",") if item.strip()]


# DEV: backend key, PROD: user-supplied key, REVIEWER: rotating backend key pool
APP_MODE = str(os.getenv("APP_MODE") or "DEV").strip().upper()
if APP_MODE not in {"DEV", "PROD", "REVIEWER"}:
    APP_MODE = "DEV"

GEMINI_API_KEY = str(os.getenv("GEMINI_API_KEY") or "").strip()
REVIEWER_API_KEYS = _csv(os.getenv("REVIEWER_API_KEYS"))

GEMINI_LIVE_MODEL = str(os.getenv("GEMINI_LIVE_MODEL") or "gemini-2.5-flash-native-audio-preview-09-2025").strip()
GEMINI_GRADING_MODELS = _csv(os.getenv("GEMINI_GRADING_MODELS")) or ["gemini-2.5-flash", "gemini-2.5-flash-lite"]

GEMINI_LIVE_WS_URL = str(
    os.getenv("GEMINI_LIVE_WS_URL")
    or "wss://generativelanguage.googleapis.com/ws/google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
).strip()
GEMINI_REST_URL = str(os.getenv("GEMINI_REST_URL") or "https://generativelanguage.googleapis.com/v1beta").strip().rstrip("/")

LIVE_PING_INTERVAL_SEC = max(5.0, float(os.getenv("LIVE_PING_INTERVAL_SEC", "20")))
LIVE_PING_TIMEOUT_SEC = max(5.0, float(os.getenv("LIVE_PING_TIMEOUT_SEC", "20")))
LIVE_INPUT_MIME_TYPE = str(os.getenv("LIVE_INPUT_MIME_TYPE") or "audio/pcm;rate=16000").strip()
RECONNECT_MAX_ATTEMPTS = max(1, int(os.getenv("RECONNECT_MAX_ATTEMPTS", "3")))

GRADING_TIMEOUT_SEC = max(10.0, float(os.getenv("GRADING_TIMEOUT_SEC", "60")))
GRADING_TEMPERATURE = float(os.getenv("GRADING_TEMPERATURE", "0.7"))

INTERVIEW_STORE_PATH = Path(
    os.getenv("INTERVIEW_STORE_PATH") or (_BACKEND_ROOT / "data" / "interview_store.json")
)
SESSION_RETENTION_DAYS = max(1, int(os.getenv("SESSION_RETENTION_DAYS", "14")))
SESSION_RETENTION_SWEEP_SEC = max(60, int(os.getenv("SESSION_RETENTION_SWEEP_SEC", str(6 * 60 * 60))))


KEY_VALIDATION_TIMEOUT_SEC = max(1.0, float(os.getenv("KEY_VALIDATION_TIMEOUT_SEC", "10")))
KEY_VALIDATION_MAX_ATTEMPTS = max(1, int(os.getenv("KEY_VALIDATION_MAX_ATTEMPTS", "10")))
KEY_VALIDATION_WINDOW_SEC = max(1.0, float(os.getenv("KEY_VALIDATION_WINDOW_SEC", "60")))
