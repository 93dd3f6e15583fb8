import json
import logging
from typing import Any

logger = logging.getLogger("relay")

# Interview content and credentials never reach the logs verbatim.
_REDACTED_TEXT_KEYS = {"text", "transcript", "turn_text", "system_instruction", "cv_text"}
_REDACTED_SECRET_KEYS = {"credential", "api_key", "user_api_key", "resumption_token"}


def _mask_secret(value: Any) -> Any:
	secret = str(value or "")
	if len(secret) <= 8:
		return bool(secret)
	return f"...{secret[-4:]}"


def _sanitize_value(key: str, value: Any) -> Any:
	normalized_key = str(key or "").lower()
	if normalized_key in _REDACTED_TEXT_KEYS:
		text = str(value or "")
		return {
			"redacted": True,
			"length": len(text),
		}
	if normalized_key in _REDACTED_SECRET_KEYS:
		return _mask_secret(value)
	if isinstance(value, (bytes, bytearray)):
		return {"bytes": len(value)}
	if isinstance(value, (str, int, float, bool)) or value is None:
		return value
	if isinstance(value, dict):
		return {str(k): _sanitize_value(str(k), v) for k, v in value.items()}
	if isinstance(value, (list, tuple, set)):
		return [_sanitize_value(normalized_key, item) for item in value]
	return str(value)


def log_event(component: str, event: str, session_id: str, level: int = logging.INFO, **kwargs) -> None:
	payload = {
		"component": str(component or "app"),
		"event": str(event or "unknown"),
		"session_id": str(session_id or ""),
	}
	payload.update({str(k): _sanitize_value(str(k), v) for k, v in kwargs.items()})
	logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))
