import logging
import re
from typing import Any

import httpx

from core.config import GEMINI_REST_URL, KEY_VALIDATION_TIMEOUT_SEC

logger = logging.getLogger("key_validation")

# Gemini keys start with "AIza" and are about 39 characters long.
API_KEY_PATTERN = re.compile(r"^AIza[A-Za-z0-9_-]{35,}$")

KEY_REQUIRED = "API key is required"
KEY_BAD_FORMAT = "Invalid API key format. Gemini API keys start with 'AIza' and are about 39 characters."
KEY_REJECTED = "Invalid API key. Please check that you copied it correctly."
KEY_QUOTA_EXCEEDED = "This API key has exceeded its quota. Please create a new key with a different Google account."
KEY_UNVERIFIED = "Unable to validate API key. Please try again."
KEY_SERVER_ERROR = "Server error while validating API key. Please try again."


class ApiKeyValidator:
    """
    Checks a user-supplied Gemini key before an interview starts.

    The format is checked locally first; only well-formed keys are sent to the
    model listing endpoint. Returns an HTTP status and a JSON body for the caller.
    """

    def __init__(
        self,
        base_url: str = GEMINI_REST_URL,
        timeout: float = KEY_VALIDATION_TIMEOUT_SEC,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def validate(self, api_key: str | None) -> tuple[int, dict[str, Any]]:
        api_key = str(api_key or "").strip()
        if not api_key:
            return 400, {"valid": False, "error": KEY_REQUIRED}
        if not API_KEY_PATTERN.match(api_key):
            logger.warning("Invalid API key format attempted")
            return 400, {"valid": False, "error": KEY_BAD_FORMAT}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/models", params={"key": api_key})
        except httpx.HTTPError as exc:
            logger.error("API key validation request failed | err=%s", exc)
            return 500, {"valid": False, "error": KEY_SERVER_ERROR}

        if response.status_code == 200:
            logger.info("API key validated")
            return 200, {"valid": True, "message": "API key is valid"}

        logger.warning("API key validation failed | status=%s body=%s", response.status_code, response.text[:300])
        if response.status_code in {400, 403}:
            return 400, {"valid": False, "error": KEY_REJECTED}
        if response.status_code == 429:
            return 429, {"valid": False, "error": KEY_QUOTA_EXCEEDED, "rateLimited": True}
        return 400, {"valid": False, "error": KEY_UNVERIFIED}
