"""
Credential/model rotation with error-driven exhaustion tracking.

Three modes, chosen by APP_MODE:
- PROD: the caller brings a credential; only the model rotates.
- REVIEWER: a pool of backend credentials, paired index-wise with the models.
- DEV: one backend credential and one model, no tracking.

Exhausted (credential, model) pairs carry an expiry and are evicted lazily on
lookup, so no sweeper is needed for correctness.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable
from zoneinfo import ZoneInfo

from core import config

logger = logging.getLogger("credential_rotation")

MINUTE_COOLDOWN = timedelta(seconds=65)
INACCESSIBLE_COOLDOWN = timedelta(hours=1)
# Provider quotas reset at midnight Pacific time.
QUOTA_DAY_ZONE = ZoneInfo("America/Los_Angeles")


@dataclass(frozen=True)
class CredentialPair:
    credential: str
    model: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _key_suffix(credential: str | None) -> str:
    value = str(credential or "")
    return value[-8:] if len(value) > 8 else "unknown"


class CredentialRotationPolicy:
    def __init__(
        self,
        mode: str = config.APP_MODE,
        models: list[str] | None = None,
        pool: list[str] | None = None,
        default_credential: str = config.GEMINI_API_KEY,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.mode = str(mode or "DEV").strip().upper()
        self.models = list(models if models is not None else config.GEMINI_GRADING_MODELS)
        self.pool = list(pool if pool is not None else config.REVIEWER_API_KEYS)
        self.default_credential = default_credential
        self._clock = clock
        self._lock = Lock()
        self._exhausted: dict[str, datetime] = {}

    @staticmethod
    def _combo_key(credential: str | None, model: str) -> str:
        return f"{_key_suffix(credential)}:{model}"

    def is_exhausted(self, credential: str | None, model: str) -> bool:
        combo = self._combo_key(credential, model)
        with self._lock:
            expiry = self._exhausted.get(combo)
            if expiry is None:
                return False
            if self._clock() >= expiry:
                self._exhausted.pop(combo, None)
                logger.debug("Cooldown expired, pair available again | model=%s", model)
                return False
            return True

    def next(self, requested_credential: str | None = None) -> CredentialPair | None:
        if self.mode == "REVIEWER":
            for index, (credential, model) in enumerate(zip(self.pool, self.models)):
                if not self.is_exhausted(credential, model):
                    logger.debug("Rotation: pool key #%s with model %s", index + 1, model)
                    return CredentialPair(credential, model)
            for credential in self.pool:
                for model in self.models:
                    if not self.is_exhausted(credential, model):
                        logger.debug("Rotation: cross pair with model %s", model)
                        return CredentialPair(credential, model)
            logger.error("All pool credential/model pairs are exhausted")
            return None

        if self.mode == "PROD":
            if not requested_credential:
                return None
            for model in self.models:
                if not self.is_exhausted(requested_credential, model):
                    return CredentialPair(requested_credential, model)
            logger.warning("All models exhausted for caller credential")
            return None

        model = self.models[0] if self.models else ""
        return CredentialPair(self.default_credential, model)

    def credential_for(self, model: str, requested_credential: str | None = None) -> str | None:
        """Credential to use for a fixed model (the live link) under the current mode."""
        if self.mode == "PROD":
            return requested_credential or None
        if self.mode == "REVIEWER":
            for credential in self.pool:
                if not self.is_exhausted(credential, model):
                    return credential
            return None
        return self.default_credential or None

    def flag_exhausted(self, credential: str | None, model: str, is_daily: bool) -> datetime:
        now = self._clock()
        if is_daily:
            local_now = now.astimezone(QUOTA_DAY_ZONE)
            next_midnight = datetime.combine(
                local_now.date() + timedelta(days=1),
                datetime.min.time(),
                tzinfo=QUOTA_DAY_ZONE,
            )
            expiry = next_midnight.astimezone(timezone.utc)
            logger.warning("Flagged pair as DAILY exhausted until %s PT | model=%s", next_midnight.time(), model)
        else:
            expiry = now + MINUTE_COOLDOWN
            logger.warning("Flagged pair as MINUTE exhausted for %ss | model=%s", int(MINUTE_COOLDOWN.total_seconds()), model)

        with self._lock:
            self._exhausted[self._combo_key(credential, model)] = expiry
        return expiry

    def flag_inaccessible(self, credential: str | None, model: str) -> datetime:
        expiry = self._clock() + INACCESSIBLE_COOLDOWN
        with self._lock:
            self._exhausted[self._combo_key(credential, model)] = expiry
        logger.warning("Flagged pair as INACCESSIBLE for 1 hour | model=%s", model)
        return expiry
