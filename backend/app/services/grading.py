import asyncio
import json
import logging
import re
import time
from typing import Any

import httpx

from app.credentials.rotation import CredentialPair, CredentialRotationPolicy
from app.errors import ModelAccessError, RateLimitError, SessionNotFoundError
from app.live.protocol import is_daily_quota
from app.services.interview_store import InterviewStore
from app.system_metrics import increment_metric, observe_grading_duration
from core.config import GEMINI_REST_URL, GRADING_TEMPERATURE, GRADING_TIMEOUT_SEC
from core.logger import log_event

logger = logging.getLogger("app.services.grading")

VERDICTS = ("STRONG_HIRE", "HIRE", "MAYBE", "NO_HIRE")

GRADING_PROMPT = """
You are an expert interview evaluator. Analyze the following job interview transcript and provide a detailed evaluation.

## Interview Details
- Position: {position}
- Difficulty Level: {difficulty}
- Candidate Name: {candidate_name}

## Transcript
{transcript}

## Evaluation Instructions
Evaluate the candidate's performance and provide scores from 0-100 for each category.
Be fair but honest in your assessment. Consider the difficulty level in your evaluation.
{language_note}
Provide your evaluation in the following JSON format ONLY (no other text):
```json
{{
    "overallScore": <0-100>,
    "communicationScore": <0-100>,
    "technicalScore": <0-100>,
    "confidenceScore": <0-100>,
    "strengths": ["strength1", "strength2", "strength3"],
    "improvements": ["improvement1", "improvement2", "improvement3"],
    "detailedAnalysis": "2-4 sentences of constructive feedback.",
    "verdict": "<STRONG_HIRE|HIRE|MAYBE|NO_HIRE>"
}}
```
"""


def _clamp_score(value, default=50):
    try:
        return max(0, min(100, int(value)))
    except Exception:
        return default


def _string_list(value: Any, fallback: list[str]) -> list[str]:
    if not isinstance(value, list):
        return list(fallback)
    items = [str(item).strip() for item in value if str(item or "").strip()]
    return items or list(fallback)


def _extract_json_dict(text: str) -> dict | None:
    text = (text or "").strip()
    if not text:
        return None

    try:
        parsed = json.loads(text)
        return parsed if isinstance(parsed, dict) else None
    except Exception:
        pass

    fenced = re.search(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", text, re.IGNORECASE)
    if fenced:
        try:
            parsed = json.loads(fenced.group(1))
            return parsed if isinstance(parsed, dict) else None
        except Exception:
            pass

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(text[start:end + 1])
            return parsed if isinstance(parsed, dict) else None
        except Exception:
            return None

    return None


def default_feedback(session_id: str, transcript: str = "") -> dict[str, Any]:
    return {
        "sessionId": session_id,
        "overallScore": 50,
        "communicationScore": 50,
        "technicalScore": 50,
        "confidenceScore": 50,
        "strengths": ["Unable to evaluate - insufficient data"],
        "improvements": ["Complete the interview for full evaluation"],
        "detailedAnalysis": (
            "The interview could not be fully evaluated. Please ensure the interview is completed "
            "with sufficient dialogue for accurate assessment."
        ),
        "verdict": "MAYBE",
        "transcript": transcript,
    }


def normalize_feedback(data: dict, session_id: str, transcript: str) -> dict[str, Any]:
    fallback = default_feedback(session_id, transcript)
    verdict = str(data.get("verdict") or "").strip().upper().replace(" ", "_")
    return {
        "sessionId": session_id,
        "overallScore": _clamp_score(data.get("overallScore")),
        "communicationScore": _clamp_score(data.get("communicationScore")),
        "technicalScore": _clamp_score(data.get("technicalScore")),
        "confidenceScore": _clamp_score(data.get("confidenceScore")),
        "strengths": _string_list(data.get("strengths"), fallback["strengths"]),
        "improvements": _string_list(data.get("improvements"), fallback["improvements"]),
        "detailedAnalysis": str(data.get("detailedAnalysis") or "No detailed analysis available."),
        "verdict": verdict if verdict in VERDICTS else "MAYBE",
        "transcript": transcript,
    }


def _response_text(body: dict) -> str:
    candidates = body.get("candidates") or []
    if not candidates:
        return ""
    parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
    return "".join(str(part.get("text") or "") for part in parts if isinstance(part, dict) and not part.get("thought"))


class GradingService:
    """
    Scores a finished interview with a Gemini text model.

    Credential/model pairs come from the rotation policy. A 429 flags the pair
    exhausted and moves on, a 403/404 flags it inaccessible; when every pair is
    spent the caller gets RateLimitError.
    """

    def __init__(
        self,
        store: InterviewStore,
        rotation: CredentialRotationPolicy,
        base_url: str = GEMINI_REST_URL,
        timeout: float = GRADING_TIMEOUT_SEC,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.store = store
        self.rotation = rotation
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def build_prompt(self, session: dict) -> str:
        language_note = ""
        if str(session.get("language") or "").lower() == "bg":
            language_note = "The interview was held in Bulgarian. Write strengths, improvements and analysis in Bulgarian.\n"
        return GRADING_PROMPT.format(
            position=session.get("position") or "",
            difficulty=session.get("difficulty") or "",
            candidate_name=session.get("candidate_name") or "",
            transcript=session.get("transcript") or "",
            language_note=language_note,
        )

    async def grade(self, conversation_id: str, credential: str | None = None) -> dict[str, Any]:
        started = time.perf_counter()
        increment_metric("grading_requests_total")
        session = await asyncio.to_thread(self.store.get_session, conversation_id)
        if session is None:
            raise SessionNotFoundError(conversation_id)

        transcript = str(session.get("transcript") or "")
        if not transcript.strip():
            logger.warning("No transcript available, using neutral feedback | session=%s", conversation_id)
            feedback = default_feedback(conversation_id, transcript)
        else:
            text = await self._generate(self.build_prompt(session), credential, conversation_id)
            parsed = _extract_json_dict(text)
            if parsed is None:
                logger.error("Could not parse grading output, using neutral feedback | session=%s", conversation_id)
                feedback = default_feedback(conversation_id, transcript)
            else:
                feedback = normalize_feedback(parsed, conversation_id, transcript)

        await asyncio.to_thread(self.store.save_feedback, conversation_id, feedback)
        observe_grading_duration(time.perf_counter() - started)
        log_event(
            "grading",
            "graded",
            conversation_id,
            overall=feedback["overallScore"],
            verdict=feedback["verdict"],
        )
        return feedback

    async def _generate(self, prompt: str, credential: str | None, conversation_id: str) -> str:
        attempted: set[CredentialPair] = set()
        last_failure: Exception | None = None

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            while True:
                pair = self.rotation.next(credential)
                if pair is None or pair in attempted:
                    break
                attempted.add(pair)

                url = f"{self.base_url}/models/{pair.model}:generateContent"
                body = {
                    "contents": [{"parts": [{"text": prompt}]}],
                    "generationConfig": {"temperature": GRADING_TEMPERATURE, "maxOutputTokens": 2048},
                }
                response = await client.post(url, params={"key": pair.credential}, json=body)

                if response.status_code == 200:
                    logger.info("Grading response received | session=%s model=%s", conversation_id, pair.model)
                    return _response_text(response.json())

                error_text = response.text
                if response.status_code == 429:
                    self.rotation.flag_exhausted(pair.credential, pair.model, is_daily_quota(error_text))
                    last_failure = RateLimitError(f"Grading rate limited on {pair.model}")
                    continue
                if response.status_code in {403, 404}:
                    self.rotation.flag_inaccessible(pair.credential, pair.model)
                    last_failure = ModelAccessError(f"Model {pair.model} not accessible ({response.status_code})")
                    continue

                logger.error(
                    "Grading request failed | session=%s model=%s status=%s",
                    conversation_id,
                    pair.model,
                    response.status_code,
                )
                raise RuntimeError(f"Gemini API error: {response.status_code}")

        if not attempted and self.rotation.mode == "PROD" and not credential:
            raise RuntimeError("No API key available for grading")
        if isinstance(last_failure, RateLimitError) or last_failure is None:
            increment_metric("grading_rate_limited_total")
            raise RateLimitError("All credential/model pairs are exhausted") from last_failure
        raise last_failure
