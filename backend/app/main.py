from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import asyncio
import logging
import os
import threading
import time

from app.api.ws_interview import conversation_service, rotation_policy, router as interview_ws_router
from app.schemas import VOICE_PROFILES, InterviewReportResponse, ValidateKeyRequest, VoiceProfile
from app.services.interview_store import interview_store
from app.services.key_validation import ApiKeyValidator
from app.system_metrics import get_metrics_snapshot, increment_metric, set_metric
from core.config import (
    APP_MODE,
    GEMINI_LIVE_MODEL,
    KEY_VALIDATION_MAX_ATTEMPTS,
    KEY_VALIDATION_WINDOW_SEC,
    SESSION_RETENTION_DAYS,
    SESSION_RETENTION_SWEEP_SEC,
)

logging.basicConfig(
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    level=logging.INFO,
)

app = FastAPI(title="Interview Relay")
logger = logging.getLogger("app.main")


def _get_allowed_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:8080",
            "http://127.0.0.1:8080",
        ]
    return [item.strip() for item in raw.split(",") if item.strip()]


_allowed_origins = _get_allowed_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)

app.include_router(interview_ws_router)

api_key_validator = ApiKeyValidator()
_key_attempt_lock = threading.Lock()
_key_attempt_buckets: dict[str, dict[str, float]] = {}
_background_tasks: list[asyncio.Task] = []


def _request_identity(request: Request) -> str:
    forwarded_for = str(request.headers.get("x-forwarded-for") or "").strip()
    if forwarded_for:
        return forwarded_for.split(",")[0].strip() or "unknown"
    if request.client and request.client.host:
        return str(request.client.host)
    return "unknown"


def _key_attempts_exceeded(identity: str, now_ts: float) -> tuple[bool, int]:
    """Counts one key validation attempt. Fixed window per caller."""
    with _key_attempt_lock:
        bucket = _key_attempt_buckets.get(identity)
        if bucket is None or now_ts - float(bucket["window_start"]) > KEY_VALIDATION_WINDOW_SEC:
            _key_attempt_buckets[identity] = {"window_start": now_ts, "count": 1}
            return False, 0

        bucket["count"] = int(bucket["count"]) + 1
        if bucket["count"] > KEY_VALIDATION_MAX_ATTEMPTS:
            elapsed = now_ts - float(bucket["window_start"])
            return True, max(1, int(KEY_VALIDATION_WINDOW_SEC - elapsed))
        return False, 0


def cleanup_key_attempts(now_ts: float | None = None) -> int:
    now_ts = time.time() if now_ts is None else now_ts
    with _key_attempt_lock:
        stale = [
            key
            for key, bucket in _key_attempt_buckets.items()
            if now_ts - float(bucket["window_start"]) > KEY_VALIDATION_WINDOW_SEC * 2
        ]
        for key in stale:
            _key_attempt_buckets.pop(key, None)
    return len(stale)


async def sweep_expired_sessions() -> int:
    cutoff = time.time() - SESSION_RETENTION_DAYS * 24 * 60 * 60
    removed = await asyncio.to_thread(interview_store.delete_sessions_started_before, cutoff)
    if removed > 0:
        increment_metric("sessions_swept_total", removed)
        logger.info("[SYSTEM] deleted expired interview sessions=%s retention_days=%s", removed, SESSION_RETENTION_DAYS)
    return removed


@app.on_event("startup")
async def startup_banner():
    logger.info("[SYSTEM] APP_MODE=%s live_model=%s", APP_MODE, GEMINI_LIVE_MODEL)
    logger.info("[SYSTEM] CORS allow_origins=%s", _allowed_origins)

    async def _retention_loop():
        while True:
            try:
                await sweep_expired_sessions()
            except Exception:
                logger.exception("[SYSTEM] retention sweep failed")
            await asyncio.sleep(SESSION_RETENTION_SWEEP_SEC)

    async def _key_attempt_cleanup_loop():
        while True:
            await asyncio.sleep(KEY_VALIDATION_WINDOW_SEC * 2)
            removed = cleanup_key_attempts()
            if removed > 0:
                logger.info("[SYSTEM] cleaned key validation buckets=%s", removed)

    _background_tasks.append(asyncio.create_task(_retention_loop()))
    _background_tasks.append(asyncio.create_task(_key_attempt_cleanup_loop()))


@app.on_event("shutdown")
async def shutdown_handler():
    while _background_tasks:
        task = _background_tasks.pop()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    await conversation_service.finalization.drain()
    logger.info("[SYSTEM] shutdown complete")


@app.get("/healthz")
async def healthz():
    return {"status": "ok", "service": "interview-relay"}


@app.get("/metrics")
def metrics_route():
    set_metric("conversations_active", float(len(conversation_service.registry)))
    return get_metrics_snapshot(extra={
        "app_mode": APP_MODE,
        "live_model": GEMINI_LIVE_MODEL,
        "rotation_models": list(rotation_policy.models),
    })


@app.get("/api/mode")
async def get_mode():
    return {"mode": rotation_policy.mode, "requiresUserKey": rotation_policy.mode == "PROD"}


@app.post("/api/validate-key")
async def validate_key(req: ValidateKeyRequest, request: Request):
    blocked, retry_after = _key_attempts_exceeded(_request_identity(request), time.time())
    if blocked:
        return JSONResponse(
            status_code=429,
            content={
                "valid": False,
                "error": "Too many requests. Please wait a minute before trying again.",
                "rateLimited": True,
            },
            headers={"Retry-After": str(retry_after)},
        )
    status_code, body = await api_key_validator.validate(req.apiKey)
    return JSONResponse(status_code=status_code, content=body)


@app.get("/api/voices", response_model=list[VoiceProfile])
async def list_voices():
    return VOICE_PROFILES


@app.get("/api/reports/{conversation_id}", response_model=InterviewReportResponse)
async def get_report(conversation_id: str):
    feedback = await asyncio.to_thread(interview_store.get_feedback, conversation_id)
    if not feedback:
        raise HTTPException(status_code=404, detail="Report not found")
    return feedback
