import threading
import time
from typing import Any


_lock = threading.Lock()
_metrics: dict[str, float] = {
    "ws_connections_active": 0.0,
    "conversations_active": 0.0,
    "conversations_started_total": 0.0,
    "conversations_finalized_total": 0.0,
    "live_links_opened_total": 0.0,
    "live_link_errors_total": 0.0,
    "live_link_rate_limited_total": 0.0,
    "live_link_invalid_credential_total": 0.0,
    "reconnections_total": 0.0,
    "reconnections_failed_total": 0.0,
    "replayed_audio_chunks_total": 0.0,
    "dropped_audio_chunks_total": 0.0,
    "grading_requests_total": 0.0,
    "grading_failures_total": 0.0,
    "grading_rate_limited_total": 0.0,
    "sessions_swept_total": 0.0,
    "grading_duration_total_sec": 0.0,
    "grading_duration_samples": 0.0,
}


def increment_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        _metrics[key] = float(_metrics.get(key, 0.0)) + float(amount)


def decrement_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        next_value = float(_metrics.get(key, 0.0)) - float(amount)
        _metrics[key] = max(0.0, next_value)


def set_metric(name: str, value: float) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        _metrics[key] = max(0.0, float(value))


def observe_grading_duration(seconds: float) -> None:
    duration = max(0.0, float(seconds or 0.0))
    with _lock:
        _metrics["grading_duration_total_sec"] = float(_metrics.get("grading_duration_total_sec", 0.0)) + duration
        _metrics["grading_duration_samples"] = float(_metrics.get("grading_duration_samples", 0.0)) + 1.0


def get_metrics_snapshot(extra: dict[str, Any] | None = None) -> dict[str, Any]:
    with _lock:
        data = dict(_metrics)

    grading_samples = max(1.0, float(data.get("grading_duration_samples") or 0.0))

    payload: dict[str, Any] = {"generated_at": time.time()}
    for key, value in data.items():
        if key.endswith("_total_sec"):
            payload[key] = float(value or 0.0)
        else:
            payload[key] = int(value or 0.0)
    payload["avg_grading_duration_sec"] = round(float(data.get("grading_duration_total_sec") or 0.0) / grading_samples, 3)

    if extra:
        payload.update(extra)
    return payload
