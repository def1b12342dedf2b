"""
In-memory pipeline metrics, read by the worker's /metrics endpoint.

Everything is keyed by stage:
  - runs:     started / completed / failed / cancelled handler runs
  - units:    completed and failed units of batch stages, degraded runs
  - duration: handler run time, last 100 runs per stage
  - errors:   the last 50 stage failures

Gauges carry worker-wide values (queue_depth, processing_count, start_time).
Nothing survives a restart; generation_log is the durable record.
"""

import time
import threading
from collections import defaultdict, deque
from typing import Dict

_lock = threading.Lock()

MAX_SAMPLES = 100
MAX_ERRORS = 50

RUN_OUTCOMES = ("started", "completed", "failed", "cancelled")


def _new_stage() -> dict:
    return {
        "runs": dict.fromkeys(RUN_OUTCOMES, 0),
        "units_completed": 0,
        "units_failed": 0,
        "degraded_runs": 0,
        "durations": deque(maxlen=MAX_SAMPLES),
    }


_stages: Dict[str, dict] = defaultdict(_new_stage)
_gauges: Dict[str, float] = {}
_recent_errors = deque(maxlen=MAX_ERRORS)


def stage_event(step: str, outcome: str):
    """Count one handler run outcome (started, completed, failed or cancelled)."""
    if outcome not in RUN_OUTCOMES:
        raise ValueError(f"Unknown stage outcome: {outcome}")
    with _lock:
        _stages[step]["runs"][outcome] += 1


def record_batch(stage: str, completed: int, failed: int):
    """Count the unit results of one batch stage run."""
    with _lock:
        entry = _stages[stage]
        entry["units_completed"] += completed
        entry["units_failed"] += failed
        if completed and failed:
            entry["degraded_runs"] += 1


def record_latency(stage: str, duration_ms: float):
    with _lock:
        _stages[stage]["durations"].append(duration_ms)


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(stage: str, error_type: str, message: str, project_id: str = ""):
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "stage": stage,
            "error_type": error_type,
            "message": message[:300],
            "project_id": project_id,
        })


def reset():
    with _lock:
        _stages.clear()
        _gauges.clear()
        _recent_errors.clear()


def _duration_stats(samples) -> dict:
    if not samples:
        return {}
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "p50": ordered[n // 2],
        "p95": ordered[int(n * 0.95)] if n >= 20 else ordered[-1],
        "avg": sum(ordered) / n,
        "count": n,
    }


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def get_snapshot() -> dict:
    now = time.time()
    with _lock:
        stages = {}
        for name, entry in _stages.items():
            runs = dict(entry["runs"])
            units = entry["units_completed"] + entry["units_failed"]
            stages[name] = {
                "runs": runs,
                "failure_rate": _rate(runs["failed"], runs["started"]),
                "units_completed": entry["units_completed"],
                "units_failed": entry["units_failed"],
                "unit_failure_rate": _rate(entry["units_failed"], units),
                "degraded_runs": entry["degraded_runs"],
                "duration_ms": _duration_stats(entry["durations"]),
            }

        error_patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_patterns[f"{err['stage']}:{err['error_type']}"] += 1

        started = sum(s["runs"]["started"] for s in stages.values())
        failed = sum(s["runs"]["failed"] for s in stages.values())

        return {
            "timestamp": now,
            "stages": stages,
            "gauges": dict(_gauges),
            "stage_failure_rate": _rate(failed, started),
            "recent_errors": list(_recent_errors)[-10:],
            "error_patterns": dict(error_patterns),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }
