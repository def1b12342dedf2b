"""
Tests for the per-stage metrics snapshot.
"""

import pytest

from ugcflow import metrics


@pytest.fixture(autouse=True)
def fresh_metrics():
    metrics.reset()
    yield
    metrics.reset()


def test_runs_and_failure_rate_are_per_stage():
    for _ in range(4):
        metrics.stage_event("casting", "started")
    metrics.stage_event("casting", "failed")
    metrics.stage_event("casting", "cancelled")
    metrics.stage_event("editing", "started")
    metrics.stage_event("editing", "completed")

    snapshot = metrics.get_snapshot()
    casting = snapshot["stages"]["casting"]
    assert casting["runs"] == {"started": 4, "completed": 0, "failed": 1, "cancelled": 1}
    assert casting["failure_rate"] == 25.0
    assert snapshot["stages"]["editing"]["failure_rate"] == 0.0
    assert snapshot["stage_failure_rate"] == 20.0


def test_unknown_outcome_is_rejected():
    with pytest.raises(ValueError):
        metrics.stage_event("casting", "paused")


def test_degraded_run_needs_both_successes_and_failures():
    metrics.record_batch("directing", completed=4, failed=0)
    metrics.record_batch("directing", completed=3, failed=1)
    metrics.record_batch("directing", completed=0, failed=4)

    directing = metrics.get_snapshot()["stages"]["directing"]
    assert directing["units_completed"] == 7
    assert directing["units_failed"] == 5
    assert directing["degraded_runs"] == 1


def test_duration_window_keeps_recent_runs():
    for ms in range(metrics.MAX_SAMPLES + 20):
        metrics.record_latency("broll_generation", float(ms))

    stats = metrics.get_snapshot()["stages"]["broll_generation"]["duration_ms"]
    assert stats["count"] == metrics.MAX_SAMPLES
    assert stats["p50"] == 70.0


def test_error_window_and_patterns():
    for i in range(metrics.MAX_ERRORS + 5):
        metrics.record_error("voiceover", "ProviderError", f"tts failed {i}", "p1")
    metrics.record_error("editing", "StageFailure", "render failed", "p2")

    snapshot = metrics.get_snapshot()
    assert len(snapshot["recent_errors"]) == 10
    assert snapshot["recent_errors"][-1]["stage"] == "editing"
    assert snapshot["error_patterns"] == {
        "voiceover:ProviderError": metrics.MAX_ERRORS - 1,
        "editing:StageFailure": 1,
    }


def test_uptime_uses_start_gauge():
    metrics.set_gauge("start_time", 0.0)
    assert metrics.get_snapshot()["uptime_seconds"] > 0
