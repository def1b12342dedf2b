"""
Tests for batch outcome, unit retries, chaining and cleanup.
"""

import time

import pytest

from ugcflow import metrics
from ugcflow.pipeline import audit
from ugcflow.pipeline.continuity import (
    BatchOutcome,
    ContinuityChain,
    cleanup_outputs,
    finish_batch,
    retry_unit,
)
from ugcflow.pipeline.errors import CancellationSignal, ProviderError, StageFailure, ValidationError


class TestBatchOutcome:
    @pytest.mark.parametrize("k", [0, 1, 2, 3, 4])
    def test_stage_fails_iff_nothing_succeeded(self, store, make_project, fake_db, k):
        project = make_project()
        outcome = BatchOutcome(total=4)
        for i in range(4):
            outcome.record(i < k, "" if i < k else f"unit {i} failed")

        if k == 0:
            with pytest.raises(StageFailure):
                finish_batch(store, project["id"], "directing", outcome, time.monotonic())
            assert fake_db.events(audit.STAGE_COMPLETE) == []
            return

        finish_batch(store, project["id"], "directing", outcome, time.monotonic())
        detail = fake_db.events(audit.STAGE_COMPLETE)[0]["detail"]
        assert (detail["completed"], detail["failed"]) == (k, 4 - k)
        assert detail["total"] == 4
        assert detail["degraded"] is (k < 4)

    def test_stage_failure_names_the_errors(self, store):
        outcome = BatchOutcome(total=2)
        outcome.record(False, "timeout")
        outcome.record(False, "429")
        with pytest.raises(StageFailure, match="timeout; 429"):
            finish_batch(store, "p", "casting", outcome, time.monotonic())

    def test_unit_results_feed_stage_metrics(self, store, make_project):
        metrics.reset()
        project = make_project()
        degraded = BatchOutcome(total=3)
        for ok in (True, True, False):
            degraded.record(ok, "" if ok else "timeout")
        finish_batch(store, project["id"], "voiceover", degraded, time.monotonic())

        wiped = BatchOutcome(total=2)
        wiped.record(False, "429")
        wiped.record(False, "429")
        with pytest.raises(StageFailure):
            finish_batch(store, project["id"], "voiceover", wiped, time.monotonic())

        voiceover = metrics.get_snapshot()["stages"]["voiceover"]
        assert voiceover["units_completed"] == 2
        assert voiceover["units_failed"] == 3
        assert voiceover["unit_failure_rate"] == 60.0
        assert voiceover["degraded_runs"] == 1
        metrics.reset()


class TestRetryUnit:
    @pytest.mark.asyncio
    async def test_retries_provider_errors(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise ProviderError("wavespeed", "503")
            return "ok"

        assert await retry_unit(flaky, attempts=2, delay=0) == "ok"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        calls = []

        async def broken():
            calls.append(1)
            raise ProviderError("wavespeed", "500")

        with pytest.raises(ProviderError):
            await retry_unit(broken, attempts=3, delay=0)
        assert len(calls) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [ValidationError("missing keyframe"), CancellationSignal("p")])
    async def test_never_retries_validation_or_cancellation(self, error):
        calls = []

        async def fn():
            calls.append(1)
            raise error

        with pytest.raises(type(error)):
            await retry_unit(fn, attempts=3, delay=0)
        assert len(calls) == 1


class TestContinuityChain:
    def test_failed_unit_keeps_previous_reference(self):
        chain = ContinuityChain()
        chain.advance("https://cdn.test/seg0-end.png")
        chain.advance(None)  # unit 1 failed, nothing to advance to

        assert chain.reference == "https://cdn.test/seg0-end.png"
        assert chain.references("https://cdn.test/influencer.png") == [
            "https://cdn.test/influencer.png",
            "https://cdn.test/seg0-end.png",
        ]

    def test_no_reference_before_first_success(self):
        assert ContinuityChain().references(None) == []


class TestCleanup:
    def test_removes_only_targeted_types_and_statuses(self, store, make_project, add_asset, fake_db):
        project = make_project()
        pid = project["id"]
        add_asset(pid, "broll", status="completed")
        add_asset(pid, "broll", status="failed")
        add_asset(pid, "video", status="failed")
        add_asset("other-project", "broll", status="failed")

        cleanup_outputs(store, pid, ["broll"], statuses=["failed", "generating"])

        remaining = {(a["project_id"], a["type"], a["status"]) for a in fake_db.rows("asset")}
        assert remaining == {
            (pid, "broll", "completed"),
            (pid, "video", "failed"),
            ("other-project", "broll", "failed"),
        }
