"""
Tests for the per-project cost ledger and best-effort audit writes.
"""

import threading

import pytest

from ugcflow.pipeline import audit
from ugcflow.pipeline.ledger import track_cost


class TestTrackCost:
    def test_concurrent_increments_are_not_lost(self, store, make_project, fake_db):
        project = make_project(cost_usd=1.0)
        amounts = [0.07, 1.2] * 25
        barrier = threading.Barrier(len(amounts))

        def worker(amount):
            barrier.wait()
            track_cost(store, project["id"], amount)

        threads = [threading.Thread(target=worker, args=(a,)) for a in amounts]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        expected = 1.0 + sum(amounts)
        assert fake_db.rows("project", id=project["id"])[0]["cost_usd"] == pytest.approx(expected)

    def test_rounds_to_four_places(self, store, make_project, fake_db):
        project = make_project()
        track_cost(store, project["id"], 0.123456)
        assert fake_db.rows("project", id=project["id"])[0]["cost_usd"] == 0.1235

    @pytest.mark.parametrize("amount", [0, -1.5])
    def test_non_positive_amounts_are_ignored(self, store, make_project, fake_db, amount):
        project = make_project(cost_usd=2.0)
        track_cost(store, project["id"], amount)
        assert fake_db.rows("project", id=project["id"])[0]["cost_usd"] == 2.0

    def test_falls_back_to_read_then_write(self, store, make_project, fake_db):
        fake_db.rpc_disabled = True
        project = make_project(cost_usd=0.5)

        track_cost(store, project["id"], 0.25)

        assert fake_db.rows("project", id=project["id"])[0]["cost_usd"] == 0.75
        fallback = fake_db.events(audit.COST_FALLBACK)
        assert len(fallback) == 1
        assert fallback[0]["detail"]["degraded"] is True


class TestAuditLog:
    def test_log_event_never_raises(self, store, fake_db):
        fake_db.failing_tables.add("generation_log")
        audit.log_event(store, "p1", audit.STAGE_START, "casting")
        assert fake_db.events() == []
