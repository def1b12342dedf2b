"""
Tests for regenerating reviewed assets: request planning, the queued job
and its HTTP surface.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from ugcflow import metrics
from ugcflow.pipeline import audit, routes
from ugcflow.pipeline.errors import AssetNotFound, InvalidTransition, ValidationError
from ugcflow.pipeline.handlers import Dispatcher
from ugcflow.pipeline.models import JobMessage, PipelineStep
from ugcflow.pipeline.project_service import ProjectService
from ugcflow.pipeline.regeneration import AssetRegenerator

from conftest import FAST_TUNING, FakeMedia, FakeTTS, FakeUpload

PROMPTS = {"start": "holding the serum", "end": "smiling at camera"}


@pytest.fixture
def enqueue():
    return MagicMock()


@pytest.fixture
def service(store, enqueue):
    return ProjectService(store, enqueue)


@pytest.fixture(autouse=True)
def fresh_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def cast_project(make_project, seed_script, add_asset, fake_db):
    """A project at casting_review with keyframes and videos for three segments."""
    def _make(status="casting_review", segments=3):
        project = make_project(status=status)
        _, scenes = seed_script(project["id"], segments=segments)
        frames = {}
        for scene in scenes:
            fake_db.table("scene").update({"visual_prompt": PROMPTS}).eq("id", scene["id"]).execute()
            idx = scene["segment_index"]
            frames[idx, "start"] = add_asset(project["id"], "keyframe_start", scene_id=scene["id"],
                                             provider="wavespeed", cost_usd=0.1)
            frames[idx, "end"] = add_asset(project["id"], "keyframe_end", scene_id=scene["id"],
                                           provider="wavespeed", cost_usd=0.1)
            frames[idx, "video"] = add_asset(project["id"], "video", scene_id=scene["id"], provider="wavespeed")
        return project, scenes, frames
    return _make


def _dispatcher(store, enqueue, media=None, tts=None):
    providers = SimpleNamespace(wavespeed=media, elevenlabs=tts, creatomate=None)
    return Dispatcher(store, providers, enqueue, upload=FakeUpload())


def _job(enqueue) -> JobMessage:
    project_id, step, fields = enqueue.call_args.args
    return JobMessage(project_id=project_id, step=step, fields=fields)


def _status(fake_db, asset):
    return fake_db.rows("asset", id=asset["id"])[0]["status"]


class TestPlanning:
    def test_single_keyframe_resets_row_and_cancels_its_video(self, service, cast_project, fake_db, enqueue):
        project, _, frames = cast_project()
        target = frames[1, "start"]

        response = service.regenerate_asset(project["id"], target["id"])

        assert response.affected_assets == [target["id"]]
        assert response.cancelled_videos == [frames[1, "video"]["id"]]
        assert response.status.value == "casting_review"
        row = fake_db.rows("asset", id=target["id"])[0]
        assert (row["status"], row["url"]) == ("generating", None)
        assert _status(fake_db, frames[1, "end"]) == "completed"
        assert _status(fake_db, frames[0, "video"]) == "completed"
        assert _status(fake_db, frames[2, "video"]) == "completed"
        enqueue.assert_called_once_with(
            project["id"], PipelineStep.REGENERATE_ASSET, {"asset_ids": [target["id"]]}
        )
        assert len(fake_db.events(audit.ASSET_REGENERATION_REQUESTED)) == 1

    def test_cascade_from_start_frame_takes_own_end_and_later_segments(self, service, cast_project, fake_db):
        project, _, frames = cast_project()

        response = service.regenerate_asset(project["id"], frames[1, "start"]["id"], cascade=True)

        expected = [frames[key]["id"] for key in ((1, "start"), (1, "end"), (2, "start"), (2, "end"))]
        assert response.affected_assets == expected
        assert sorted(response.cancelled_videos) == sorted([frames[1, "video"]["id"], frames[2, "video"]["id"]])
        assert _status(fake_db, frames[0, "start"]) == "completed"
        assert _status(fake_db, frames[0, "end"]) == "completed"

    def test_cascade_from_end_frame_keeps_own_start(self, service, cast_project):
        project, _, frames = cast_project()

        response = service.regenerate_asset(project["id"], frames[1, "end"]["id"], cascade=True)

        assert response.affected_assets == [frames[key]["id"] for key in ((1, "end"), (2, "start"), (2, "end"))]

    def test_project_must_be_at_a_review_gate(self, service, cast_project, enqueue):
        project, _, frames = cast_project(status="directing")
        with pytest.raises(InvalidTransition):
            service.regenerate_asset(project["id"], frames[0, "start"]["id"])
        enqueue.assert_not_called()

    def test_videos_wait_for_asset_review(self, service, cast_project):
        project, _, frames = cast_project()
        with pytest.raises(InvalidTransition):
            service.regenerate_asset(project["id"], frames[0, "video"]["id"])

    def test_asset_in_flight_is_rejected(self, service, cast_project, add_asset, fake_db):
        project, scenes, _ = cast_project()
        busy = add_asset(project["id"], "keyframe_start", scene_id=scenes[0]["id"], status="generating")
        with pytest.raises(InvalidTransition):
            service.regenerate_asset(project["id"], busy["id"])

    def test_cascade_is_for_keyframes_only(self, service, cast_project):
        project, _, frames = cast_project(status="asset_review")
        with pytest.raises(ValidationError):
            service.regenerate_asset(project["id"], frames[0, "video"]["id"], cascade=True)

    def test_final_video_cannot_be_regenerated(self, service, make_project, add_asset):
        project = make_project(status="asset_review")
        final = add_asset(project["id"], "final_video")
        with pytest.raises(ValidationError):
            service.regenerate_asset(project["id"], final["id"])

    def test_asset_of_another_project_is_not_found(self, service, cast_project, make_project):
        _, _, frames = cast_project()
        other = make_project(status="casting_review")
        with pytest.raises(AssetNotFound):
            service.regenerate_asset(other["id"], frames[0, "start"]["id"])


class TestRegenerationJob:
    @pytest.mark.asyncio
    async def test_cascade_rechains_later_segments(self, service, cast_project, store, fake_db, enqueue):
        project, _, frames = cast_project()
        previous_end = frames[0, "end"]["url"]
        service.regenerate_asset(project["id"], frames[1, "start"]["id"], cascade=True)
        media = FakeMedia()

        await _dispatcher(store, enqueue, media).handle(_job(enqueue))

        images = [call["images"] for call in media.submissions]
        assert images == [
            [previous_end],
            [previous_end],
            ["https://cdn.test/task-2.png"],
            ["https://cdn.test/task-2.png"],
        ]
        assert [call["prompt"] for call in media.submissions] == [PROMPTS["start"], PROMPTS["end"]] * 2
        for key in ((1, "start"), (1, "end"), (2, "start"), (2, "end")):
            row = fake_db.rows("asset", id=frames[key]["id"])[0]
            assert row["status"] == "completed"
            assert row["url"].startswith("https://cdn.test/task-")
        assert fake_db.rows("asset", id=frames[0, "start"]["id"])[0]["url"] == frames[0, "start"]["url"]
        assert fake_db.rows("project", id=project["id"])[0]["status"] == "casting_review"
        assert fake_db.rows("project", id=project["id"])[0]["cost_usd"] == pytest.approx(0.4)
        done = fake_db.events(audit.ASSET_REGENERATED)[0]["detail"]
        assert (done["completed"], done["failed"]) == (2, 0)

    @pytest.mark.asyncio
    async def test_redelivered_job_does_not_resubmit(self, service, cast_project, store, enqueue):
        project, _, frames = cast_project()
        service.regenerate_asset(project["id"], frames[2, "end"]["id"])
        job = _job(enqueue)
        await _dispatcher(store, enqueue, FakeMedia()).handle(job)

        media = FakeMedia()
        await _dispatcher(store, enqueue, media).handle(job)

        assert media.submissions == []

    @pytest.mark.asyncio
    async def test_job_is_skipped_once_project_left_the_gate(self, service, cast_project, store, fake_db, enqueue):
        project, _, frames = cast_project()
        service.regenerate_asset(project["id"], frames[0, "start"]["id"])
        fake_db.table("project").update({"status": "directing"}).eq("id", project["id"]).execute()
        media = FakeMedia()

        await _dispatcher(store, enqueue, media).handle(_job(enqueue))

        assert media.submissions == []
        row = fake_db.rows("asset", id=frames[0, "start"]["id"])[0]
        assert row["status"] == "failed"
        assert "no longer be regenerated" in row["metadata"]["error"]
        assert fake_db.events(audit.JOB_SKIPPED)[0]["detail"]["status"] == "directing"
        assert fake_db.rows("project", id=project["id"])[0]["status"] == "directing"

    @pytest.mark.asyncio
    async def test_failed_take_is_isolated(self, service, cast_project, store, fake_db, enqueue):
        project, _, frames = cast_project()
        service.regenerate_asset(project["id"], frames[1, "start"]["id"])
        media = FakeMedia(fail_submit=lambda call: True)
        regenerator = AssetRegenerator(store, SimpleNamespace(wavespeed=media), tuning=FAST_TUNING)

        outcome = await regenerator.run(project["id"], _job(enqueue).fields["asset_ids"])

        assert (outcome.completed, outcome.failed) == (0, 1)
        assert len(media.submissions) == FAST_TUNING.unit_attempts

        row = fake_db.rows("asset", id=frames[1, "start"]["id"])[0]
        assert row["status"] == "failed"
        assert "submission rejected" in row["metadata"]["error"]
        assert fake_db.rows("project", id=project["id"])[0]["status"] == "casting_review"
        assert len(fake_db.events(audit.SEGMENT_ERROR)) == 1

    @pytest.mark.asyncio
    async def test_video_is_reanimated_from_current_keyframes(self, service, cast_project, store, fake_db, enqueue):
        project, _, frames = cast_project(status="asset_review")
        service.regenerate_asset(project["id"], frames[1, "video"]["id"])
        media = FakeMedia()

        await _dispatcher(store, enqueue, media).handle(_job(enqueue))

        (call,) = media.submissions
        assert call["image"] == frames[1, "start"]["url"]
        assert call["tail_image"] == frames[1, "end"]["url"]
        row = fake_db.rows("asset", id=frames[1, "video"]["id"])[0]
        assert row["status"] == "completed"
        assert row["provider_task_id"] == "task-1"

    @pytest.mark.asyncio
    async def test_voiceover_is_resynthesized(self, service, make_project, seed_script, add_asset,
                                              store, fake_db, enqueue):
        project = make_project(status="asset_review")
        _, scenes = seed_script(project["id"], segments=2)
        audio = add_asset(project["id"], "audio", scene_id=scenes[1]["id"], status="failed", provider="elevenlabs")
        service.regenerate_asset(project["id"], audio["id"])
        tts = FakeTTS()

        await _dispatcher(store, enqueue, tts=tts).handle(_job(enqueue))

        assert [text for _, text in tts.calls] == [scenes[1]["script_text"]]
        row = fake_db.rows("asset", id=audio["id"])[0]
        assert row["status"] == "completed"
        assert row["url"].startswith(f"https://r2.test/projects/{project['id']}/voiceover_seg1_")


class TestRegenerateRoute:
    @pytest.fixture
    def client(self, service):
        routes.configure(service=service)
        app = FastAPI()
        app.include_router(routes.project_router)
        yield TestClient(app)
        routes.configure()

    def test_cascade_request(self, client, cast_project):
        project, _, frames = cast_project()
        response = client.post(
            f"/projects/{project['id']}/assets/regenerate",
            json={"asset_id": frames[2, "start"]["id"], "cascade": True},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["enqueued_step"] == "regenerate_asset"
        assert body["affected_assets"] == [frames[2, "start"]["id"], frames[2, "end"]["id"]]

    def test_unknown_asset_is_404(self, client, cast_project):
        project, _, _ = cast_project()
        response = client.post(f"/projects/{project['id']}/assets/regenerate", json={"asset_id": "missing"})
        assert response.status_code == 404

    def test_asset_in_flight_is_409(self, client, cast_project, add_asset):
        project, scenes, _ = cast_project()
        busy = add_asset(project["id"], "keyframe_end", scene_id=scenes[0]["id"], status="generating")
        response = client.post(f"/projects/{project['id']}/assets/regenerate", json={"asset_id": busy["id"]})
        assert response.status_code == 409
