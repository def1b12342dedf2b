"""
Stage 5: Directing — Kling image-to-video per segment.

Each segment is animated from its start keyframe toward its end keyframe,
with one prompt per shot script so the cut points line up with the words.
"""

import logging
import time
from functools import partial

from .. import config
from . import audit
from .continuity import BatchOutcome, cleanup_outputs, finish_batch
from .errors import ValidationError
from .ledger import track_cost
from .models import AssetStatus, AssetType, VideoModel
from .units import AssetSlot, await_output, load_current_script, run_unit

logger = logging.getLogger(__name__)

NEGATIVE_PROMPT = "blurry, distorted hands, extra fingers, text, watermark, morphing face"


def build_multi_prompt(scene: dict, vm: VideoModel) -> list[dict]:
    shots = scene.get("shot_scripts") or []
    if not shots:
        return []
    per_shot = max(1, vm.segment_duration // len(shots))
    return [
        {"prompt": shot.get("text", ""), "duration": per_shot}
        for shot in shots
    ]


class DirectorAgent:
    name = "DirectorAgent"
    stage = "directing"

    def __init__(self, store, video_provider, tuning=None, cancel_check=None):
        self.store = store
        self.video = video_provider
        self.tuning = tuning or config.tuning_for(self.stage)
        self.cancel_check = cancel_check

    def _keyframes(self, project_id: str) -> dict:
        rows = self.store.list_assets(
            project_id,
            types=[AssetType.KEYFRAME_START.value, AssetType.KEYFRAME_END.value],
            statuses=[AssetStatus.COMPLETED.value],
        )
        return {(row.get("scene_id"), row["type"]): row for row in rows if row.get("url")}

    async def _direct_segment(self, project_id: str, scene: dict, vm: VideoModel,
                              keyframes: dict, slot: AssetSlot):
        start = keyframes.get((scene["id"], AssetType.KEYFRAME_START.value))
        if not start:
            raise ValidationError(f"Segment {scene['segment_index']} has no start keyframe")
        end = keyframes.get((scene["id"], AssetType.KEYFRAME_END.value))

        prompt = (scene.get("visual_prompt") or {}).get("start") or scene.get("script_text", "")
        task_id = await self.video.generate_video(
            image=start["url"],
            tail_image=end["url"] if end else None,
            prompt=prompt,
            multi_prompt=build_multi_prompt(scene, vm),
            negative_prompt=NEGATIVE_PROMPT,
            duration=vm.segment_duration,
        )
        slot.submitted(task_id)
        url = await await_output(self.video, task_id, self.tuning, self.cancel_check, project_id)
        slot.completed(url)
        track_cost(self.store, project_id, config.API_COSTS["kling_video"])
        logger.info(f"[{project_id}] video complete for segment {scene['segment_index']}")

    async def run(self, project_id: str) -> BatchOutcome:
        started = time.monotonic()
        audit.log_event(self.store, project_id, audit.STAGE_START, self.stage, agent_name=self.name)

        project = self.store.get_project(project_id)
        _, scenes = load_current_script(self.store, project_id)
        vm = VideoModel.for_project(project)

        keyframes = self._keyframes(project_id)
        if not keyframes:
            raise ValidationError(f"Project {project_id} has no completed keyframes — run casting first")

        cleanup_outputs(self.store, project_id, [AssetType.VIDEO])

        outcome = BatchOutcome(total=len(scenes))
        for scene in scenes:
            slot = AssetSlot(
                self.store, project_id, AssetType.VIDEO, "wavespeed",
                scene_id=scene["id"], cost_usd=config.API_COSTS["kling_video"],
                metadata={"segment_index": scene["segment_index"]},
            )
            ok, error = await run_unit(
                partial(self._direct_segment, project_id, scene, vm, keyframes, slot), [slot],
                store=self.store, project_id=project_id, stage=self.stage,
                unit={"segmentIndex": scene["segment_index"]},
                tuning=self.tuning, agent_name=self.name,
            )
            outcome.record(ok, error)

        return finish_batch(self.store, project_id, self.stage, outcome, started, agent_name=self.name)

    async def regenerate_video(self, project_id: str, row: dict) -> BatchOutcome:
        """Redo one segment's video row in place from its current keyframes."""
        project = self.store.get_project(project_id)
        _, scenes = load_current_script(self.store, project_id)
        scene = next((s for s in scenes if s["id"] == row.get("scene_id")), None)
        if scene is None:
            raise ValidationError(f"Video {row['id']} does not belong to a current segment")

        slot = AssetSlot.adopt(self.store, row)
        outcome = BatchOutcome(total=1)
        if slot.done:
            outcome.record(True)
            return outcome
        ok, error = await run_unit(
            partial(self._direct_segment, project_id, scene, VideoModel.for_project(project),
                    self._keyframes(project_id), slot),
            [slot],
            store=self.store, project_id=project_id, stage=self.stage,
            unit={"segmentIndex": scene["segment_index"], "regenerated": [AssetType.VIDEO.value]},
            tuning=self.tuning, agent_name=self.name,
        )
        outcome.record(ok, error)
        return outcome
