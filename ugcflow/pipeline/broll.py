"""
B-roll sub-stage — supplementary product shots cut between talking segments.

  Planning   (broll_planning):   LLM plans shots per segment → broll_shot rows
  Generation (broll_generation): Nano Banana Pro image per planned shot → broll assets

Planning is re-runnable: previously planned AI shots are replaced, user
uploads are kept. Generation only touches shots still planned or failed.
"""

import logging
import time
from functools import partial

from .. import config
from . import audit
from .continuity import BatchOutcome, cleanup_outputs, finish_batch
from .errors import ValidationError
from .models import AssetStatus, AssetType
from .ledger import track_cost
from .structured import generate_structured
from .units import AssetSlot, await_output, load_current_script, run_unit

logger = logging.getLogger(__name__)

AI_SOURCE = "ai_generated"
DEFAULT_SHOT_DURATION = 2.5

BROLL_CATEGORIES = ["product_closeup", "texture", "lifestyle", "ingredient", "result", "unboxing"]

PLANNING_PROMPT = f"""You plan B-roll inserts for a short UGC ad.
For each segment, plan 1-3 still shots that illustrate what is being said.
Categories: {', '.join(BROLL_CATEGORIES)}.

Respond with ONLY JSON:
{{"shots": [{{"segment_index": 0, "shot_index": 0, "category": "...", "prompt": "image prompt",
  "narrative_role": "...", "timing_seconds": 3.0, "duration_seconds": 2.5}}]}}"""


class BrollPlanningAgent:
    name = "BRollAgent"
    stage = "broll_planning"

    def __init__(self, store, llm):
        self.store = store
        self.llm = llm

    async def run(self, project_id: str) -> int:
        started = time.monotonic()
        audit.log_event(self.store, project_id, audit.STAGE_START, self.stage, agent_name=self.name)

        project = self.store.get_project(project_id)
        script, scenes = load_current_script(self.store, project_id)
        product_data = project.get("product_data")
        if not product_data:
            raise ValidationError(f"Project {project_id} has no product_data")

        segments = "\n".join(
            f"Segment {s['segment_index']} ({s['section']}): {s['script_text']}" for s in scenes
        )
        user_prompt = (
            f"PRODUCT: {product_data.get('product_name', '')}\n"
            f"PACKAGING: {product_data.get('image_description', '')}\n\n"
            f"SCRIPT:\n{segments}"
        )

        self.store.delete_broll_shots(project_id, source=AI_SOURCE)
        shots = await generate_structured(
            self.llm, self.store, project_id, self.stage,
            PLANNING_PROMPT, user_prompt,
            expect=list, wrapper_keys=("shots", "broll_shots"), agent_name=self.name,
        )

        valid_indexes = {s["segment_index"] for s in scenes}
        rows = []
        for shot in shots:
            if not isinstance(shot, dict) or not shot.get("prompt"):
                continue
            if shot.get("segment_index") not in valid_indexes:
                logger.warning(f"[{project_id}] dropping b-roll shot for unknown segment {shot.get('segment_index')}")
                continue
            rows.append({
                "project_id": project_id,
                "script_id": script["id"],
                "segment_index": shot["segment_index"],
                "shot_index": shot.get("shot_index", 0),
                "category": shot.get("category", "lifestyle"),
                "prompt": shot["prompt"],
                "narrative_role": shot.get("narrative_role", ""),
                "timing_seconds": shot.get("timing_seconds", 0),
                "duration_seconds": shot.get("duration_seconds") or DEFAULT_SHOT_DURATION,
                "source": AI_SOURCE,
                "status": "planned",
                "metadata": {},
            })
        if rows:
            self.store.insert_broll_shots(rows)

        audit.log_event(self.store, project_id, audit.STAGE_COMPLETE, self.stage, {
            "durationMs": int((time.monotonic() - started) * 1000),
            "totalShots": len(rows),
        }, agent_name=self.name)
        logger.info(f"[{project_id}] b-roll planning complete: {len(rows)} shots")
        return len(rows)


class BrollGenerationAgent:
    name = "BRollAgent"
    stage = "broll_generation"

    def __init__(self, store, image_provider, tuning=None, cancel_check=None):
        self.store = store
        self.images = image_provider
        self.tuning = tuning or config.tuning_for(self.stage)
        self.cancel_check = cancel_check

    async def _generate_shot(self, project_id: str, shot: dict, slot: AssetSlot):
        self.store.update_broll_shot(shot["id"], {"status": "generating"})
        prompt = f"{shot['prompt']}. Vertical 9:16, photorealistic, no text."
        task_id = await self.images.generate_image(prompt)
        slot.submitted(task_id)
        url = await await_output(self.images, task_id, self.tuning, self.cancel_check, project_id)
        slot.completed(url)
        self.store.update_broll_shot(shot["id"], {"status": "completed", "image_url": url})
        track_cost(self.store, project_id, config.API_COSTS["nano_banana_pro"])

    async def run(self, project_id: str) -> BatchOutcome:
        started = time.monotonic()
        audit.log_event(self.store, project_id, audit.STAGE_START, self.stage, agent_name=self.name)

        self.store.get_project(project_id)
        shots = self.store.list_broll_shots(project_id, statuses=["planned", "failed"], source=AI_SOURCE)
        if not shots:
            logger.info(f"[{project_id}] no b-roll shots to generate")
            audit.log_event(self.store, project_id, audit.STAGE_COMPLETE, self.stage, {
                "durationMs": int((time.monotonic() - started) * 1000),
                "completed": 0, "failed": 0, "total": 0,
            }, agent_name=self.name)
            return BatchOutcome()

        cleanup_outputs(
            self.store, project_id, [AssetType.BROLL],
            statuses=[AssetStatus.FAILED, AssetStatus.GENERATING, AssetStatus.CANCELLED],
        )

        outcome = BatchOutcome(total=len(shots))
        for shot in shots:
            slot = AssetSlot(
                self.store, project_id, AssetType.BROLL, "wavespeed",
                cost_usd=config.API_COSTS["nano_banana_pro"],
                metadata={
                    "broll_shot_id": shot["id"],
                    "segment_index": shot["segment_index"],
                    "shot_index": shot.get("shot_index", 0),
                },
            )
            ok, error = await run_unit(
                partial(self._generate_shot, project_id, shot, slot), [slot],
                store=self.store, project_id=project_id, stage=self.stage,
                unit={"shotId": shot["id"], "segmentIndex": shot["segment_index"]},
                tuning=self.tuning, agent_name=self.name,
            )
            if not ok:
                self.store.update_broll_shot(shot["id"], {"status": "failed"})
            outcome.record(ok, error)

        return finish_batch(self.store, project_id, self.stage, outcome, started, agent_name=self.name)
