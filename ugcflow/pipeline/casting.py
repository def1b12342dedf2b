"""
Stage 4: Casting — start/end keyframes per segment via Nano Banana Pro.

For each segment an LLM writes a start/end prompt pair, then both keyframes
are generated by editing the influencer's reference photo. The previous
segment's end keyframe is passed along as an extra reference so the person,
outfit and set stay consistent across segments. A failed segment does not
reset that reference.
"""

import logging
import time
from collections import defaultdict
from functools import partial
from typing import Optional

from .. import config
from . import audit
from .continuity import BatchOutcome, ContinuityChain, cleanup_outputs, finish_batch
from .errors import ProviderError, ValidationError
from .ledger import track_cost
from .models import AssetStatus, AssetType, VideoModel
from .structured import generate_structured
from .units import AssetSlot, await_output, load_current_script, run_unit

logger = logging.getLogger(__name__)

PROMPT_PAIR_SYSTEM = """You write image prompts for the first and last frame of a 15-second
UGC video segment. The same person appears in both frames, holding or near the product
as described. Respond with ONLY JSON: {"start": "...", "end": "..."}"""


class CastingAgent:
    name = "CastingAgent"
    stage = "casting"

    def __init__(self, store, llm, images=None, tuning=None, cancel_check=None):
        self.store = store
        self.llm = llm
        self.images = images or llm
        self.tuning = tuning or config.tuning_for(self.stage)
        self.cancel_check = cancel_check

    def _user_prompt(self, project: dict, scene: dict, vm: VideoModel,
                     influencer: Optional[dict]) -> str:
        product = project.get("product_data") or {}
        idx = scene["segment_index"]
        placement = vm.product_placement_arc[idx] if idx < len(vm.product_placement_arc) else {}
        who = (influencer or {}).get("name") or product.get("avatar_description", "the creator")
        return (
            f"PERSON: {who}\n"
            f"PRODUCT: {product.get('product_name', '')} — {product.get('image_description', '')}\n"
            f"SEGMENT {idx + 1} ({scene.get('section', '')}): {scene.get('script_text', '')}\n"
            f"ENERGY: {scene.get('energy_arc') or vm.energy(idx)}\n"
            f"PRODUCT VISIBILITY: {placement.get('visibility', 'none')} — {placement.get('description', '')}"
        )

    def _influencer(self, project: dict) -> Optional[dict]:
        if not project.get("influencer_id"):
            return None
        influencer = self.store.get_influencer(project["influencer_id"])
        if not influencer:
            logger.warning(f"[{project['id']}] influencer {project['influencer_id']} not found")
        return influencer

    async def _cast_segment(self, project: dict, scene: dict, vm: VideoModel,
                            influencer: Optional[dict], chain: ContinuityChain,
                            slots: dict, state: dict):
        project_id = project["id"]
        if "prompts" not in state:
            prompts = await generate_structured(
                self.llm, self.store, project_id, self.stage,
                PROMPT_PAIR_SYSTEM, self._user_prompt(project, scene, vm, influencer),
                expect=dict, agent_name=self.name,
            )
            if not prompts.get("start") or not prompts.get("end"):
                raise ProviderError("wavespeed", f"prompt pair incomplete for segment {scene['segment_index']}")
            self.store.update_scene(scene["id"], {"visual_prompt": prompts})
            state["prompts"] = prompts

        refs = chain.references((influencer or {}).get("image_url"))
        pending = []
        for key, slot in slots.items():
            if slot.done:
                continue
            if refs:
                task_id = await self.images.edit_image(refs, state["prompts"][key])
            else:
                task_id = await self.images.generate_image(state["prompts"][key])
            slot.submitted(task_id)
            pending.append((slot, task_id))

        for slot, task_id in pending:
            url = await await_output(self.images, task_id, self.tuning, self.cancel_check, project_id)
            slot.completed(url, references=len(refs))
            track_cost(self.store, project_id, slot.cost_usd)

    async def run(self, project_id: str) -> BatchOutcome:
        started = time.monotonic()
        audit.log_event(self.store, project_id, audit.STAGE_START, self.stage, agent_name=self.name)

        project = self.store.get_project(project_id)
        _, scenes = load_current_script(self.store, project_id)
        vm = VideoModel.for_project(project)

        influencer = self._influencer(project)
        cost = config.API_COSTS[
            "nano_banana_pro_edit" if influencer and influencer.get("image_url") else "nano_banana_pro"
        ]

        cleanup_outputs(self.store, project_id, [AssetType.KEYFRAME_START, AssetType.KEYFRAME_END])

        chain = ContinuityChain()
        outcome = BatchOutcome(total=len(scenes))
        for scene in scenes:
            slots = {
                "start": AssetSlot(self.store, project_id, AssetType.KEYFRAME_START, "wavespeed",
                                   scene_id=scene["id"], cost_usd=cost,
                                   metadata={"segment_index": scene["segment_index"]}),
                "end": AssetSlot(self.store, project_id, AssetType.KEYFRAME_END, "wavespeed",
                                 scene_id=scene["id"], cost_usd=cost,
                                 metadata={"segment_index": scene["segment_index"]}),
            }
            ok, error = await run_unit(
                partial(self._cast_segment, project, scene, vm, influencer, chain, slots, {}),
                list(slots.values()),
                store=self.store, project_id=project_id, stage=self.stage,
                unit={"segmentIndex": scene["segment_index"]},
                tuning=self.tuning, agent_name=self.name,
            )
            if ok:
                chain.advance(slots["end"].url)
            outcome.record(ok, error)

        return finish_batch(self.store, project_id, self.stage, outcome, started, agent_name=self.name)

    # ── Targeted regeneration ────────────────────────────────────────────

    async def regenerate_keyframes(self, project_id: str, rows: list[dict]) -> BatchOutcome:
        """
        Redo the given keyframe rows in place, in segment order.

        Segments before and between the targets feed the chain with their
        current end keyframe, so every new frame references the end frame
        that precedes it once the regeneration is done. Rows already
        completed (a redelivered job) are kept and only advance the chain.
        """
        project = self.store.get_project(project_id)
        _, scenes = load_current_script(self.store, project_id)
        vm = VideoModel.for_project(project)
        influencer = self._influencer(project)

        targets = defaultdict(dict)
        for row in rows:
            targets[row.get("scene_id")][row["type"]] = row
        if not any(scene["id"] in targets for scene in scenes):
            raise ValidationError(f"No keyframes of the current script to regenerate for project {project_id}")

        current_ends = {
            row.get("scene_id"): row["url"]
            for row in self.store.list_assets(
                project_id,
                types=[AssetType.KEYFRAME_END.value],
                statuses=[AssetStatus.COMPLETED.value],
            )
            if row.get("url")
        }

        chain = ContinuityChain()
        outcome = BatchOutcome(total=sum(1 for scene in scenes if scene["id"] in targets))
        for scene in scenes:
            by_type = targets.get(scene["id"])
            if not by_type:
                chain.advance(current_ends.get(scene["id"]))
                continue

            slots = {
                key: AssetSlot.adopt(self.store, by_type[asset_type.value])
                for key, asset_type in (("start", AssetType.KEYFRAME_START), ("end", AssetType.KEYFRAME_END))
                if asset_type.value in by_type
            }
            prompts = scene.get("visual_prompt") or {}
            state = {"prompts": prompts} if prompts.get("start") and prompts.get("end") else {}
            ok, error = await run_unit(
                partial(self._cast_segment, project, scene, vm, influencer, chain, slots, state),
                list(slots.values()),
                store=self.store, project_id=project_id, stage=self.stage,
                unit={"segmentIndex": scene["segment_index"], "regenerated": sorted(by_type)},
                tuning=self.tuning, agent_name=self.name,
            )
            if ok:
                chain.advance(slots["end"].url if "end" in slots else current_ends.get(scene["id"]))
            outcome.record(ok, error)

        logger.info(
            f"[{project_id}] regenerated keyframes for {outcome.total} segment(s): "
            f"{outcome.completed} ok, {outcome.failed} failed"
        )
        return outcome
