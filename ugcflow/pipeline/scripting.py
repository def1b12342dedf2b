"""
Stage 2: Scripting — WaveSpeed LLM.

Writes a versioned script split into segments (one scene row per segment).
Scripts are append-only: a new run inserts version N+1, and regenerating a
single segment inserts a new scene version instead of editing the old row.
"""

import json
import logging
import time
from typing import Optional

from . import audit
from .errors import StageFailure, ValidationError
from .models import VideoModel
from .structured import generate_structured
from .syllables import count_text_syllables
from .versions import full_text

logger = logging.getLogger(__name__)

SCRIPT_TONES = {
    "authentic": "Casual, first-person, like a friend sharing a real discovery.",
    "energetic": "Fast, punchy, high-energy delivery with short sentences.",
    "educational": "Calm expert explaining why it works, with specific facts.",
    "humorous": "Playful and self-aware, with one light joke per segment.",
}
DEFAULT_TONE = "authentic"

SYLLABLE_RANGE = (82, 90)


def resolve_tone(*candidates: Optional[str]) -> str:
    for tone in candidates:
        if tone in SCRIPT_TONES:
            return tone
    return DEFAULT_TONE


def build_system_prompt(tone: str, vm: VideoModel) -> str:
    low, high = SYLLABLE_RANGE
    sections = ", ".join(vm.section_names[:vm.segment_count])
    return f"""You write {vm.segment_count * vm.segment_duration}-second UGC ad scripts.
TONE: {SCRIPT_TONES[tone]}

RULES:
1. Exactly {vm.segment_count} segments ({sections}), {vm.segment_duration}s each, {low}-{high} syllables.
2. Each segment has {vm.shots_per_segment} shot_scripts of roughly equal length.
3. Respond with ONLY JSON:
{{
  "segments": [
    {{
      "section": "...",
      "script_text": "...",
      "syllable_count": 85,
      "energy": {{"start": "...", "middle": "...", "end": "..."}},
      "shot_scripts": [{{"index": 0, "text": "...", "energy": "..."}}],
      "audio_sync": {{}},
      "text_overlay": "short caption",
      "key_moment": "..."
    }}
  ],
  "hook_score": {{"total": 0}},
  "total_syllables": 0
}}"""


def _product_block(product_data: dict) -> str:
    points = "\n".join(
        f"{i + 1}. {p}" for i, p in enumerate(product_data.get("selling_points") or [])
    )
    return (
        f"PRODUCT: {product_data.get('product_name', '')}\n"
        f"CATEGORY: {product_data.get('category', '')}\n"
        f"HOOK ANGLE: {product_data.get('hook_angle', '')}\n"
        f"SELLING POINTS:\n{points}"
    )


def _hook_score(script: dict):
    """The script's hook score total: ``{"total": n}``, a bare number, or absent."""
    score = script.get("hook_score")
    if isinstance(score, dict):
        score = score.get("total")
    if score is None:
        return None
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise StageFailure(f"hook_score must be a number or {{\"total\": number}}, got {score!r}"[:200])
    return score


class ScriptingAgent:
    name = "ScriptingAgent"
    stage = "scripting"

    def __init__(self, store, llm):
        self.store = store
        self.llm = llm

    # ── Validation ───────────────────────────────────────────────────────

    def _validate_segment(self, project_id: str, segment, vm: VideoModel) -> dict:
        """Check field types and override the LLM's syllable count with a programmatic one."""
        if not isinstance(segment, dict):
            raise StageFailure(f"Script segment must be an object, got {type(segment).__name__}")
        text = segment.get("script_text")
        if text is not None and not isinstance(text, str):
            raise StageFailure(
                f"Segment '{segment.get('section')}' script_text must be a string, "
                f"got {type(text).__name__}"
            )
        if not (text or "").strip():
            raise StageFailure(f"Segment '{segment.get('section')}' has no script_text")
        for key, kind in (("shot_scripts", list), ("audio_sync", dict)):
            value = segment.get(key)
            if value is not None and not isinstance(value, kind):
                raise StageFailure(
                    f"Segment '{segment.get('section')}' {key} must be a {kind.__name__}, "
                    f"got {type(value).__name__}"
                )

        counted = count_text_syllables(text)
        if counted != segment.get("syllable_count"):
            logger.info(
                f"[{project_id}] segment '{segment.get('section')}': LLM reported "
                f"{segment.get('syllable_count')} syllables, counted {counted}"
            )
            segment["syllable_count"] = counted

        shots = segment.get("shot_scripts") or []
        if len(shots) != vm.shots_per_segment:
            logger.warning(
                f"[{project_id}] segment '{segment.get('section')}' has {len(shots)} "
                f"shot_scripts, expected {vm.shots_per_segment}"
            )
        return segment

    def _scene_row(self, script_id: str, index: int, segment: dict, vm: VideoModel,
                   version: int = 1, section: Optional[str] = None,
                   product_visibility: Optional[str] = None) -> dict:
        return {
            "script_id": script_id,
            "segment_index": index,
            "version": version,
            "section": section or segment.get("section") or (
                vm.section_names[index] if index < len(vm.section_names) else f"Segment {index + 1}"
            ),
            "script_text": segment["script_text"],
            "syllable_count": segment["syllable_count"],
            "energy_arc": segment.get("energy") or vm.energy(index),
            "shot_scripts": segment.get("shot_scripts") or [],
            "audio_sync": segment.get("audio_sync") or {},
            "text_overlay": segment.get("text_overlay") or "",
            "product_visibility": product_visibility or vm.visibility(index),
        }

    # ── Full script ──────────────────────────────────────────────────────

    async def run(self, project_id: str) -> dict:
        started = time.monotonic()
        audit.log_event(self.store, project_id, audit.STAGE_START, self.stage, agent_name=self.name)

        project = self.store.get_project(project_id)
        product_data = project.get("product_data")
        if not product_data:
            raise ValidationError(f"Project {project_id} has no product_data — run analysis first")

        vm = VideoModel.for_project(project)
        tone = resolve_tone(project.get("tone"))

        script = await generate_structured(
            self.llm, self.store, project_id, self.stage,
            build_system_prompt(tone, vm), _product_block(product_data),
            expect=dict, agent_name=self.name,
        )
        segments = script.get("segments")
        if not isinstance(segments, list) or not segments:
            raise StageFailure("Script response contains no segments")
        if len(segments) != vm.segment_count:
            logger.warning(f"[{project_id}] script has {len(segments)} segments, expected {vm.segment_count}")

        segments = [self._validate_segment(project_id, seg, vm) for seg in segments]

        version = self.store.next_script_version(project_id)
        hook_score = _hook_score(script)
        saved = self.store.insert_script({
            "project_id": project_id,
            "version": version,
            "hook_score": hook_score,
            "full_text": full_text(segments),
            "tone": tone,
        })
        self.store.insert_scenes([
            self._scene_row(saved["id"], idx, seg, vm) for idx, seg in enumerate(segments)
        ])

        audit.log_event(self.store, project_id, audit.STAGE_COMPLETE, self.stage, {
            "durationMs": int((time.monotonic() - started) * 1000),
            "version": version,
            "segments": len(segments),
        }, agent_name=self.name)
        logger.info(f"[{project_id}] script v{version} saved (id={saved['id']}, hook_score={hook_score})")
        return {"script_id": saved["id"], "version": version, "segments": len(segments)}

    # ── Single segment ───────────────────────────────────────────────────

    async def regenerate_segment(
        self,
        project_id: str,
        script_id: str,
        segment_index: int,
        tone: Optional[str] = None,
        feedback: Optional[str] = None,
    ) -> dict:
        """Insert a new version of one segment and refresh the script's full_text."""
        script = self.store.get_script(script_id)
        if not script or script.get("project_id") != project_id:
            raise ValidationError(f"Script not found: {script_id}")

        scenes = self.store.current_scenes(script_id)
        if not scenes:
            raise ValidationError(f"No scenes found for script {script_id}")
        target = next((s for s in scenes if s["segment_index"] == segment_index), None)
        if target is None:
            raise ValidationError(
                f"Segment index {segment_index} not found — script has {len(scenes)} scenes"
            )

        project = self.store.get_project(project_id)
        product_data = project.get("product_data")
        if not product_data:
            raise ValidationError(f"Project {project_id} has no product_data — run analysis first")

        vm = VideoModel.for_project(project)
        resolved = resolve_tone(tone, script.get("tone"), project.get("tone"))
        context = "\n\n".join(
            f"Segment {s['segment_index'] + 1} ({s['section']}): {s['script_text']}"
            for s in scenes if s["segment_index"] != segment_index
        )
        user_prompt = (
            f"{_product_block(product_data)}\n\n"
            f"SURROUNDING CONTEXT (do NOT modify these segments):\n{context}\n\n"
            f"REGENERATE ONLY Segment {segment_index + 1} ({target['section']}).\n"
            f"Energy pattern: {json.dumps(vm.energy(segment_index))}\n"
            f"Product visibility: {target.get('product_visibility') or vm.visibility(segment_index)}\n"
            "Return ONLY a single segment object, not wrapped in a segments array."
        )
        if feedback:
            user_prompt += f"\n\nUSER FEEDBACK: {feedback}"

        segment = await generate_structured(
            self.llm, self.store, project_id, self.stage,
            build_system_prompt(resolved, vm), user_prompt,
            expect=dict, agent_name=self.name,
        )
        segment = self._validate_segment(project_id, segment, vm)

        version = self.store.next_scene_version(script_id, segment_index)
        new_scene = self.store.insert_scenes([self._scene_row(
            script_id, segment_index, segment, vm,
            version=version,
            section=target["section"],
            product_visibility=target.get("product_visibility"),
        )])[0]

        self.store.update_script(script_id, {"full_text": full_text(self.store.current_scenes(script_id))})
        audit.log_event(self.store, project_id, audit.SEGMENT_REGENERATED, self.stage, {
            "scriptId": script_id,
            "segmentIndex": segment_index,
            "version": version,
        }, agent_name=self.name)
        logger.info(f"[{project_id}] segment {segment_index} regenerated as v{version}")
        return new_scene
