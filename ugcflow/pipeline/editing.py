"""
Stage 8: Editing — Creatomate composite render.

Builds template modifications from the completed segment videos, voiceover
audio, text overlays and b-roll stills, then renders. The render is retried
up to ``unit_attempts`` times with a growing delay (15s, 30s by default),
since a lost render throws away every asset paid for upstream.
"""

import asyncio
import logging
import time
from typing import Optional

from .. import config
from . import audit
from .continuity import cleanup_outputs
from .errors import CancellationSignal, StageFailure, ValidationError
from .ledger import track_cost
from .models import AssetStatus, AssetType
from .units import AssetSlot, await_output

logger = logging.getLogger(__name__)

RESOLUTION = (1080, 1920)

# Ken Burns scale/position keyframes, alternated by shot index
KEN_BURNS_PRESETS = [
    {"x_scale": ("100%", "115%"), "y_scale": ("100%", "115%"), "x": ("50%", "50%"), "y": ("50%", "50%")},
    {"x_scale": ("115%", "100%"), "y_scale": ("115%", "100%"), "x": ("50%", "50%"), "y": ("50%", "50%")},
    {"x_scale": ("110%", "110%"), "y_scale": ("110%", "110%"), "x": ("45%", "55%"), "y": ("50%", "50%")},
]


def ken_burns(image_url: str, shot_index: int) -> dict:
    preset = KEN_BURNS_PRESETS[shot_index % len(KEN_BURNS_PRESETS)]
    mod = {"source": image_url}
    for prop, (start, end) in preset.items():
        mod[prop] = [{"value": start, "time": 0}, {"value": end, "time": "end"}]
    return mod


def slot_url(value) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("source"), str):
        return value["source"]
    return None


def build_modifications(scenes: list[dict], assets: list[dict], broll_shots: list[dict]) -> dict:
    """Template slots: Video-N / Audio-N / Text-N per segment, Broll-N-M per shot."""
    index_by_scene = {s["id"]: s["segment_index"] for s in scenes}
    mods = {}
    for asset in assets:
        idx = index_by_scene.get(asset.get("scene_id"))
        if idx is None or not asset.get("url"):
            continue
        if asset["type"] == AssetType.VIDEO.value:
            # Kling's own audio track is muted; only the voiceover is heard
            mods[f"Video-{idx + 1}"] = {"source": asset["url"], "volume": "0%"}
        elif asset["type"] == AssetType.AUDIO.value:
            mods[f"Audio-{idx + 1}"] = asset["url"]

    for scene in scenes:
        if scene.get("text_overlay"):
            mods[f"Text-{scene['segment_index'] + 1}"] = scene["text_overlay"]

    for shot in broll_shots:
        if shot.get("image_url"):
            key = f"Broll-{shot['segment_index'] + 1}-{shot.get('shot_index', 0) + 1}"
            mods[key] = ken_burns(shot["image_url"], shot.get("shot_index", 0))
    return mods


class EditorAgent:
    name = "EditorAgent"
    stage = "editing"

    def __init__(self, store, renderer, tuning=None, cancel_check=None,
                 template_id: Optional[str] = None):
        self.store = store
        self.renderer = renderer
        self.tuning = tuning or config.tuning_for(self.stage)
        self.cancel_check = cancel_check
        self.template_id = template_id or config.CREATOMATE_TEMPLATE_ID

    def _validate_urls(self, project_id: str, mods: dict) -> dict:
        """Drop data: URIs from media slots; warn on anything not https."""
        for key in [k for k in mods if k.startswith(("Video-", "Audio-"))]:
            url = slot_url(mods[key])
            if not url:
                continue
            if url.startswith("data:"):
                logger.error(f"[{project_id}] slot {key} holds a data URI — excluding from render")
                audit.log_event(self.store, project_id, audit.ASSET_VALIDATION_ERROR, self.stage, {
                    "slotKey": key, "issue": "data_uri_detected", "urlPrefix": url[:30],
                }, agent_name=self.name)
                del mods[key]
            elif not url.startswith("https://"):
                logger.warning(f"[{project_id}] slot {key} has a non-https URL: {url[:60]}")
                audit.log_event(self.store, project_id, audit.ASSET_VALIDATION_WARNING, self.stage, {
                    "slotKey": key, "issue": "non_https_url", "urlPrefix": url[:60],
                }, agent_name=self.name)
        return mods

    async def _render(self, project_id: str, mods: dict, slot: AssetSlot) -> str:
        attempts = max(1, self.tuning.unit_attempts)
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                delay = self.tuning.unit_retry_delay * (attempt - 1)
                audit.log_event(self.store, project_id, audit.RENDER_RETRY, self.stage, {
                    "attempt": attempt,
                    "maxAttempts": attempts,
                    "error": str(last_error),
                    "delayMs": int(delay * 1000),
                }, agent_name=self.name)
                logger.info(f"[{project_id}] render retry {attempt - 1}/{attempts - 1} in {delay}s")
                await asyncio.sleep(delay)
            try:
                render_id = await self.renderer.render(
                    self.template_id, mods, max_width=RESOLUTION[0], max_height=RESOLUTION[1]
                )
                slot.submitted(render_id)
                return await await_output(self.renderer, render_id, self.tuning, self.cancel_check, project_id)
            except CancellationSignal:
                raise
            except Exception as e:
                last_error = e
                logger.warning(f"[{project_id}] render attempt {attempt}/{attempts} failed: {e}")

        slot.failed(str(last_error))
        raise StageFailure(f"Creatomate render failed after {attempts} attempts: {last_error}")

    async def run(self, project_id: str) -> str:
        started = time.monotonic()
        audit.log_event(self.store, project_id, audit.STAGE_START, self.stage, agent_name=self.name)

        self.store.get_project(project_id)
        script = self.store.latest_script(project_id)
        if not script:
            raise ValidationError(f"No script found for project {project_id}")
        scenes = self.store.current_scenes(script["id"])

        assets = self.store.list_assets(
            project_id,
            types=[AssetType.VIDEO.value, AssetType.AUDIO.value],
            statuses=[AssetStatus.COMPLETED.value],
        )
        if not any(a["type"] == AssetType.VIDEO.value for a in assets):
            raise ValidationError(f"Project {project_id} has no completed videos to compose")
        if not any(a["type"] == AssetType.AUDIO.value for a in assets):
            logger.warning(f"[{project_id}] no completed voiceover audio — rendering without it")

        broll = self.store.list_broll_shots(project_id, statuses=["completed"])
        mods = build_modifications(scenes, assets, broll)
        mods = self._validate_urls(project_id, mods)
        if not any(k.startswith("Video-") for k in mods):
            raise ValidationError("No valid video assets to compose after URL validation")
        logger.info(f"[{project_id}] template modifications: {sorted(mods)}")

        cleanup_outputs(self.store, project_id, [AssetType.FINAL_VIDEO])
        slot = AssetSlot(
            self.store, project_id, AssetType.FINAL_VIDEO, "creatomate",
            cost_usd=config.API_COSTS["creatomate_render"],
        )
        url = await self._render(project_id, mods, slot)
        slot.completed(url)
        track_cost(self.store, project_id, config.API_COSTS["creatomate_render"])

        audit.log_event(self.store, project_id, audit.STAGE_COMPLETE, self.stage, {
            "durationMs": int((time.monotonic() - started) * 1000),
            "completed": 1, "failed": 0, "total": 1,
            "slots": len(mods),
        }, agent_name=self.name)
        logger.info(f"[{project_id}] editing complete: {url}")
        return url
