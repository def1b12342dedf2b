"""
Stage 6: Voiceover — ElevenLabs TTS per segment, uploaded to R2.

Voice resolution order: influencer voice → character voice → category
fallback. Audio length is estimated from the 128 kbps byte size and
compared against the segment duration.
"""

import logging
import time
import uuid
from functools import partial

from .. import config
from . import audit
from .continuity import BatchOutcome, cleanup_outputs, finish_batch
from .errors import ValidationError
from .ledger import track_cost
from .models import AssetType, VideoModel
from .storage import upload_project_artifact
from .units import AssetSlot, load_current_script, run_unit

logger = logging.getLogger(__name__)

MIN_DURATION_RATIO = 0.8
MAX_DURATION_RATIO = 1.0
MAX_OVERRUN_SECONDS = 2.0


def estimate_duration(audio: bytes) -> float:
    return len(audio) / config.TTS_BYTES_PER_SECOND


class VoiceoverAgent:
    name = "VoiceoverAgent"
    stage = "voiceover"

    def __init__(self, store, tts, upload=None, tuning=None):
        self.store = store
        self.tts = tts
        self.upload = upload or upload_project_artifact
        self.tuning = tuning or config.tuning_for(self.stage)

    async def resolve_voice(self, project: dict) -> tuple[str, str]:
        """Returns (voice_id, source)."""
        if project.get("influencer_id"):
            influencer = self.store.get_influencer(project["influencer_id"])
            voice_id = (influencer or {}).get("voice_id")
            if voice_id and await self.tts.is_voice_valid(voice_id):
                return voice_id, "influencer"
            if voice_id:
                logger.warning(f"[{project['id']}] influencer voice {voice_id} is no longer valid")

        if project.get("character_id"):
            character = self.store.get_character(project["character_id"])
            voice_id = (character or {}).get("voice_id")
            if voice_id and await self.tts.is_voice_valid(voice_id):
                return voice_id, "character"

        category = project.get("product_category") or "default"
        return config.FALLBACK_VOICES.get(category, config.FALLBACK_VOICES["default"]), "fallback"

    async def _voice_segment(self, project_id: str, scene: dict, voice_id: str,
                             vm: VideoModel, slot: AssetSlot):
        text = (scene.get("script_text") or "").strip()
        if not text:
            raise ValidationError(f"Segment {scene['segment_index']} has no script text")

        # synchronous provider: the row is generating while the request is in flight
        slot.submitted(f"tts-{uuid.uuid4().hex[:12]}")
        audio = await self.tts.text_to_speech(voice_id, text)
        track_cost(self.store, project_id, config.API_COSTS["elevenlabs_tts"])

        idx = scene["segment_index"]
        duration = estimate_duration(audio)
        target = vm.segment_duration
        ratio = duration / target if target else 0
        if ratio < MIN_DURATION_RATIO or ratio > MAX_DURATION_RATIO:
            audit.log_event(self.store, project_id, audit.AUDIO_DURATION_WARNING, self.stage, {
                "segmentIndex": idx,
                "durationSeconds": round(duration, 2),
                "targetSeconds": target,
                "ratio": round(ratio, 3),
            }, agent_name=self.name)
        if duration > target + MAX_OVERRUN_SECONDS:
            logger.warning(f"[{project_id}] segment {idx} audio runs {duration - target:.1f}s long")
            audit.log_event(self.store, project_id, audit.SEGMENT_ERROR, self.stage, {
                "segmentIndex": idx,
                "severity": "warning",
                "error": f"audio overruns segment by {duration - target:.1f}s",
            }, agent_name=self.name)

        url = await self.upload(
            project_id, f"voiceover_seg{idx}_{uuid.uuid4().hex[:8]}.mp3", audio, "audio/mpeg"
        )
        slot.completed(url, duration_seconds=round(duration, 2), voice_id=voice_id)

    async def run(self, project_id: str) -> BatchOutcome:
        started = time.monotonic()
        audit.log_event(self.store, project_id, audit.STAGE_START, self.stage, agent_name=self.name)

        project = self.store.get_project(project_id)
        _, scenes = load_current_script(self.store, project_id)
        vm = VideoModel.for_project(project)

        voice_id, source = await self.resolve_voice(project)
        audit.log_event(self.store, project_id, audit.VOICE_SELECTED, self.stage, {
            "voiceId": voice_id, "source": source,
        }, agent_name=self.name)

        cleanup_outputs(self.store, project_id, [AssetType.AUDIO])

        outcome = BatchOutcome(total=len(scenes))
        for scene in scenes:
            slot = AssetSlot(
                self.store, project_id, AssetType.AUDIO, "elevenlabs",
                scene_id=scene["id"], cost_usd=config.API_COSTS["elevenlabs_tts"],
                metadata={"segment_index": scene["segment_index"]},
            )
            ok, error = await run_unit(
                partial(self._voice_segment, project_id, scene, voice_id, vm, slot), [slot],
                store=self.store, project_id=project_id, stage=self.stage,
                unit={"segmentIndex": scene["segment_index"]},
                tuning=self.tuning, agent_name=self.name,
            )
            outcome.record(ok, error)

        return finish_batch(self.store, project_id, self.stage, outcome, started,
                            agent_name=self.name, voiceId=voice_id)

    async def regenerate_audio(self, project_id: str, row: dict) -> BatchOutcome:
        """Redo one segment's voiceover row in place with the project's current voice."""
        project = self.store.get_project(project_id)
        _, scenes = load_current_script(self.store, project_id)
        scene = next((s for s in scenes if s["id"] == row.get("scene_id")), None)
        if scene is None:
            raise ValidationError(f"Audio {row['id']} does not belong to a current segment")

        slot = AssetSlot.adopt(self.store, row)
        outcome = BatchOutcome(total=1)
        if slot.done:
            outcome.record(True)
            return outcome
        voice_id, _ = await self.resolve_voice(project)
        ok, error = await run_unit(
            partial(self._voice_segment, project_id, scene, voice_id, VideoModel.for_project(project), slot),
            [slot],
            store=self.store, project_id=project_id, stage=self.stage,
            unit={"segmentIndex": scene["segment_index"], "regenerated": [AssetType.AUDIO.value]},
            tuning=self.tuning, agent_name=self.name,
        )
        outcome.record(ok, error)
        return outcome
