"""
Targeted regeneration of reviewed assets.

While a project waits at a review gate the reviewer can send one keyframe,
video or voiceover clip back for another take. ``plan_regeneration`` picks
the rows to redo; ProjectService marks them generating and enqueues a
``regenerate_asset`` job; ``AssetRegenerator`` redoes them in place through
the owning stage agent.

Cascade (keyframes only) takes the chosen keyframe and every keyframe after
it in chain order: for a start frame, its own segment's end frame and all
later segments; for an end frame, all later segments. Videos animated from
a regenerated keyframe are cancelled because they no longer match it.
"""

import logging
from dataclasses import dataclass, field

from . import audit
from .casting import CastingAgent
from .continuity import BatchOutcome
from .directing import DirectorAgent
from .errors import InvalidTransition, ValidationError
from .models import AssetStatus, AssetType, ProjectStatus as S
from .units import load_current_script
from .voiceover import VoiceoverAgent

logger = logging.getLogger(__name__)

KEYFRAME_TYPES = (AssetType.KEYFRAME_START.value, AssetType.KEYFRAME_END.value)

# Asset type → review gates at which it can be regenerated
REGENERATION_GATES = {
    AssetType.KEYFRAME_START.value: frozenset({S.CASTING_REVIEW.value, S.ASSET_REVIEW.value}),
    AssetType.KEYFRAME_END.value: frozenset({S.CASTING_REVIEW.value, S.ASSET_REVIEW.value}),
    AssetType.VIDEO.value: frozenset({S.ASSET_REVIEW.value}),
    AssetType.AUDIO.value: frozenset({S.ASSET_REVIEW.value}),
}

REGENERABLE_STATUSES = frozenset({
    AssetStatus.COMPLETED.value,
    AssetStatus.FAILED.value,
    AssetStatus.CANCELLED.value,
})

STALE_VIDEO_STATUSES = (AssetStatus.COMPLETED.value, AssetStatus.GENERATING.value)


@dataclass
class RegenerationPlan:
    asset: dict
    targets: list = field(default_factory=list)
    stale_videos: list = field(default_factory=list)

    @property
    def target_ids(self) -> list[str]:
        return [row["id"] for row in self.targets]


def regeneration_allowed(asset_type: str, status) -> bool:
    return getattr(status, "value", status) in REGENERATION_GATES.get(asset_type, ())


def _keyframe_key(row: dict, index_of: dict) -> tuple:
    return index_of[row["scene_id"]], KEYFRAME_TYPES.index(row["type"])


def plan_regeneration(store, project: dict, asset_id: str, cascade: bool = False) -> RegenerationPlan:
    """
    Validate a regeneration request and pick its target rows.

    Raises AssetNotFound for a foreign or unknown asset, InvalidTransition
    when the project or the asset is not in a state that allows it, and
    ValidationError for an unsupported type or a superseded segment.
    """
    project_id = project["id"]
    asset = store.get_asset(project_id, asset_id)
    asset_type = asset.get("type")

    if asset_type not in REGENERATION_GATES:
        raise ValidationError(f"{asset_type} assets cannot be regenerated individually")
    if cascade and asset_type not in KEYFRAME_TYPES:
        raise ValidationError("cascade regeneration applies to keyframes only")
    if not regeneration_allowed(asset_type, project.get("status")):
        raise InvalidTransition(str(project.get("status")), f"{asset_type} regeneration")
    if asset.get("status") not in REGENERABLE_STATUSES:
        raise InvalidTransition(str(asset.get("status")), "regenerating")

    _, scenes = load_current_script(store, project_id)
    index_of = {scene["id"]: scene["segment_index"] for scene in scenes}
    if asset.get("scene_id") not in index_of:
        raise ValidationError(f"Asset {asset_id} belongs to a superseded segment")

    plan = RegenerationPlan(asset=asset, targets=[asset])
    if asset_type not in KEYFRAME_TYPES:
        return plan

    if cascade:
        origin = _keyframe_key(asset, index_of)
        later = [
            row for row in store.list_assets(project_id, types=KEYFRAME_TYPES)
            if row["id"] != asset_id
            and row.get("scene_id") in index_of
            and row.get("status") in REGENERABLE_STATUSES
            and _keyframe_key(row, index_of) > origin
        ]
        plan.targets = sorted([asset, *later], key=lambda row: _keyframe_key(row, index_of))

    affected_scenes = {row["scene_id"] for row in plan.targets}
    plan.stale_videos = [
        row for row in store.list_assets(
            project_id, types=[AssetType.VIDEO.value], statuses=STALE_VIDEO_STATUSES,
        )
        if row.get("scene_id") in affected_scenes
    ]
    return plan


class AssetRegenerator:
    """Runs a ``regenerate_asset`` job through the stage agent that owns the asset type."""

    name = "AssetRegenerator"
    stage = "regenerate_asset"

    def __init__(self, store, providers, upload=None, tuning=None):
        self.store = store
        self.providers = providers
        self.upload = upload
        self.tuning = tuning

    def _rows(self, project_id: str, asset_ids: list[str]) -> list[dict]:
        wanted = set(asset_ids)
        return [row for row in self.store.list_assets(project_id) if row["id"] in wanted]

    def fail_open(self, project_id: str, asset_ids: list[str], error: str):
        """Mark targets still generating as failed so they can be requested again."""
        for row in self._rows(project_id, asset_ids):
            if row.get("status") == AssetStatus.GENERATING.value:
                metadata = {**(row.get("metadata") or {}), "error": error[:1000]}
                self.store.update_asset(row["id"], {"status": AssetStatus.FAILED.value, "metadata": metadata})

    async def run(self, project_id: str, asset_ids: list[str]) -> BatchOutcome:
        rows = self._rows(project_id, asset_ids)
        if not rows:
            raise ValidationError(f"None of the assets to regenerate exist for project {project_id}")
        asset_type = rows[0]["type"]

        if asset_type in KEYFRAME_TYPES:
            agent = CastingAgent(self.store, self.providers.wavespeed, tuning=self.tuning)
            outcome = await agent.regenerate_keyframes(project_id, rows)
        elif asset_type == AssetType.VIDEO.value:
            agent = DirectorAgent(self.store, self.providers.wavespeed, tuning=self.tuning)
            outcome = await agent.regenerate_video(project_id, rows[0])
        elif asset_type == AssetType.AUDIO.value:
            agent = VoiceoverAgent(self.store, self.providers.elevenlabs, upload=self.upload, tuning=self.tuning)
            outcome = await agent.regenerate_audio(project_id, rows[0])
        else:
            raise ValidationError(f"{asset_type} assets cannot be regenerated individually")

        audit.log_event(self.store, project_id, audit.ASSET_REGENERATED, agent.stage, {
            "assetIds": [row["id"] for row in rows],
            "completed": outcome.completed,
            "failed": outcome.failed,
        }, agent_name=self.name)
        logger.info(
            f"[{project_id}] regenerated {asset_type}: "
            f"{outcome.completed}/{outcome.total} unit(s) succeeded"
        )
        return outcome
