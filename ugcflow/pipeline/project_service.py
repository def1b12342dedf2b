"""
Project review / recovery service.

Manages the externally-triggered side of the project lifecycle:
  - Start     (created → analyzing, enqueue product analysis)
  - Approve   (review gate → next status, enqueue its step if active)
  - Retry     (failed → failed_at_status, re-run the stage in place)
  - Rollback  (failed → the gate before the failed stage)
  - Cancel    (flag the project; running agents stop at the next poll)
  - Progress  (status + per-stage asset counts)
  - Regenerate a single script segment
  - Regenerate a reviewed asset, or a keyframe and every keyframe after it

Stage jobs are published through the injected ``enqueue`` callable.
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Optional

from . import audit
from .errors import InvalidTransition, ValidationError
from .models import (
    ActionResponse,
    AssetStatus,
    AssetType,
    PipelineStep,
    ProgressResponse,
    ProjectStatus as S,
    RegenerateAssetResponse,
    StageProgress,
)
from .regeneration import plan_regeneration
from .scripting import ScriptingAgent
from .status import ACTIVE_STAGES, APPROVALS, ROLLBACK_GATES, STAGE_STEPS, transition

logger = logging.getLogger(__name__)

# Stage → asset types whose rows make up its progress
STAGE_ASSETS = {
    PipelineStep.CASTING.value: (AssetType.KEYFRAME_START.value, AssetType.KEYFRAME_END.value),
    PipelineStep.DIRECTING.value: (AssetType.VIDEO.value,),
    PipelineStep.VOICEOVER.value: (AssetType.AUDIO.value,),
    PipelineStep.BROLL_GENERATION.value: (AssetType.BROLL.value,),
    PipelineStep.EDITING.value: (AssetType.FINAL_VIDEO.value,),
}

_CLEARED_ERRORS = {"error_message": None, "failed_at_status": None}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_status(value) -> Optional[S]:
    try:
        return S(value)
    except ValueError:
        return None


class ProjectService:
    def __init__(self, store, enqueue: Callable, providers=None):
        self.store = store
        self.enqueue = enqueue
        self.providers = providers

    def _enqueue_stage(self, project_id: str, status: S) -> Optional[PipelineStep]:
        step = STAGE_STEPS.get(status)
        if step is not None:
            self.enqueue(project_id, step, {})
        return step

    # ── Gates ────────────────────────────────────────────────────────────

    def start(self, project_id: str) -> ActionResponse:
        project = self.store.get_project(project_id)
        project = transition(self.store, project, S.ANALYZING, cancel_requested_at=None)
        step = self._enqueue_stage(project_id, S.ANALYZING)
        return ActionResponse(project_id=project_id, status=project["status"], enqueued_step=step)

    def approve(self, project_id: str) -> ActionResponse:
        project = self.store.get_project(project_id)
        current = project.get("status")
        target = APPROVALS.get(_as_status(current))
        if target is None:
            raise InvalidTransition(str(current), "approved")

        project = transition(self.store, project, target, cancel_requested_at=None)
        step = self._enqueue_stage(project_id, target)
        logger.info(f"[{project_id}] approved {current} → {target.value}")
        return ActionResponse(project_id=project_id, status=project["status"], enqueued_step=step)

    # ── Recovery ─────────────────────────────────────────────────────────

    def _failed_stage(self, project: dict) -> S:
        if project.get("status") != S.FAILED.value:
            raise InvalidTransition(str(project.get("status")), "recovery")
        failed_at = _as_status(project.get("failed_at_status"))
        if failed_at not in ACTIVE_STAGES:
            raise ValidationError(f"Project {project['id']} has no recoverable failed_at_status")
        return failed_at

    def retry(self, project_id: str) -> ActionResponse:
        project = self.store.get_project(project_id)
        stage = self._failed_stage(project)
        project = transition(
            self.store, project, stage, cancel_requested_at=None, **_CLEARED_ERRORS
        )
        step = self._enqueue_stage(project_id, stage)
        logger.info(f"[{project_id}] retrying {stage.value}")
        return ActionResponse(project_id=project_id, status=project["status"], enqueued_step=step)

    def rollback(self, project_id: str) -> ActionResponse:
        project = self.store.get_project(project_id)
        stage = self._failed_stage(project)
        gate = ROLLBACK_GATES[stage]
        project = transition(self.store, project, gate, **_CLEARED_ERRORS)
        logger.info(f"[{project_id}] rolled back {stage.value} → {gate.value}")
        return ActionResponse(project_id=project_id, status=project["status"])

    def cancel(self, project_id: str) -> ActionResponse:
        """
        Request cancellation of the running stage.

        The flag is what running agents observe; the status moves back to the
        stage's rollback gate right away so the project is actionable again.
        """
        project = self.store.get_project(project_id)
        current = project.get("status")
        if _as_status(current) not in ACTIVE_STAGES:
            raise InvalidTransition(str(current), "cancelled")

        self.store.update_project(project_id, {"cancel_requested_at": _now_iso()})
        self.store.cancel_open_assets(project_id)
        project = transition(self.store, project, ROLLBACK_GATES[S(current)])
        logger.info(f"[{project_id}] cancel requested during {current}")
        return ActionResponse(project_id=project_id, status=project["status"])

    # ── Progress ─────────────────────────────────────────────────────────

    def get_progress(self, project_id: str) -> ProgressResponse:
        project = self.store.get_project(project_id)
        assets = self.store.list_assets(project_id)

        counts = defaultdict(lambda: defaultdict(int))
        for asset in assets:
            counts[asset.get("type")][asset.get("status")] += 1

        stages = {}
        for stage, types in STAGE_ASSETS.items():
            completed = sum(counts[t][AssetStatus.COMPLETED.value] for t in types)
            failed = sum(counts[t][AssetStatus.FAILED.value] for t in types)
            total = sum(sum(counts[t].values()) for t in types)
            if total == 0:
                continue
            stages[stage] = StageProgress(
                completed=completed,
                failed=failed,
                total=total,
                degraded=completed > 0 and failed > 0,
            )

        return ProgressResponse(
            project_id=project_id,
            status=project["status"],
            failed_at_status=project.get("failed_at_status"),
            error_message=project.get("error_message"),
            cost_usd=float(project.get("cost_usd") or 0),
            cancel_requested=bool(project.get("cancel_requested_at")),
            stages=stages,
        )

    # ── Script edits ─────────────────────────────────────────────────────

    async def regenerate_segment(
        self,
        project_id: str,
        script_id: str,
        segment_index: int,
        tone: Optional[str] = None,
        feedback: Optional[str] = None,
    ) -> dict:
        project = self.store.get_project(project_id)
        if project.get("status") != S.SCRIPT_REVIEW.value:
            raise InvalidTransition(str(project.get("status")), "segment regeneration")
        if self.providers is None:
            raise RuntimeError("ProjectService has no providers configured")
        agent = ScriptingAgent(self.store, self.providers.wavespeed)
        return await agent.regenerate_segment(project_id, script_id, segment_index, tone, feedback)

    # ── Asset edits ──────────────────────────────────────────────────────

    def regenerate_asset(self, project_id: str, asset_id: str, cascade: bool = False) -> RegenerateAssetResponse:
        """
        Send a reviewed asset (and, with ``cascade``, every keyframe after it)
        back for another take. The rows are reset to generating right away and
        redone in place by a ``regenerate_asset`` job.
        """
        project = self.store.get_project(project_id)
        plan = plan_regeneration(self.store, project, asset_id, cascade)

        self.store.update_assets(plan.target_ids, {"status": AssetStatus.GENERATING.value, "url": None})
        stale = [row["id"] for row in plan.stale_videos]
        self.store.update_assets(stale, {"status": AssetStatus.CANCELLED.value})
        if stale:
            logger.info(f"[{project_id}] cancelled {len(stale)} video(s) animated from regenerated keyframes")

        step = PipelineStep.REGENERATE_ASSET
        audit.log_event(self.store, project_id, audit.ASSET_REGENERATION_REQUESTED, step.value, {
            "assetId": asset_id,
            "cascade": cascade,
            "assetIds": plan.target_ids,
            "cancelledVideos": stale,
        })
        self.enqueue(project_id, step, {"asset_ids": plan.target_ids})
        logger.info(f"[{project_id}] regenerating {len(plan.target_ids)} asset(s) from {asset_id}")
        return RegenerateAssetResponse(
            project_id=project_id,
            status=project["status"],
            enqueued_step=step,
            asset_id=asset_id,
            cascade=cascade,
            affected_assets=plan.target_ids,
            cancelled_videos=stale,
        )
