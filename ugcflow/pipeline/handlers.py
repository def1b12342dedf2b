"""
Stage handlers — one per PipelineStep.

Each handler owns the project's status around one agent run:

  1. check the project is in the in-progress status (start, approve, retry
     and auto-chaining set it); any other status is a stale job, skipped and acked
  2. build the agent with its collaborators and await ``run(project_id)``
  3. success → success target; auto-chained stages enqueue the next step
  4. CancellationSignal → stage_cancelled event only, returns normally
  5. anything else → status=failed + error_message + failed_at_status, re-raise

regenerate_asset is not a stage: it redoes reviewed assets while the project
waits at its gate and never moves the status.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .. import metrics
from . import audit
from .analysis import ProductAnalysisAgent
from .broll import BrollGenerationAgent, BrollPlanningAgent
from .casting import CastingAgent
from .directing import DirectorAgent
from .editing import EditorAgent
from .errors import CancellationSignal, InvalidTransition, PipelineError
from .models import JobMessage, PipelineStep, ProjectStatus as S
from .regeneration import AssetRegenerator, regeneration_allowed
from .scripting import ScriptingAgent
from .status import can_transition, transition
from .voiceover import VoiceoverAgent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageSpec:
    in_progress: S
    build: Callable  # (dispatcher, cancel_check) -> agent
    success: S
    auto_next: Optional[PipelineStep] = None


STAGES = {
    PipelineStep.PRODUCT_ANALYSIS: StageSpec(
        S.ANALYZING,
        lambda d, cancel: ProductAnalysisAgent(d.store, d.providers.wavespeed),
        S.ANALYSIS_REVIEW,
    ),
    PipelineStep.SCRIPTING: StageSpec(
        S.SCRIPTING,
        lambda d, cancel: ScriptingAgent(d.store, d.providers.wavespeed),
        S.SCRIPT_REVIEW,
    ),
    PipelineStep.BROLL_PLANNING: StageSpec(
        S.BROLL_PLANNING,
        lambda d, cancel: BrollPlanningAgent(d.store, d.providers.wavespeed),
        S.BROLL_REVIEW,
    ),
    PipelineStep.CASTING: StageSpec(
        S.CASTING,
        lambda d, cancel: CastingAgent(d.store, d.providers.wavespeed, cancel_check=cancel),
        S.CASTING_REVIEW,
    ),
    PipelineStep.DIRECTING: StageSpec(
        S.DIRECTING,
        lambda d, cancel: DirectorAgent(d.store, d.providers.wavespeed, cancel_check=cancel),
        S.VOICEOVER,
        auto_next=PipelineStep.VOICEOVER,
    ),
    PipelineStep.VOICEOVER: StageSpec(
        S.VOICEOVER,
        lambda d, cancel: VoiceoverAgent(d.store, d.providers.elevenlabs, upload=d.upload),
        S.BROLL_GENERATION,
        auto_next=PipelineStep.BROLL_GENERATION,
    ),
    PipelineStep.BROLL_GENERATION: StageSpec(
        S.BROLL_GENERATION,
        lambda d, cancel: BrollGenerationAgent(d.store, d.providers.wavespeed, cancel_check=cancel),
        S.ASSET_REVIEW,
    ),
    PipelineStep.EDITING: StageSpec(
        S.EDITING,
        lambda d, cancel: EditorAgent(d.store, d.providers.creatomate, cancel_check=cancel),
        S.COMPLETED,
    ),
}


class Dispatcher:
    """
    Routes a JobMessage to its stage handler.

    ``enqueue(project_id, step, fields)`` publishes follow-up jobs;
    ``upload`` overrides the voiceover artifact upload.
    """

    def __init__(self, store, providers, enqueue: Callable, upload: Optional[Callable] = None):
        self.store = store
        self.providers = providers
        self.enqueue = enqueue
        self.upload = upload

    async def handle(self, message: JobMessage):
        step = PipelineStep(message.step)
        if step is PipelineStep.REGENERATE_ASSET:
            await self._regenerate(message.project_id, list(message.fields.get("asset_ids") or []))
            return
        spec = STAGES.get(step)
        if spec is None:
            raise ValueError(f"No handler for step {step}")
        await self._run_stage(message.project_id, step, spec)

    # ── Status bookkeeping ───────────────────────────────────────────────

    def _enter(self, project_id: str, step: PipelineStep, spec: StageSpec) -> bool:
        """
        True if the project is already in the stage's in-progress status.

        start/approve/retry set that status before enqueueing, so any other
        status means the job is stale (redelivered after a rollback, cancel or
        failure) and must not move the project out of a gate on its own.
        """
        project = self.store.get_project(project_id)
        status = project.get("status")
        if status == spec.in_progress.value:
            return True
        reason = f"project is {status}, {step.value} runs only in {spec.in_progress.value}"
        logger.warning(f"[{project_id}] skipping {step.value} job: {reason}")
        audit.log_event(self.store, project_id, audit.JOB_SKIPPED, step.value, {
            "status": status,
            "reason": reason,
        })
        return False

    def _succeed(self, project_id: str, step: PipelineStep, spec: StageSpec):
        project = self.store.get_project(project_id)
        try:
            transition(self.store, project, spec.success)
        except InvalidTransition as e:
            # cancelled between the last poll and completion
            logger.warning(f"[{project_id}] {step.value} finished but status moved on: {e}")
            return
        if spec.auto_next is not None:
            self.enqueue(project_id, spec.auto_next, {})
            logger.info(f"[{project_id}] chained {step.value} → {spec.auto_next.value}")

    def _fail(self, project_id: str, step: PipelineStep, spec: StageSpec, error: Exception):
        message = str(error)[:2000]
        project = self.store.get_project(project_id)
        if can_transition(project.get("status"), S.FAILED):
            transition(
                self.store, project, S.FAILED,
                error_message=message,
                failed_at_status=spec.in_progress.value,
            )
        else:
            logger.warning(
                f"[{project_id}] {step.value} failed while project is {project.get('status')}; "
                "status left unchanged"
            )
        audit.log_event(self.store, project_id, audit.STAGE_FAILED, step.value, {
            "error": message,
            "errorType": type(error).__name__,
        })
        metrics.stage_event(step.value, "failed")
        metrics.record_error(step.value, type(error).__name__, message, project_id)

    # ── Run ──────────────────────────────────────────────────────────────

    async def _run_stage(self, project_id: str, step: PipelineStep, spec: StageSpec):
        if not self._enter(project_id, step, spec):
            return

        metrics.stage_event(step.value, "started")
        started = time.monotonic()
        agent = spec.build(self, self.store.cancel_checker(project_id))
        try:
            await agent.run(project_id)
        except CancellationSignal:
            logger.info(f"[{project_id}] {step.value} cancelled")
            audit.log_event(self.store, project_id, audit.STAGE_CANCELLED, step.value)
            metrics.stage_event(step.value, "cancelled")
            return
        except Exception as e:
            logger.error(f"[{project_id}] {step.value} failed: {e}", exc_info=True)
            self._fail(project_id, step, spec, e)
            raise
        finally:
            metrics.record_latency(step.value, (time.monotonic() - started) * 1000)

        self._succeed(project_id, step, spec)
        metrics.stage_event(step.value, "completed")

    # ── Asset regeneration ───────────────────────────────────────────────

    async def _regenerate(self, project_id: str, asset_ids: list):
        """
        Redo reviewed assets in place. The project status is never changed;
        a job whose project has left the gate is skipped and its open targets
        are failed. Pipeline errors are recorded and acked, anything else is
        re-raised for redelivery.
        """
        step = PipelineStep.REGENERATE_ASSET
        regenerator = AssetRegenerator(self.store, self.providers, upload=self.upload)
        status = self.store.get_project(project_id).get("status")
        wanted = set(asset_ids)
        rows = [row for row in self.store.list_assets(project_id) if row["id"] in wanted]
        if not rows or not all(regeneration_allowed(row["type"], status) for row in rows):
            reason = f"project is {status}, assets can no longer be regenerated"
            logger.warning(f"[{project_id}] skipping {step.value} job: {reason}")
            audit.log_event(self.store, project_id, audit.JOB_SKIPPED, step.value, {
                "status": status,
                "reason": reason,
                "assetIds": asset_ids,
            })
            regenerator.fail_open(project_id, asset_ids, reason)
            return

        metrics.stage_event(step.value, "started")
        started = time.monotonic()
        try:
            await regenerator.run(project_id, asset_ids)
        except PipelineError as e:
            message = str(e)[:2000]
            logger.error(f"[{project_id}] {step.value} failed: {message}")
            regenerator.fail_open(project_id, asset_ids, message)
            audit.log_event(self.store, project_id, audit.STAGE_FAILED, step.value, {
                "error": message,
                "errorType": type(e).__name__,
            })
            metrics.stage_event(step.value, "failed")
            metrics.record_error(step.value, type(e).__name__, message, project_id)
            return
        finally:
            metrics.record_latency(step.value, (time.monotonic() - started) * 1000)
        metrics.stage_event(step.value, "completed")
