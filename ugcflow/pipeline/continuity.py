"""
Continuity and idempotency helpers shared by the stage agents.

  - cleanup_outputs: delete re-creatable outputs before a stage regenerates them
  - ContinuityChain: carry the last successful unit's output into the next unit
  - retry_unit:      small fixed number of retries inside one unit of work
  - BatchOutcome / finish_batch: the stage fails only if no unit succeeded
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .. import metrics
from . import audit
from .errors import CancellationSignal, StageFailure, ValidationError

logger = logging.getLogger(__name__)


# ── Pre-stage cleanup ────────────────────────────────────────────────────────

def cleanup_outputs(
    store,
    project_id: str,
    asset_types: Iterable[str],
    statuses: Optional[Iterable[str]] = None,
):
    """Remove existing assets of ``asset_types`` so a re-run starts clean."""
    asset_types = [getattr(t, "value", t) for t in asset_types]
    if statuses is not None:
        statuses = [getattr(s, "value", s) for s in statuses]
    store.delete_assets(project_id, asset_types, statuses)
    logger.info(f"[{project_id}] cleared previous {', '.join(asset_types)} assets")


# ── Chaining ─────────────────────────────────────────────────────────────────

class ContinuityChain:
    """
    Reference to the previous successful unit's terminal output.

    Only ``advance`` changes it; a failed unit leaves the last good
    reference in place for the next unit.
    """

    def __init__(self, initial: Optional[str] = None):
        self.reference = initial

    def advance(self, output_url: Optional[str]):
        if output_url:
            self.reference = output_url

    def references(self, *base: Optional[str]) -> list[str]:
        refs = [ref for ref in base if ref]
        if self.reference and self.reference not in refs:
            refs.append(self.reference)
        return refs


# ── Per-unit retries ─────────────────────────────────────────────────────────

async def retry_unit(fn, attempts: int, delay: float, project_id: str = "", label: str = ""):
    """
    Await ``fn()`` up to ``attempts`` times with a flat ``delay`` between tries.

    Validation errors are not retried; cancellation always propagates.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except (CancellationSignal, ValidationError):
            raise
        except Exception as e:
            if attempt >= attempts:
                raise
            logger.warning(
                f"[{project_id}] {label} attempt {attempt}/{attempts} failed: {e} "
                f"— retrying in {delay}s"
            )
            await asyncio.sleep(delay)


# ── Batch outcome ────────────────────────────────────────────────────────────

@dataclass
class BatchOutcome:
    total: int = 0
    completed: int = 0
    failed: int = 0
    errors: list = field(default_factory=list)

    def record(self, ok: bool, error: str = ""):
        if ok:
            self.completed += 1
        else:
            self.failed += 1
            if error:
                self.errors.append(error)

    @property
    def degraded(self) -> bool:
        return self.completed > 0 and self.failed > 0


def finish_batch(
    store,
    project_id: str,
    stage: str,
    outcome: BatchOutcome,
    started_at: float,
    agent_name: str = "",
    **detail,
) -> BatchOutcome:
    """Raise StageFailure iff nothing succeeded; otherwise record (k, N-k)."""
    duration_ms = int((time.monotonic() - started_at) * 1000)
    metrics.record_batch(stage, outcome.completed, outcome.failed)
    if outcome.completed == 0:
        reasons = "; ".join(outcome.errors[:3])
        raise StageFailure(f"All {outcome.total} {stage} units failed. {reasons}".strip())

    audit.log_event(store, project_id, audit.STAGE_COMPLETE, stage, {
        "durationMs": duration_ms,
        "completed": outcome.completed,
        "failed": outcome.failed,
        "total": outcome.total,
        "degraded": outcome.degraded,
        **detail,
    }, agent_name=agent_name)

    if outcome.degraded:
        logger.warning(
            f"[{project_id}] {stage} finished degraded: "
            f"{outcome.completed}/{outcome.total} succeeded"
        )
    else:
        logger.info(f"[{project_id}] {stage} complete: {outcome.completed}/{outcome.total}")
    return outcome
