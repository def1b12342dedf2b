"""
Project status state machine.

The adjacency list below is the only place status edges are defined.
Review gates are sinks for automatic progression: only ``approve`` moves a
project out of one. Active stages are left by the stage handler on success
or failure, or by a cancel request (back to the stage's rollback gate).
"""

import logging

from .errors import InvalidTransition
from .models import ProjectStatus as S, PipelineStep

logger = logging.getLogger(__name__)


REVIEW_GATES = frozenset({
    S.ANALYSIS_REVIEW,
    S.SCRIPT_REVIEW,
    S.BROLL_REVIEW,
    S.INFLUENCER_SELECTION,
    S.CASTING_REVIEW,
    S.ASSET_REVIEW,
})

ACTIVE_STAGES = frozenset({
    S.ANALYZING,
    S.SCRIPTING,
    S.BROLL_PLANNING,
    S.CASTING,
    S.DIRECTING,
    S.VOICEOVER,
    S.BROLL_GENERATION,
    S.EDITING,
})

# Where a failed or cancelled stage goes back to
ROLLBACK_GATES = {
    S.ANALYZING: S.CREATED,
    S.SCRIPTING: S.ANALYSIS_REVIEW,
    S.BROLL_PLANNING: S.SCRIPT_REVIEW,
    S.CASTING: S.INFLUENCER_SELECTION,
    S.DIRECTING: S.CASTING_REVIEW,
    S.VOICEOVER: S.CASTING_REVIEW,
    S.BROLL_GENERATION: S.CASTING_REVIEW,
    S.EDITING: S.ASSET_REVIEW,
}

# Gate → status entered on approval
APPROVALS = {
    S.ANALYSIS_REVIEW: S.SCRIPTING,
    S.SCRIPT_REVIEW: S.BROLL_PLANNING,
    S.BROLL_REVIEW: S.INFLUENCER_SELECTION,
    S.INFLUENCER_SELECTION: S.CASTING,
    S.CASTING_REVIEW: S.DIRECTING,
    S.ASSET_REVIEW: S.EDITING,
}

STAGE_STEPS = {
    S.ANALYZING: PipelineStep.PRODUCT_ANALYSIS,
    S.SCRIPTING: PipelineStep.SCRIPTING,
    S.BROLL_PLANNING: PipelineStep.BROLL_PLANNING,
    S.CASTING: PipelineStep.CASTING,
    S.DIRECTING: PipelineStep.DIRECTING,
    S.VOICEOVER: PipelineStep.VOICEOVER,
    S.BROLL_GENERATION: PipelineStep.BROLL_GENERATION,
    S.EDITING: PipelineStep.EDITING,
}

STEP_STATUSES = {step: status for status, step in STAGE_STEPS.items()}

VALID_STATUS_TRANSITIONS: dict[S, frozenset] = {
    S.CREATED: frozenset({S.ANALYZING}),
    S.ANALYZING: frozenset({S.ANALYSIS_REVIEW, S.FAILED, S.CREATED}),
    S.ANALYSIS_REVIEW: frozenset({S.SCRIPTING}),
    S.SCRIPTING: frozenset({S.SCRIPT_REVIEW, S.FAILED, S.ANALYSIS_REVIEW}),
    S.SCRIPT_REVIEW: frozenset({S.BROLL_PLANNING}),
    S.BROLL_PLANNING: frozenset({S.BROLL_REVIEW, S.FAILED, S.SCRIPT_REVIEW}),
    S.BROLL_REVIEW: frozenset({S.INFLUENCER_SELECTION}),
    S.INFLUENCER_SELECTION: frozenset({S.CASTING}),
    S.CASTING: frozenset({S.CASTING_REVIEW, S.FAILED, S.INFLUENCER_SELECTION}),
    S.CASTING_REVIEW: frozenset({S.DIRECTING}),
    S.DIRECTING: frozenset({S.VOICEOVER, S.FAILED, S.CASTING_REVIEW}),
    S.VOICEOVER: frozenset({S.BROLL_GENERATION, S.FAILED, S.CASTING_REVIEW}),
    S.BROLL_GENERATION: frozenset({S.ASSET_REVIEW, S.FAILED, S.CASTING_REVIEW}),
    S.ASSET_REVIEW: frozenset({S.EDITING}),
    S.EDITING: frozenset({S.COMPLETED, S.FAILED, S.ASSET_REVIEW}),
    S.COMPLETED: frozenset(),
    S.FAILED: ACTIVE_STAGES | frozenset(ROLLBACK_GATES.values()),
}


def can_transition(from_status, to_status) -> bool:
    """Pure adjacency check. Unknown statuses have no edges."""
    try:
        src = S(from_status)
        dst = S(to_status)
    except ValueError:
        return False
    return dst in VALID_STATUS_TRANSITIONS[src]


def transition(store, project: dict, to_status, **fields) -> dict:
    """
    Move ``project`` to ``to_status`` and persist it with any extra ``fields``.

    Raises InvalidTransition (and writes nothing) if the edge does not exist.
    Returns the updated project row.
    """
    current = project.get("status")
    target = S(to_status)
    if not can_transition(current, target):
        raise InvalidTransition(str(current), target.value)

    update = {"status": target.value, **fields}
    store.update_project(project["id"], update)
    logger.info(f"[{project['id']}] status {current} → {target.value}")
    return {**project, **update}
