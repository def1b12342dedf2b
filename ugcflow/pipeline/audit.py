"""
Audit events → generation_log.

Writes are best-effort: a failed insert is logged and swallowed so that a
flaky log table can never fail a stage.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Event types written by the pipeline
STAGE_START = "stage_start"
STAGE_COMPLETE = "stage_complete"
STAGE_FAILED = "stage_failed"
STAGE_CANCELLED = "stage_cancelled"
JOB_SKIPPED = "job_skipped"
SEGMENT_ERROR = "segment_error"
JSON_PARSE_FAILURE = "json_parse_failure"
AUDIO_DURATION_WARNING = "audio_duration_warning"
RENDER_RETRY = "render_retry"
ASSET_VALIDATION_ERROR = "asset_validation_error"
VOICE_SELECTED = "voice_selected"
SEGMENT_REGENERATED = "segment_regenerated"
ASSET_REGENERATION_REQUESTED = "asset_regeneration_requested"
ASSET_REGENERATED = "asset_regenerated"
ASSET_VALIDATION_WARNING = "asset_validation_warning"
COST_FALLBACK = "cost_fallback"


def log_event(
    store,
    project_id: str,
    event_type: str,
    stage: str,
    detail: Optional[dict] = None,
    agent_name: str = "",
) -> None:
    """Append one audit event. Never raises."""
    try:
        store.insert_event({
            "project_id": project_id,
            "event_type": event_type,
            "agent_name": agent_name,
            "stage": stage,
            "detail": detail or {},
        })
    except Exception as e:
        logger.warning(f"[{project_id}] audit event {event_type}/{stage} not written: {e}")
