"""
Pydantic models and enums for the ad pipeline.
"""

from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field

from .. import config


# ── Project Status ───────────────────────────────────────────────────────────

class ProjectStatus(str, Enum):
    CREATED = "created"
    ANALYZING = "analyzing"
    ANALYSIS_REVIEW = "analysis_review"
    SCRIPTING = "scripting"
    SCRIPT_REVIEW = "script_review"
    BROLL_PLANNING = "broll_planning"
    BROLL_REVIEW = "broll_review"
    INFLUENCER_SELECTION = "influencer_selection"
    CASTING = "casting"
    CASTING_REVIEW = "casting_review"
    DIRECTING = "directing"
    VOICEOVER = "voiceover"
    BROLL_GENERATION = "broll_generation"
    ASSET_REVIEW = "asset_review"
    EDITING = "editing"
    COMPLETED = "completed"
    FAILED = "failed"


# ── Job Steps ────────────────────────────────────────────────────────────────

class PipelineStep(str, Enum):
    PRODUCT_ANALYSIS = "product_analysis"
    SCRIPTING = "scripting"
    BROLL_PLANNING = "broll_planning"
    CASTING = "casting"
    DIRECTING = "directing"
    VOICEOVER = "voiceover"
    BROLL_GENERATION = "broll_generation"
    EDITING = "editing"
    # not a stage: redo of reviewed assets while the project waits at a gate
    REGENERATE_ASSET = "regenerate_asset"


# ── Assets ───────────────────────────────────────────────────────────────────

class AssetType(str, Enum):
    KEYFRAME_START = "keyframe_start"
    KEYFRAME_END = "keyframe_end"
    VIDEO = "video"
    AUDIO = "audio"
    BROLL = "broll"
    FINAL_VIDEO = "final_video"


class AssetStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ── Durable Job Message ──────────────────────────────────────────────────────

class JobMessage(BaseModel):
    """One stage job as carried on the queue."""
    project_id: str
    step: PipelineStep
    fields: dict[str, Any] = Field(default_factory=dict)


# ── Pipeline Configuration ───────────────────────────────────────────────────

class VideoModel(BaseModel):
    """Per-project pipeline shape. Falls back to the worker defaults."""
    segment_count: int = config.SEGMENT_COUNT
    segment_duration: int = config.SEGMENT_DURATION
    shots_per_segment: int = config.SHOTS_PER_SEGMENT
    section_names: list[str] = Field(default_factory=lambda: list(config.SECTION_NAMES))
    energy_arc: list[dict] = Field(default_factory=lambda: list(config.ENERGY_ARC))
    product_placement_arc: list[dict] = Field(
        default_factory=lambda: list(config.PRODUCT_PLACEMENT_ARC)
    )

    @classmethod
    def for_project(cls, project: dict) -> "VideoModel":
        return cls(**(project.get("video_model") or {}))

    def visibility(self, segment_index: int) -> str:
        if segment_index < len(self.product_placement_arc):
            return self.product_placement_arc[segment_index].get("visibility", "none")
        return "none"

    def energy(self, segment_index: int) -> dict:
        if segment_index < len(self.energy_arc):
            return self.energy_arc[segment_index]
        return {"start": "LOW", "middle": "PEAK", "end": "LOW"}


# ── API Request / Response Models ────────────────────────────────────────────

class RegenerateSegmentRequest(BaseModel):
    script_id: str
    tone: Optional[str] = None
    feedback: Optional[str] = None


class RegenerateAssetRequest(BaseModel):
    asset_id: str
    cascade: bool = False


class StageProgress(BaseModel):
    completed: int = 0
    failed: int = 0
    total: int = 0
    degraded: bool = False


class ProgressResponse(BaseModel):
    project_id: str
    status: ProjectStatus
    failed_at_status: Optional[str] = None
    error_message: Optional[str] = None
    cost_usd: float = 0.0
    cancel_requested: bool = False
    stages: dict[str, StageProgress] = Field(default_factory=dict)


class ActionResponse(BaseModel):
    project_id: str
    status: ProjectStatus
    enqueued_step: Optional[PipelineStep] = None


class RegenerateAssetResponse(ActionResponse):
    asset_id: str
    cascade: bool = False
    affected_assets: list[str] = Field(default_factory=list)
    cancelled_videos: list[str] = Field(default_factory=list)
