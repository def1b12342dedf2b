"""
UGC ad pipeline

Stage-by-stage orchestration of a 60-second UGC video ad:
  Analysis → Script → B-roll plan → Casting → Directing → Voiceover → B-roll → Editing
  Review gates between stages, retry/rollback/cancel recovery, per-stage progress
"""

from .handlers import Dispatcher
from .project_service import ProjectService
from .routes import project_router
from .models import PipelineStep, ProjectStatus

__all__ = [
    "Dispatcher",
    "ProjectService",
    "project_router",
    "PipelineStep",
    "ProjectStatus",
]
