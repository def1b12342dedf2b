"""
FastAPI routes for the review / recovery surface.

Project Endpoints:
  POST /projects/{id}/start     — created → analyzing
  POST /projects/{id}/approve   — leave the current review gate
  POST /projects/{id}/retry     — re-run the failed stage in place
  POST /projects/{id}/rollback  — failed → gate before the failed stage
  POST /projects/{id}/cancel    — stop the running stage at its next poll
  GET  /projects/{id}/progress  — status + per-stage counts
  POST /projects/{id}/segments/{index}/regenerate — new version of one script segment
  POST /projects/{id}/assets/regenerate — redo one reviewed asset (or a keyframe cascade)

Errors: unknown project or asset → 404, illegal status edge → 409, missing
prerequisite data → 422.
"""

import logging
from typing import Callable, Optional

from fastapi import APIRouter, HTTPException

from .errors import (
    AssetNotFound,
    InvalidTransition,
    ParseError,
    ProjectNotFound,
    ProviderError,
    ValidationError,
)
from .models import (
    ActionResponse,
    ProgressResponse,
    RegenerateAssetRequest,
    RegenerateAssetResponse,
    RegenerateSegmentRequest,
)
from .project_service import ProjectService

logger = logging.getLogger(__name__)

project_router = APIRouter(prefix="/projects", tags=["projects"])

# Set by main.py at startup (or by tests)
_service: Optional[ProjectService] = None
_service_factory: Optional[Callable[[], ProjectService]] = None


def configure(service: Optional[ProjectService] = None,
              factory: Optional[Callable[[], ProjectService]] = None):
    global _service, _service_factory
    _service = service
    _service_factory = factory


def get_service() -> ProjectService:
    global _service
    if _service is None:
        if _service_factory is None:
            raise HTTPException(status_code=503, detail="Project service not configured")
        _service = _service_factory()
    return _service


def _http_error(project_id: str, e: Exception) -> HTTPException:
    if isinstance(e, (ProjectNotFound, AssetNotFound)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidTransition):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, (ProviderError, ParseError)):
        return HTTPException(status_code=502, detail=str(e))
    logger.error(f"[{project_id}] request failed: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


def _action(project_id: str, fn) -> ActionResponse:
    try:
        return fn(project_id)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(project_id, e)


@project_router.post("/{project_id}/start", response_model=ActionResponse)
async def start_project(project_id: str):
    return _action(project_id, get_service().start)


@project_router.post("/{project_id}/approve", response_model=ActionResponse)
async def approve_project(project_id: str):
    return _action(project_id, get_service().approve)


@project_router.post("/{project_id}/retry", response_model=ActionResponse)
async def retry_project(project_id: str):
    return _action(project_id, get_service().retry)


@project_router.post("/{project_id}/rollback", response_model=ActionResponse)
async def rollback_project(project_id: str):
    return _action(project_id, get_service().rollback)


@project_router.post("/{project_id}/cancel", response_model=ActionResponse)
async def cancel_project(project_id: str):
    return _action(project_id, get_service().cancel)


@project_router.get("/{project_id}/progress", response_model=ProgressResponse)
async def project_progress(project_id: str):
    service = get_service()
    try:
        return service.get_progress(project_id)
    except Exception as e:
        raise _http_error(project_id, e)


@project_router.post("/{project_id}/segments/{segment_index}/regenerate")
async def regenerate_segment(project_id: str, segment_index: int, request: RegenerateSegmentRequest):
    """Regenerate one segment of a script under review."""
    try:
        scene = await get_service().regenerate_segment(
            project_id,
            request.script_id,
            segment_index,
            tone=request.tone,
            feedback=request.feedback,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(project_id, e)
    return {"status": "ok", "scene": scene}


@project_router.post("/{project_id}/assets/regenerate", response_model=RegenerateAssetResponse)
async def regenerate_asset(project_id: str, request: RegenerateAssetRequest):
    """Send a reviewed asset back for another take; ``cascade`` includes every later keyframe."""
    return _action(
        project_id,
        lambda pid: get_service().regenerate_asset(pid, request.asset_id, cascade=request.cascade),
    )
