"""
Supabase persistence for the pipeline.

All reads and writes go through the service-role client (RLS bypass).
Tables: project, script, scene, asset, broll_shot, influencer, ai_character,
generation_log. The one atomic operation is the ``increment_project_cost``
RPC used by the cost ledger.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from supabase import create_client, Client

from .. import config
from .errors import AssetNotFound, ProjectNotFound
from .models import AssetStatus
from .versions import current_view, next_version

logger = logging.getLogger(__name__)

# ── Supabase Service Client (bypasses RLS) ───────────────────────────────────

_service_client: Optional[Client] = None


def _get_service_client() -> Client:
    """Lazy-init Supabase client using service role key."""
    global _service_client
    if _service_client is None:
        if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE_KEY:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE_KEY)
    return _service_client


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProjectStore:
    """Thin data-access layer over the Supabase table API."""

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def sb(self) -> Client:
        if self._client is None:
            self._client = _get_service_client()
        return self._client

    # ── Project ──────────────────────────────────────────────────────────

    def get_project(self, project_id: str) -> dict:
        result = self.sb.table("project").select("*").eq("id", project_id).limit(1).execute()
        if not result.data:
            raise ProjectNotFound(f"Project not found: {project_id}")
        return result.data[0]

    def update_project(self, project_id: str, fields: dict):
        self.sb.table("project").update({**fields, "updated_at": _now_iso()}).eq(
            "id", project_id
        ).execute()

    def is_cancel_requested(self, project_id: str) -> bool:
        result = (
            self.sb.table("project")
            .select("cancel_requested_at")
            .eq("id", project_id)
            .limit(1)
            .execute()
        )
        return bool(result.data and result.data[0].get("cancel_requested_at"))

    def cancel_checker(self, project_id: str):
        """Predicate consulted by poll loops between iterations."""
        return lambda: self.is_cancel_requested(project_id)

    def increment_cost(self, project_id: str, amount: float):
        """Atomic server-side increment of project.cost_usd."""
        self.sb.rpc(
            "increment_project_cost",
            {"p_project_id": project_id, "p_amount": amount},
        ).execute()

    # ── Identities ───────────────────────────────────────────────────────

    def get_influencer(self, influencer_id: str) -> Optional[dict]:
        result = self.sb.table("influencer").select("*").eq("id", influencer_id).limit(1).execute()
        return result.data[0] if result.data else None

    def get_character(self, character_id: str) -> Optional[dict]:
        result = self.sb.table("ai_character").select("*").eq("id", character_id).limit(1).execute()
        return result.data[0] if result.data else None

    # ── Scripts ──────────────────────────────────────────────────────────

    def list_scripts(self, project_id: str) -> list[dict]:
        result = self.sb.table("script").select("*").eq("project_id", project_id).execute()
        return result.data or []

    def next_script_version(self, project_id: str) -> int:
        return next_version(self.list_scripts(project_id))

    def latest_script(self, project_id: str) -> Optional[dict]:
        result = (
            self.sb.table("script")
            .select("*")
            .eq("project_id", project_id)
            .order("version", desc=True)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def get_script(self, script_id: str) -> Optional[dict]:
        result = self.sb.table("script").select("*").eq("id", script_id).limit(1).execute()
        return result.data[0] if result.data else None

    def insert_script(self, row: dict) -> dict:
        result = self.sb.table("script").insert(row).execute()
        return result.data[0]

    def update_script(self, script_id: str, fields: dict):
        self.sb.table("script").update(fields).eq("id", script_id).execute()

    # ── Scenes ───────────────────────────────────────────────────────────

    def scene_rows(self, script_id: str) -> list[dict]:
        result = self.sb.table("scene").select("*").eq("script_id", script_id).execute()
        return result.data or []

    def current_scenes(self, script_id: str) -> list[dict]:
        return current_view(self.scene_rows(script_id))

    def next_scene_version(self, script_id: str, segment_index: int) -> int:
        rows = [r for r in self.scene_rows(script_id) if r["segment_index"] == segment_index]
        return next_version(rows)

    def insert_scenes(self, rows: list[dict]) -> list[dict]:
        result = self.sb.table("scene").insert(rows).execute()
        return result.data or []

    def update_scene(self, scene_id: str, fields: dict):
        self.sb.table("scene").update(fields).eq("id", scene_id).execute()

    # ── Assets ───────────────────────────────────────────────────────────

    def insert_asset(self, row: dict) -> dict:
        result = self.sb.table("asset").insert(row).execute()
        return result.data[0]

    def get_asset(self, project_id: str, asset_id: str) -> dict:
        result = (
            self.sb.table("asset").select("*")
            .eq("id", asset_id).eq("project_id", project_id)
            .limit(1).execute()
        )
        if not result.data:
            raise AssetNotFound(f"Asset not found: {asset_id}")
        return result.data[0]

    def update_asset(self, asset_id: str, fields: dict):
        self.sb.table("asset").update({**fields, "updated_at": _now_iso()}).eq(
            "id", asset_id
        ).execute()

    def update_assets(self, asset_ids: Iterable[str], fields: dict):
        asset_ids = list(asset_ids)
        if not asset_ids:
            return
        self.sb.table("asset").update({**fields, "updated_at": _now_iso()}).in_(
            "id", asset_ids
        ).execute()

    def list_assets(
        self,
        project_id: str,
        types: Optional[Iterable[str]] = None,
        statuses: Optional[Iterable[str]] = None,
    ) -> list[dict]:
        query = self.sb.table("asset").select("*").eq("project_id", project_id)
        if types is not None:
            query = query.in_("type", list(types))
        if statuses is not None:
            query = query.in_("status", list(statuses))
        return query.execute().data or []

    def delete_assets(
        self,
        project_id: str,
        types: Iterable[str],
        statuses: Optional[Iterable[str]] = None,
    ):
        query = self.sb.table("asset").delete().eq("project_id", project_id).in_("type", list(types))
        if statuses is not None:
            query = query.in_("status", list(statuses))
        query.execute()

    def cancel_open_assets(self, project_id: str):
        self.sb.table("asset").update(
            {"status": AssetStatus.CANCELLED.value, "updated_at": _now_iso()}
        ).eq("project_id", project_id).in_(
            "status", [AssetStatus.PENDING.value, AssetStatus.GENERATING.value]
        ).execute()

    # ── B-roll shots ─────────────────────────────────────────────────────

    def list_broll_shots(
        self,
        project_id: str,
        statuses: Optional[Iterable[str]] = None,
        source: Optional[str] = None,
    ) -> list[dict]:
        query = self.sb.table("broll_shot").select("*").eq("project_id", project_id)
        if source is not None:
            query = query.eq("source", source)
        if statuses is not None:
            query = query.in_("status", list(statuses))
        rows = query.execute().data or []
        return sorted(rows, key=lambda r: (r.get("segment_index", 0), r.get("shot_index", 0)))

    def insert_broll_shots(self, rows: list[dict]) -> list[dict]:
        result = self.sb.table("broll_shot").insert(rows).execute()
        return result.data or []

    def update_broll_shot(self, shot_id: str, fields: dict):
        self.sb.table("broll_shot").update(fields).eq("id", shot_id).execute()

    def delete_broll_shots(self, project_id: str, source: str):
        self.sb.table("broll_shot").delete().eq("project_id", project_id).eq(
            "source", source
        ).execute()

    # ── Audit log ────────────────────────────────────────────────────────

    def insert_event(self, row: dict):
        self.sb.table("generation_log").insert(row).execute()
