"""
Unit-of-work plumbing for stage agents.

A stage splits into units (a segment, a shot). Each unit owns one or more
AssetSlots, runs through ``run_unit`` (retries + isolation), and polls its
provider tasks with ``await_output``. A unit's failure becomes failed asset
rows and a ``segment_error`` event; it never aborts the sibling units.
"""

import logging
from typing import Optional

from . import audit
from .errors import CancellationSignal, ProviderError, ValidationError
from .models import AssetStatus
from .continuity import retry_unit

logger = logging.getLogger(__name__)


class AssetSlot:
    """
    One output row of a unit.

    The row is inserted on the first submission and reused by retries, so a
    unit never leaves more than one row per output type behind.
    """

    def __init__(
        self,
        store,
        project_id: str,
        asset_type: str,
        provider: str,
        scene_id: Optional[str] = None,
        cost_usd: float = 0.0,
        metadata: Optional[dict] = None,
    ):
        self.store = store
        self.project_id = project_id
        self.asset_type = getattr(asset_type, "value", asset_type)
        self.provider = provider
        self.scene_id = scene_id
        self.cost_usd = cost_usd
        self.metadata = dict(metadata or {})
        self.asset_id: Optional[str] = None
        self.status: Optional[str] = None
        self.url: Optional[str] = None

    @classmethod
    def adopt(cls, store, row: dict) -> "AssetSlot":
        """A slot over an existing row; regeneration overwrites it in place."""
        slot = cls(
            store,
            row["project_id"],
            row["type"],
            row.get("provider") or "",
            scene_id=row.get("scene_id"),
            cost_usd=float(row.get("cost_usd") or 0),
            metadata=row.get("metadata"),
        )
        slot.asset_id = row["id"]
        slot.status = row.get("status")
        slot.url = row.get("url")
        return slot

    @property
    def done(self) -> bool:
        return self.status == AssetStatus.COMPLETED.value

    def _write(self, fields: dict):
        fields = {**fields, "metadata": self.metadata}
        if self.asset_id is None:
            row = self.store.insert_asset({
                "project_id": self.project_id,
                "scene_id": self.scene_id,
                "type": self.asset_type,
                "provider": self.provider,
                "cost_usd": self.cost_usd,
                **fields,
            })
            self.asset_id = row["id"]
        else:
            self.store.update_asset(self.asset_id, fields)
        self.status = fields["status"]

    def submitted(self, task_id: str):
        self._write({
            "status": AssetStatus.GENERATING.value,
            "provider_task_id": task_id,
            "url": None,
        })

    def completed(self, url: str, **metadata):
        self.metadata.update(metadata)
        self.metadata.pop("error", None)
        self.url = url
        self._write({"status": AssetStatus.COMPLETED.value, "url": url})

    def failed(self, error: str):
        self.metadata["error"] = error[:1000]
        self._write({"status": AssetStatus.FAILED.value})


async def await_output(provider, task_id: str, tuning, cancel_check=None, project_id: str = "") -> str:
    """Poll a provider task to a URL. Cancellation becomes CancellationSignal."""
    result = await provider.poll_result(
        task_id,
        max_wait=tuning.poll_max_wait,
        interval=tuning.poll_interval,
        cancel_check=cancel_check,
    )
    if result.cancelled:
        raise CancellationSignal(project_id)
    if not result.url:
        raise ProviderError(getattr(provider, "name", "provider"), f"task {task_id} completed without an output URL")
    return result.url


async def run_unit(
    attempt_fn,
    slots: list,
    *,
    store,
    project_id: str,
    stage: str,
    unit: dict,
    tuning,
    agent_name: str = "",
) -> tuple[bool, str]:
    """
    Run one unit with retries. Returns (ok, error).

    Slots still generating after a failed attempt are marked failed before the
    next attempt; after the last attempt every unfinished slot is failed.
    """

    async def attempt():
        try:
            await attempt_fn()
        except CancellationSignal:
            raise
        except Exception as e:
            for slot in slots:
                if slot.status == AssetStatus.GENERATING.value:
                    slot.failed(str(e))
            raise

    label = f"{stage} {unit}"
    try:
        await retry_unit(
            attempt, tuning.unit_attempts, tuning.unit_retry_delay,
            project_id=project_id, label=label,
        )
        return True, ""
    except CancellationSignal:
        raise
    except Exception as e:
        error = str(e)
        for slot in slots:
            if not slot.done and slot.status != AssetStatus.FAILED.value:
                slot.failed(error)
        logger.error(f"[{project_id}] {label} failed: {error}")
        audit.log_event(store, project_id, audit.SEGMENT_ERROR, stage, {
            **unit,
            "error": error,
            "errorType": type(e).__name__,
        }, agent_name=agent_name)
        return False, error


def load_current_script(store, project_id: str) -> tuple[dict, list[dict]]:
    """Latest script and its current scenes. ValidationError if either is missing."""
    script = store.latest_script(project_id)
    if not script:
        raise ValidationError(f"No script found for project {project_id}")
    scenes = store.current_scenes(script["id"])
    if not scenes:
        raise ValidationError(f"Script {script['id']} has no scenes")
    return script, scenes
