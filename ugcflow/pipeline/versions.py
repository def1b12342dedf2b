"""
Append-only versioning helpers.

Scripts are versioned per project; scenes per (script, segment_index).
Nothing here mutates or deletes a prior version: the "current view" is a
read-time projection that keeps the highest version per segment.
"""

from typing import Iterable


def next_version(rows: Iterable[dict]) -> int:
    """max(existing versions) + 1, or 1 when there are none."""
    versions = [row.get("version") or 0 for row in rows]
    return max(versions, default=0) + 1


def current_view(scene_rows: Iterable[dict]) -> list[dict]:
    """One row per segment_index (the max version), sorted by segment_index."""
    latest: dict[int, dict] = {}
    for row in scene_rows:
        idx = row["segment_index"]
        kept = latest.get(idx)
        if kept is None or (row.get("version") or 0) > (kept.get("version") or 0):
            latest[idx] = row
    return [latest[idx] for idx in sorted(latest)]


def full_text(scenes: Iterable[dict]) -> str:
    """Denormalized script text: current scene texts joined by blank lines."""
    return "\n\n".join(scene.get("script_text", "") for scene in scenes)
