"""
Per-project cost ledger.

The normal path is the ``increment_project_cost`` RPC, which adds to
project.cost_usd in a single statement. If the RPC is missing or errors, the
ledger falls back to read-then-write. That fallback can lose an increment
when two writers interleave, so every use of it is logged as degraded.
"""

import logging

from . import audit

logger = logging.getLogger(__name__)


def track_cost(store, project_id: str, amount: float) -> None:
    """Add ``amount`` USD to the project's running cost. Negative amounts are ignored."""
    if amount <= 0:
        return
    amount = round(amount, 4)

    try:
        store.increment_cost(project_id, amount)
        return
    except Exception as e:
        logger.warning(
            f"[{project_id}] increment_project_cost RPC failed ({e}); "
            f"using non-atomic read-then-write (degraded)"
        )

    project = store.get_project(project_id)
    current = float(project.get("cost_usd") or 0)
    store.update_project(project_id, {"cost_usd": round(current + amount, 4)})
    audit.log_event(
        store, project_id, audit.COST_FALLBACK, "cost",
        {"amount": amount, "previous": current, "degraded": True},
    )
