"""
Redis-backed FIFO stage-job queue with reliable delivery.

Uses the reliable-queue pattern so a job is never in limbo:
  1. LPUSH → `ugcflow:jobs`               (enqueue)
  2. BLMOVE → `ugcflow:processing`         (atomic dequeue + in-flight tracking)
  3. LREM from processing on success       (ack)
  4. Requeue or → `ugcflow:dead_letter` after 3 failures (nack)

Keys:
  ugcflow:jobs             — pending job ids (Redis list, FIFO)
  ugcflow:processing       — in-flight job ids (Redis list)
  ugcflow:dead_letter      — permanently failed job ids (Redis list)
  ugcflow:meta:{job_id}    — project_id, step, JSON fields (Redis hash, TTL 2h)

Delivery is at-least-once. A redelivered job whose stage already finished is
rejected by the status state machine and acknowledged.
"""

import json
import time
import uuid
import logging
from typing import Optional

from .pipeline.models import JobMessage

logger = logging.getLogger(__name__)

QUEUE_KEY = "ugcflow:jobs"
PROCESSING_KEY = "ugcflow:processing"
DEAD_LETTER_KEY = "ugcflow:dead_letter"
META_PREFIX = "ugcflow:meta:"
META_TTL = 7200

MAX_RETRIES = 3
STALE_TASK_TIMEOUT = 1800  # directing + render can legitimately run 20+ minutes


def _decode(value):
    return value.decode("utf-8") if isinstance(value, bytes) else value


# ── Enqueue ───────────────────────────────────────────────────────────────────

def enqueue_job(redis_client, project_id: str, step, fields: Optional[dict] = None) -> str:
    """Add a stage job to the back of the queue. Returns the job id."""
    step = getattr(step, "value", step)
    job_id = str(uuid.uuid4())
    meta = {
        "project_id": project_id,
        "step": step,
        "payload": json.dumps(fields or {}),
        "enqueued_at": str(time.time()),
        "status": "queued",
        "retries": "0",
    }

    pipe = redis_client.pipeline(transaction=True)
    meta_key = f"{META_PREFIX}{job_id}"
    pipe.hset(meta_key, mapping=meta)
    pipe.expire(meta_key, META_TTL)
    pipe.lpush(QUEUE_KEY, job_id)
    pipe.execute()

    logger.info(f"[{project_id}] enqueued {step} job {job_id}")
    return job_id


# ── Reliable Dequeue ──────────────────────────────────────────────────────────

def dequeue_job(redis_client, timeout: int = 5) -> Optional[str]:
    """Atomically move a job from pending to processing. None on timeout."""
    result = redis_client.blmove(
        QUEUE_KEY, PROCESSING_KEY,
        timeout=timeout,
        src="RIGHT", dest="LEFT",
    )
    if result is None:
        return None

    job_id = _decode(result)
    redis_client.hset(f"{META_PREFIX}{job_id}", "processing_started_at", str(time.time()))
    logger.info(f"Dequeued job {job_id} → processing")
    return job_id


def job_message(meta: dict) -> JobMessage:
    return JobMessage(
        project_id=meta["project_id"],
        step=meta["step"],
        fields=json.loads(meta.get("payload") or "{}"),
    )


# ── Ack / Nack ────────────────────────────────────────────────────────────────

def ack_job(redis_client, job_id: str):
    redis_client.lrem(PROCESSING_KEY, 1, job_id)
    update_job_status(redis_client, job_id, "completed")
    logger.info(f"Acked job {job_id}")


def nack_job(redis_client, job_id: str, error_msg: str = ""):
    """
    Negative-acknowledge a failed job.
    Requeues until MAX_RETRIES, then moves it to the dead-letter list.
    """
    meta_key = f"{META_PREFIX}{job_id}"
    retries = int(redis_client.hget(meta_key, "retries") or 0) + 1
    redis_client.hset(meta_key, "retries", str(retries))
    if error_msg:
        redis_client.hset(meta_key, "last_error", error_msg[:500])

    redis_client.lrem(PROCESSING_KEY, 1, job_id)

    if retries < MAX_RETRIES:
        redis_client.lpush(QUEUE_KEY, job_id)
        update_job_status(redis_client, job_id, "queued")
        logger.warning(f"Nacked job {job_id} (retry {retries}/{MAX_RETRIES}), requeued")
    else:
        redis_client.lpush(DEAD_LETTER_KEY, job_id)
        update_job_status(redis_client, job_id, "dead_letter")
        logger.error(f"Job {job_id} moved to dead-letter queue after {MAX_RETRIES} failures: {error_msg}")


# ── Stale Job Recovery ────────────────────────────────────────────────────────

def recover_stale_jobs(redis_client) -> int:
    """
    Move jobs in-flight longer than STALE_TASK_TIMEOUT back to pending.
    Orphans without metadata are dropped. Returns the number recovered.
    """
    recovered = 0
    now = time.time()

    for item in redis_client.lrange(PROCESSING_KEY, 0, -1):
        job_id = _decode(item)
        meta = get_job_meta(redis_client, job_id)

        if not meta:
            redis_client.lrem(PROCESSING_KEY, 1, job_id)
            logger.warning(f"Removed orphaned job {job_id} from processing (no metadata)")
            continue

        started_at = float(meta.get("processing_started_at", 0))
        if started_at > 0 and (now - started_at) > STALE_TASK_TIMEOUT:
            redis_client.lrem(PROCESSING_KEY, 1, job_id)
            redis_client.lpush(QUEUE_KEY, job_id)
            update_job_status(redis_client, job_id, "queued")
            recovered += 1
            logger.warning(
                f"Recovered stale job {job_id} (in-flight {int(now - started_at)}s > {STALE_TASK_TIMEOUT}s)"
            )

    if recovered:
        logger.info(f"Recovered {recovered} stale job(s) from processing queue")
    return recovered


# ── Metadata Helpers ──────────────────────────────────────────────────────────

def get_queue_position(redis_client, job_id: str) -> Optional[int]:
    """1-based position in the pending queue, None if not pending."""
    items = redis_client.lrange(QUEUE_KEY, 0, -1)
    for i, item in enumerate(items):
        if _decode(item) == job_id:
            # popped from the right, so rightmost = next
            return len(items) - i
    return None


def get_queue_length(redis_client) -> int:
    return redis_client.llen(QUEUE_KEY)


def get_processing_count(redis_client) -> int:
    return redis_client.llen(PROCESSING_KEY)


def get_job_meta(redis_client, job_id: str) -> Optional[dict]:
    data = redis_client.hgetall(f"{META_PREFIX}{job_id}")
    if not data:
        return None
    return {_decode(k): _decode(v) for k, v in data.items()}


def update_job_status(redis_client, job_id: str, status: str):
    redis_client.hset(f"{META_PREFIX}{job_id}", "status", status)


# ── ETA Estimation ────────────────────────────────────────────────────────────

ESTIMATED_DURATIONS = {
    "product_analysis": 20,
    "scripting": 30,
    "broll_planning": 20,
    "casting": 240,
    "directing": 900,
    "voiceover": 60,
    "broll_generation": 180,
    "editing": 240,
    "regenerate_asset": 120,
    "default": 120,
}


def estimate_wait_seconds(redis_client, job_id: str) -> int:
    """Rough time until this job starts, from the steps queued ahead of it."""
    position = get_queue_position(redis_client, job_id)
    if position is None:
        return 0

    items = [_decode(i) for i in redis_client.lrange(QUEUE_KEY, 0, -1)]
    ahead = items[len(items) - position + 1:]
    wait = 0
    for other in ahead:
        meta = get_job_meta(redis_client, other) or {}
        wait += ESTIMATED_DURATIONS.get(meta.get("step", "default"), ESTIMATED_DURATIONS["default"])
    return wait
