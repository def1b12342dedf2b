"""
Worker process.

FastAPI app whose lifespan recovers stale in-flight jobs and starts
WORKER_CONCURRENCY queue-consumer threads. Each consumer dequeues a stage
job, runs the async stage handler to completion with ``asyncio.run``, and
acks on return / nacks on exception.
"""

import asyncio
import json
import logging
import os
import threading
import time
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Query

load_dotenv()

from . import config  # noqa: E402  (reads the environment loaded above)
from . import metrics  # noqa: E402
from . import queue as job_queue  # noqa: E402
from .pipeline.handlers import Dispatcher  # noqa: E402
from .pipeline.project_service import ProjectService  # noqa: E402
from .pipeline.routes import configure, project_router  # noqa: E402
from .pipeline.store import ProjectStore  # noqa: E402
from .provider_factory import ProviderFactory  # noqa: E402

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# ── Lazy Redis client ─────────────────────────────────────────────────────────
_redis_client = None


def get_redis():
    """Get or create a Redis client. Returns None if Redis is not configured."""
    global _redis_client
    if _redis_client is None and config.REDIS_URL:
        import redis

        client = redis.from_url(config.REDIS_URL, decode_responses=False)
        try:
            client.ping()
            logger.info(f"Redis connected: {config.REDIS_URL[:30]}...")
            _redis_client = client
        except redis.RedisError as e:
            logger.error(f"Redis connection failed: {e}")
    return _redis_client


def enqueue(project_id: str, step, fields: dict = None) -> str:
    r = get_redis()
    if r is None:
        raise RuntimeError("REDIS_URL is not configured; cannot enqueue stage jobs")
    return job_queue.enqueue_job(r, project_id, step, fields)


# ── Queue consumer threads ────────────────────────────────────────────────────

def _process_job(r, dispatcher: Dispatcher, job_id: str):
    meta = job_queue.get_job_meta(r, job_id)
    if not meta:
        logger.warning(f"No metadata for job {job_id}, dropping")
        job_queue.ack_job(r, job_id)
        return

    try:
        message = job_queue.job_message(meta)
    except (KeyError, ValueError, json.JSONDecodeError) as e:
        logger.error(f"Malformed job {job_id}: {e}")
        job_queue.nack_job(r, job_id, f"malformed job: {e}")
        return

    job_queue.update_job_status(r, job_id, "processing")
    logger.info(
        f"[{message.project_id}] processing {message.step.value} job {job_id} "
        f"(attempt {int(meta.get('retries', '0')) + 1})"
    )
    try:
        asyncio.run(dispatcher.handle(message))
        job_queue.ack_job(r, job_id)
    except Exception as e:
        logger.error(f"[{message.project_id}] job {job_id} failed: {e}")
        job_queue.nack_job(r, job_id, str(e))


def _queue_consumer_loop(dispatcher: Dispatcher, stop: threading.Event):
    logger.info(f"Queue consumer {threading.current_thread().name} started")
    while not stop.is_set():
        try:
            r = get_redis()
            if r is None:
                time.sleep(5)
                continue
            job_id = job_queue.dequeue_job(r, timeout=5)
            if job_id is None:
                continue
            _process_job(r, dispatcher, job_id)
        except Exception as e:
            logger.error(f"Queue consumer loop error: {e}", exc_info=True)
            time.sleep(2)


def build_dispatcher(store: ProjectStore = None, providers=None) -> Dispatcher:
    return Dispatcher(
        store or ProjectStore(),
        providers or ProviderFactory.from_env(),
        enqueue=enqueue,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Worker starting up...")
    metrics.set_gauge("start_time", time.time())

    store = ProjectStore()
    providers = ProviderFactory.from_env()
    configure(factory=lambda: ProjectService(store, enqueue, providers))

    stop = threading.Event()
    r = get_redis()
    if r:
        recovered = job_queue.recover_stale_jobs(r)
        if recovered:
            logger.info(f"Recovered {recovered} stale job(s) from previous session")

        dispatcher = build_dispatcher(store, providers)
        for i in range(config.WORKER_CONCURRENCY):
            threading.Thread(
                target=_queue_consumer_loop,
                args=(dispatcher, stop),
                name=f"consumer-{i}",
                daemon=True,
            ).start()
        logger.info(f"Launched {config.WORKER_CONCURRENCY} queue consumer(s)")
    else:
        logger.warning("No Redis configured — stage jobs will not be consumed")
    yield
    stop.set()
    logger.info("Worker shutting down...")


app = FastAPI(lifespan=lifespan)
app.include_router(project_router)


@app.get("/health")
def health_check():
    """Verify the worker is running and its env vars are configured."""
    return {
        "status": "ok",
        "supabase_url_set": bool(config.SUPABASE_URL),
        "redis_url_set": bool(config.REDIS_URL),
        "wavespeed_api_key_set": bool(config.WAVESPEED_API_KEY),
        "elevenlabs_api_key_set": bool(config.ELEVENLABS_API_KEY),
        "creatomate_api_key_set": bool(config.CREATOMATE_API_KEY),
    }


@app.get("/metrics")
def metrics_endpoint():
    r = get_redis()
    if r:
        metrics.set_gauge("queue_depth", job_queue.get_queue_length(r))
        metrics.set_gauge("processing_count", job_queue.get_processing_count(r))
    return metrics.get_snapshot()


@app.get("/queue/status")
def queue_status(job_id: str = Query(...)):
    """Queue position + ETA for a stage job."""
    r = get_redis()
    if not r:
        return {"position": 0, "estimated_wait_seconds": 0, "queue_length": 0, "status": "unavailable"}

    position = job_queue.get_queue_position(r, job_id)
    meta = job_queue.get_job_meta(r, job_id)
    return {
        "position": position or 0,
        "estimated_wait_seconds": job_queue.estimate_wait_seconds(r, job_id) if position else 0,
        "queue_length": job_queue.get_queue_length(r),
        "status": meta.get("status", "unknown") if meta else "not_found",
        "step": meta.get("step") if meta else None,
        "project_id": meta.get("project_id") if meta else None,
    }


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("ugcflow.main:app", host="0.0.0.0", port=port)
