"""
WaveSpeed AI client — LLM chat, Nano Banana Pro images, Kling video.

Submissions return a task id immediately; ``poll_result`` waits for it with a
backing-off interval, a hard maximum wait, and an optional cancel predicate
checked once per iteration.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from . import config
from .pipeline.errors import ProviderError

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 2.0       # seconds, doubles each retry: 2, 4, 8
JITTER_MAX = 1.0
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}

# ── Polling ──────────────────────────────────────────────────────────────────
MAX_POLL_INTERVAL = 30.0
POLL_BACKOFF = 1.3

CHAT_PATH = "/api/v3/wavespeed-ai/any-llm"
IMAGE_PATH = "/api/v3/google/nano-banana-pro/text-to-image-multi"
EDIT_PATH = "/api/v3/google/nano-banana-pro/edit"
VIDEO_PATH = "/api/v3/kwaivgi/kling-v3.0-pro/image-to-video"
RESULT_PATH = "/api/v3/predictions/{task_id}/result"


@dataclass
class PollResult:
    status: str  # "completed" | "cancelled"
    url: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.status == "cancelled"


class WaveSpeedClient:
    name = "wavespeed"

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key or config.WAVESPEED_API_KEY
        self.base_url = (base_url or config.WAVESPEED_API_BASE).rstrip("/")
        self._transport = transport

    def _client(self, timeout: float = 60) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

    async def _request_with_backoff(self, method: str, path: str, **kwargs) -> dict:
        """
        HTTP request with exponential backoff on 429/5xx and network errors.
        Non-retryable statuses raise ProviderError immediately.
        """
        for attempt in range(MAX_RETRIES + 1):
            try:
                async with self._client() as client:
                    response = await client.request(method, path, **kwargs)
            except httpx.HTTPError as e:
                if attempt >= MAX_RETRIES:
                    raise ProviderError(self.name, f"{method} {path} failed: {e}") from e
                delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
                logger.warning(f"WaveSpeed request error on attempt {attempt + 1}: {e} — retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue

            if response.status_code in RETRYABLE_STATUS_CODES and attempt < MAX_RETRIES:
                delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
                logger.warning(
                    f"WaveSpeed {response.status_code} on attempt {attempt + 1}/{MAX_RETRIES + 1} "
                    f"— retrying in {delay:.1f}s ({path})"
                )
                await asyncio.sleep(delay)
                continue

            if response.is_error:
                raise ProviderError(
                    self.name,
                    f"{method} {path} returned {response.status_code}: {response.text[:300]}",
                    status_code=response.status_code,
                )
            return response.json()

        raise ProviderError(self.name, f"{method} {path} failed after {MAX_RETRIES + 1} attempts")

    def _task_id(self, data: dict, path: str) -> str:
        task_id = (data.get("data") or {}).get("id")
        if not task_id:
            raise ProviderError(self.name, f"submit to {path} returned no task id: {data}")
        return task_id

    # ── LLM ──────────────────────────────────────────────────────────────

    async def chat_completion(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        model: Optional[str] = None,
    ) -> str:
        data = await self._request_with_backoff("POST", CHAT_PATH, json={
            "prompt": user_prompt,
            "system_prompt": system_prompt,
            "model": model or config.WAVESPEED_CHAT_MODEL,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "enable_sync_mode": True,
        })
        outputs = (data.get("data") or {}).get("outputs") or []
        return outputs[0] if outputs else ""

    # ── Images ───────────────────────────────────────────────────────────

    async def generate_image(self, prompt: str, aspect_ratio: str = "9:16") -> str:
        data = await self._request_with_backoff("POST", IMAGE_PATH, json={
            "prompt": prompt,
            "aspect_ratio": aspect_ratio,
            "num_images": 2,
            "output_format": "png",
            "enable_sync_mode": False,
        })
        return self._task_id(data, IMAGE_PATH)

    async def edit_image(self, images: list[str], prompt: str,
                         aspect_ratio: str = "9:16", resolution: str = "1k") -> str:
        data = await self._request_with_backoff("POST", EDIT_PATH, json={
            "images": images,
            "prompt": prompt,
            "aspect_ratio": aspect_ratio,
            "resolution": resolution,
            "output_format": "png",
            "enable_sync_mode": False,
        })
        return self._task_id(data, EDIT_PATH)

    # ── Video ────────────────────────────────────────────────────────────

    async def generate_video(
        self,
        image: str,
        prompt: str,
        tail_image: Optional[str] = None,
        multi_prompt: Optional[list] = None,
        negative_prompt: str = "",
        duration: int = 15,
        cfg_scale: float = 0.5,
    ) -> str:
        body = {
            "image": image,
            "prompt": prompt,
            "negative_prompt": negative_prompt,
            "multi_prompt": multi_prompt or [],
            "duration": duration,
            "cfg_scale": cfg_scale,
            "sound": False,
        }
        if tail_image:
            body["tail_image"] = tail_image
        data = await self._request_with_backoff("POST", VIDEO_PATH, json=body)
        return self._task_id(data, VIDEO_PATH)

    # ── Polling ──────────────────────────────────────────────────────────

    async def poll_result(
        self,
        task_id: str,
        max_wait: float = 300,
        interval: float = 10,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> PollResult:
        """
        Wait for a task to finish.

        Returns PollResult("completed", url) or PollResult("cancelled").
        Raises ProviderError if the task fails, a poll request errors, or
        ``max_wait`` seconds pass.
        """
        path = RESULT_PATH.format(task_id=task_id)
        started = time.monotonic()
        attempt = 0

        while time.monotonic() - started < max_wait:
            if cancel_check is not None and cancel_check():
                logger.info(f"WaveSpeed poll {task_id}: cancel requested")
                return PollResult("cancelled")

            async with self._client(timeout=15) as client:
                try:
                    response = await client.get(path)
                except httpx.HTTPError as e:
                    raise ProviderError(self.name, f"poll {task_id} failed: {e}") from e
            if response.is_error:
                raise ProviderError(
                    self.name,
                    f"poll {task_id} returned {response.status_code}: {response.text[:300]}",
                    status_code=response.status_code,
                )

            record = response.json().get("data") or {}
            status = record.get("status", "")
            attempt += 1
            logger.debug(f"WaveSpeed poll #{attempt} {task_id}: status={status}")

            if status == "completed":
                outputs = record.get("outputs") or []
                logger.info(f"WaveSpeed task {task_id} completed after {time.monotonic() - started:.0f}s")
                return PollResult("completed", outputs[0] if outputs else None)
            if status == "failed":
                error = record.get("error") or record.get("message") or "Unknown error"
                raise ProviderError(self.name, f"task {task_id} failed: {error}")

            await asyncio.sleep(interval)
            interval = min(interval * POLL_BACKOFF, MAX_POLL_INTERVAL)

        raise ProviderError(self.name, f"task {task_id} timed out after {max_wait:.0f}s")
