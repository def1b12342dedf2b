"""
Creatomate render client.

``render`` submits a template with modifications and returns the render id;
``poll_render`` waits until the render succeeds and returns its URL.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

import httpx

from . import config
from .pipeline.errors import ProviderError
from .wavespeed import PollResult

logger = logging.getLogger(__name__)


class CreatomateClient:
    name = "creatomate"

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key or config.CREATOMATE_API_KEY
        self.base_url = (base_url or config.CREATOMATE_API_BASE).rstrip("/")
        self._transport = transport

    async def _request(self, method: str, path: str, **kwargs):
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=60,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.api_key}"},
        ) as client:
            try:
                response = await client.request(method, path, **kwargs)
            except httpx.HTTPError as e:
                raise ProviderError(self.name, f"{method} {path} failed: {e}") from e
        if response.is_error:
            raise ProviderError(
                self.name,
                f"{method} {path} returned {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )
        return response.json()

    async def render(self, template_id: str, modifications: dict,
                     max_width: Optional[int] = None, max_height: Optional[int] = None) -> str:
        body = {"template_id": template_id, "modifications": modifications}
        if max_width:
            body["max_width"] = max_width
        if max_height:
            body["max_height"] = max_height

        data = await self._request("POST", "/renders", json=body)
        # Creatomate returns an array of renders
        render = data[0] if isinstance(data, list) else data
        render_id = render.get("id")
        if not render_id:
            raise ProviderError(self.name, f"render returned no id: {render}")
        logger.info(f"Creatomate render submitted: {render_id} (status={render.get('status')})")
        return render_id

    async def poll_render(
        self,
        render_id: str,
        max_wait: float = 300,
        interval: float = 5,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> PollResult:
        started = time.monotonic()
        while time.monotonic() - started < max_wait:
            if cancel_check is not None and cancel_check():
                return PollResult("cancelled")

            data = await self._request("GET", f"/renders/{render_id}")
            status = data.get("status")
            if status == "succeeded":
                logger.info(f"Creatomate render {render_id} done after {time.monotonic() - started:.0f}s")
                return PollResult("completed", data.get("url"))
            if status == "failed":
                raise ProviderError(
                    self.name, f"render {render_id} failed: {data.get('error_message', 'unknown')}"
                )
            await asyncio.sleep(interval)

        raise ProviderError(self.name, f"render {render_id} timed out after {max_wait:.0f}s")

    # poll_result lets the shared await_output helper drive renders too
    poll_result = poll_render
