"""
ElevenLabs text-to-speech client.

TTS responses are raw MP3 bytes (128 kbps), not JSON.
"""

import logging
import time
from typing import Optional

import httpx

from . import config
from .pipeline.errors import ProviderError

logger = logging.getLogger(__name__)

VOICE_SETTINGS = {
    "stability": 0.5,
    "similarity_boost": 0.75,
    "style": 0.5,
    "use_speaker_boost": True,
}


class ElevenLabsClient:
    name = "elevenlabs"

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key or config.ELEVENLABS_API_KEY
        self.base_url = (base_url or config.ELEVENLABS_API_BASE).rstrip("/")
        self._transport = transport

    def _client(self, timeout: float = 60) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=self._transport,
            headers={"xi-api-key": self.api_key},
        )

    async def text_to_speech(self, voice_id: str, text: str) -> bytes:
        endpoint = f"/v1/text-to-speech/{voice_id}"
        start = time.monotonic()
        async with self._client(timeout=120) as client:
            try:
                response = await client.post(endpoint, json={
                    "text": text,
                    "model_id": config.ELEVENLABS_MODEL_ID,
                    "voice_settings": VOICE_SETTINGS,
                })
            except httpx.HTTPError as e:
                raise ProviderError(self.name, f"TTS request failed: {e}") from e

        latency_ms = int((time.monotonic() - start) * 1000)
        if response.is_error:
            logger.error(f"ElevenLabs TTS {response.status_code} after {latency_ms}ms: {response.text[:300]}")
            raise ProviderError(
                self.name,
                f"TTS error ({response.status_code}): {response.text[:300]}",
                status_code=response.status_code,
            )
        logger.info(f"ElevenLabs TTS completed in {latency_ms}ms ({len(response.content)} bytes)")
        return response.content

    async def is_voice_valid(self, voice_id: str) -> bool:
        async with self._client(timeout=15) as client:
            try:
                response = await client.get(f"/v1/voices/{voice_id}")
            except httpx.HTTPError as e:
                logger.warning(f"ElevenLabs voice check for {voice_id} failed: {e}")
                return False
        return response.is_success
