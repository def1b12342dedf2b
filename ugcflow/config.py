"""
Worker configuration.

Everything is read from the environment at import time (``main.py`` loads
``.env`` first). Tunables that differ per stage live in ``STAGE_TUNING``:
  - poll_max_wait / poll_interval  — how long to wait for a provider task
  - unit_attempts / unit_retry_delay — retries inside one unit of work
"""

import os
from dataclasses import dataclass

# ── Supabase / Redis ─────────────────────────────────────────────────────────

SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
REDIS_URL = os.getenv("REDIS_URL", "")

WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "2"))

# ── Providers ────────────────────────────────────────────────────────────────

WAVESPEED_API_KEY = os.getenv("WAVESPEED_API_KEY", "")
WAVESPEED_API_BASE = os.getenv("WAVESPEED_API_BASE", "https://api.wavespeed.ai")
WAVESPEED_CHAT_MODEL = os.getenv("WAVESPEED_CHAT_MODEL", "google/gemini-2.5-flash")

ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY", "")
ELEVENLABS_API_BASE = os.getenv("ELEVENLABS_API_BASE", "https://api.elevenlabs.io")
ELEVENLABS_MODEL_ID = "eleven_multilingual_v2"

CREATOMATE_API_KEY = os.getenv("CREATOMATE_API_KEY", "")
CREATOMATE_API_BASE = os.getenv("CREATOMATE_API_BASE", "https://api.creatomate.com/v1")
CREATOMATE_TEMPLATE_ID = os.getenv(
    "CREATOMATE_TEMPLATE_ID", "85021700-850c-49cf-a65f-06aa50e720e6"
)

# ── Cost table (USD per call) ────────────────────────────────────────────────

API_COSTS = {
    "wavespeed_chat": 0.01,
    "broll_planning": 0.01,
    "nano_banana_pro": 0.07,
    "nano_banana_pro_edit": 0.07,
    "kling_video": 1.20,
    "elevenlabs_tts": 0.05,
    "creatomate_render": 0.50,
}

# ── Pipeline defaults (overridden by project.video_model) ────────────────────

SEGMENT_COUNT = 4
SEGMENT_DURATION = 15  # seconds
SHOTS_PER_SEGMENT = 3

SECTION_NAMES = ["Hook", "Problem", "Solution + Product", "CTA"]

ENERGY_ARC = [
    {"start": "HIGH", "middle": "PEAK", "end": "MEDIUM"},
    {"start": "MEDIUM", "middle": "HIGH", "end": "MEDIUM"},
    {"start": "MEDIUM", "middle": "PEAK", "end": "HIGH"},
    {"start": "HIGH", "middle": "MEDIUM", "end": "PEAK"},
]

PRODUCT_PLACEMENT_ARC = [
    {"visibility": "none", "description": "No product, focus on the creator and the hook"},
    {"visibility": "subtle", "description": "Product visible in background or hand"},
    {"visibility": "hero", "description": "Product front and center"},
    {"visibility": "set_down", "description": "Product placed down, creator addresses camera"},
]

# 128 kbps MP3 from ElevenLabs → bytes per second of audio
TTS_BYTES_PER_SECOND = 16000

# Voices used when neither influencer nor character carries one
FALLBACK_VOICES = {
    "default": "21m00Tcm4TlvDq8ikWAM",
    "supplements": "EXAVITQu4vr4xnSDxMaL",
    "fitness": "TxGEqnHWrfWFTfGW9XjX",
    "tech": "ErXwobaYiN019PkySvjV",
}


# ── Stage tuning ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StageTuning:
    poll_max_wait: float
    poll_interval: float
    unit_attempts: int = 2
    unit_retry_delay: float = 5.0


def _tuning(stage: str, poll_max_wait: float, poll_interval: float,
            unit_attempts: int = 2, unit_retry_delay: float = 5.0) -> StageTuning:
    prefix = f"UGC_{stage.upper()}_"
    return StageTuning(
        poll_max_wait=float(os.getenv(prefix + "POLL_MAX_WAIT", poll_max_wait)),
        poll_interval=float(os.getenv(prefix + "POLL_INTERVAL", poll_interval)),
        unit_attempts=int(os.getenv(prefix + "UNIT_ATTEMPTS", unit_attempts)),
        unit_retry_delay=float(os.getenv(prefix + "UNIT_RETRY_DELAY", unit_retry_delay)),
    )


STAGE_TUNING = {
    "casting": _tuning("casting", 120, 5),
    "directing": _tuning("directing", 300, 10),
    "broll_generation": _tuning("broll_generation", 120, 5),
    "voiceover": _tuning("voiceover", 0, 0),
    "editing": _tuning("editing", 300, 5, unit_attempts=3, unit_retry_delay=15),
}

DEFAULT_TUNING = StageTuning(poll_max_wait=300, poll_interval=10)


def tuning_for(stage: str) -> StageTuning:
    return STAGE_TUNING.get(stage, DEFAULT_TUNING)
