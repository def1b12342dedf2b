from dataclasses import dataclass

from .creatomate import CreatomateClient
from .elevenlabs import ElevenLabsClient
from .wavespeed import WaveSpeedClient


@dataclass
class Providers:
    """The generation providers a stage agent may call."""
    wavespeed: WaveSpeedClient
    elevenlabs: ElevenLabsClient
    creatomate: CreatomateClient


class ProviderFactory:
    @staticmethod
    def from_env() -> Providers:
        return Providers(
            wavespeed=WaveSpeedClient(),
            elevenlabs=ElevenLabsClient(),
            creatomate=CreatomateClient(),
        )
