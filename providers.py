from __future__ import annotations

from config_utils import read_str_env
from deepgram_client import DeepgramAdapter
from provider_adapter import ProviderAdapter
from soniox_client import SonioxAdapter


def create_provider(name: str) -> ProviderAdapter:
    normalized = (name or "").strip().lower()
    if normalized in ("", "soniox"):
        return SonioxAdapter()
    if normalized == "deepgram":
        return DeepgramAdapter()
    raise ValueError(f"Unknown transcription provider: {name}")


def provider_from_env() -> ProviderAdapter:
    return create_provider(read_str_env("TRANSCRIPTION_PROVIDER", "soniox"))
