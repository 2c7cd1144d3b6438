from __future__ import annotations

import json
import logging
from typing import Any, Final, Optional, Union

from provider_adapter import SAMPLE_RATE, ProviderMessage
from session_config import SessionConfig
from token_filter import Token

logger = logging.getLogger(__name__)

WEBSOCKET_URL: Final[str] = "wss://stt-rt.soniox.com/transcribe-websocket"
TEMPORARY_KEY_URL: Final[str] = "https://api.soniox.com/v1/auth/temporary-api-key"
DEFAULT_MODEL: Final[str] = "stt-rt-preview"
# An empty frame tells the provider no more audio will follow.
END_OF_INPUT: Final[bytes] = b""


def parse_provider_message(raw: Union[str, bytes, dict[str, Any]]) -> Optional[ProviderMessage]:
    if isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("provider_message_dropped reason=invalid_json")
            return None
    if not isinstance(data, dict):
        return None

    if data.get("error_code") or data.get("error_message"):
        message = data.get("error_message") or f"Error code: {data.get('error_code')}"
        return ProviderMessage(kind="error", error=str(message))

    raw_tokens = data.get("tokens")
    tokens: list[Token] = []
    if isinstance(raw_tokens, list):
        tokens = [token for token in map(_token_from_payload, raw_tokens) if token is not None]

    if data.get("finished"):
        # A closing frame may still carry the last tokens.
        return ProviderMessage(kind="finished", tokens=tokens)
    if not isinstance(raw_tokens, list):
        return None
    return ProviderMessage(kind="tokens", tokens=tokens)


def build_session_config_message(
    api_key: str,
    config: SessionConfig,
    model: str = DEFAULT_MODEL,
) -> dict[str, Any]:
    message: dict[str, Any] = {
        "api_key": api_key,
        "model": model,
        "audio_format": "pcm_s16le",
        "sample_rate": SAMPLE_RATE,
        "num_channels": 1,
        "enable_endpoint_detection": True,
        "enable_speaker_diarization": True,
        "enable_language_identification": True,
        "language_hints": config.language_hints,
    }
    if config.context_terms:
        message["context"] = {"terms": list(config.context_terms)}
    return message


def _token_from_payload(payload: Any) -> Optional[Token]:
    if not isinstance(payload, dict):
        return None
    text = payload.get("text")
    if not isinstance(text, str):
        return None
    speaker = payload.get("speaker")
    return Token(
        text=text,
        is_final=bool(payload.get("is_final", False)),
        speaker="" if speaker is None else str(speaker),
        start_ms=_as_ms(payload.get("start_ms")),
        end_ms=_as_ms(payload.get("end_ms")),
        language=str(payload.get("language") or "").strip().lower(),
        translation_status=str(payload.get("translation_status") or "none"),
    )


def _as_ms(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0
