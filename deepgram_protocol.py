from __future__ import annotations

import json
import logging
from typing import Any, Final, Optional, Union
from urllib.parse import urlencode

from provider_adapter import SAMPLE_RATE, ProviderMessage
from session_config import CJK_LANGUAGES, SessionConfig
from token_filter import ENDPOINT_MARKER, Token

logger = logging.getLogger(__name__)

LISTEN_URL: Final[str] = "wss://api.deepgram.com/v1/listen"
GRANT_URL: Final[str] = "https://api.deepgram.com/v1/auth/grant"
DEFAULT_MODEL: Final[str] = "nova-3"
UTTERANCE_END_MS: Final[int] = 1500
ENDPOINTING_MS: Final[int] = 500
CLOSE_STREAM: Final[str] = json.dumps({"type": "CloseStream"})


def listen_language(config: SessionConfig) -> str:
    hints = config.language_hints
    if config.is_any_source or len(hints) != 1:
        return "multi"
    return hints[0]


def build_listen_url(config: SessionConfig, model: str = DEFAULT_MODEL, url: str = LISTEN_URL) -> str:
    params: list[tuple[str, str]] = [
        ("model", model),
        ("language", listen_language(config)),
        ("encoding", "linear16"),
        ("sample_rate", str(SAMPLE_RATE)),
        ("channels", "1"),
        ("smart_format", "true"),
        ("punctuate", "true"),
        ("diarize", "true"),
        ("interim_results", "true"),
        ("utterance_end_ms", str(UTTERANCE_END_MS)),
        ("vad_events", "true"),
        ("endpointing", str(ENDPOINTING_MS)),
    ]
    params.extend(("keyterm", term) for term in config.context_terms)
    return f"{url}?{urlencode(params)}"


def parse_deepgram_message(raw: Union[str, bytes, dict[str, Any]]) -> Optional[ProviderMessage]:
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

    kind = data.get("type")
    if kind == "Error" or data.get("err_code") or data.get("err_msg"):
        message = (
            data.get("description")
            or data.get("err_msg")
            or data.get("message")
            or f"Error code: {data.get('err_code')}"
        )
        return ProviderMessage(kind="error", error=str(message))
    if kind == "Results":
        return ProviderMessage(kind="tokens", tokens=_result_tokens(data))
    if kind == "UtteranceEnd":
        return ProviderMessage(kind="tokens", tokens=[Token(text=ENDPOINT_MARKER, is_final=True)])
    # Metadata, SpeechStarted and unknown frames carry no transcript.
    return None


def _result_tokens(data: dict[str, Any]) -> list[Token]:
    channel = data.get("channel")
    if not isinstance(channel, dict):
        return []
    alternatives = channel.get("alternatives")
    alternative = alternatives[0] if isinstance(alternatives, list) and alternatives else None
    if not isinstance(alternative, dict):
        return []

    is_final = bool(data.get("is_final"))
    channel_language = str(channel.get("detected_language") or "").strip().lower()
    tokens: list[Token] = []
    words = alternative.get("words")
    for word in words if isinstance(words, list) else []:
        token = _word_token(word, is_final, channel_language)
        if token is not None:
            tokens.append(token)

    transcript = alternative.get("transcript")
    if not tokens and isinstance(transcript, str) and transcript.strip():
        tokens.append(Token(text=f" {transcript.strip()}", is_final=is_final, language=channel_language))

    if tokens and is_final and not data.get("speech_final"):
        # A final chunk without speech_final leaves the utterance open.
        tokens.append(Token(text="", is_final=False, speaker=tokens[-1].speaker))
    if data.get("speech_final"):
        tokens.append(Token(text=ENDPOINT_MARKER, is_final=True))
    return tokens


def _word_token(word: Any, is_final: bool, channel_language: str) -> Optional[Token]:
    if not isinstance(word, dict):
        return None
    text = word.get("punctuated_word") or word.get("word")
    if not isinstance(text, str) or not text:
        return None
    language = str(word.get("language") or channel_language).strip().lower()
    separator = "" if language.split("-", 1)[0] in CJK_LANGUAGES else " "
    speaker = word.get("speaker")
    return Token(
        text=f"{separator}{text}",
        is_final=is_final,
        speaker="" if speaker is None else str(speaker),
        start_ms=_seconds_to_ms(word.get("start")),
        end_ms=_seconds_to_ms(word.get("end")),
        language=language,
    )


def _seconds_to_ms(value: Any) -> int:
    try:
        return int(round(float(value) * 1000))
    except (TypeError, ValueError):
        return 0
