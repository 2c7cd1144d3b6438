from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final, Iterable

_CONTROL_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"^\s*<[^<>\s]+>\s*$")
ENDPOINT_MARKER: Final[str] = "<end>"
TRANSLATION_STATUS: Final[str] = "translation"


@dataclass(frozen=True)
class Token:
    text: str
    is_final: bool
    speaker: str = ""
    start_ms: int = 0
    end_ms: int = 0
    language: str = ""
    translation_status: str = "none"


def is_control_token(token: Token) -> bool:
    return _CONTROL_TOKEN_PATTERN.match(token.text or "") is not None


def is_endpoint_marker(token: Token) -> bool:
    return (token.text or "").strip().lower() == ENDPOINT_MARKER


def is_translation_token(token: Token) -> bool:
    return (token.translation_status or "").lower() == TRANSLATION_STATUS


def filter_tokens(tokens: Iterable[Token]) -> list[Token]:
    return [token for token in tokens if not is_control_token(token) and not is_translation_token(token)]


def split_tokens(tokens: Iterable[Token]) -> tuple[list[Token], list[Token]]:
    final: list[Token] = []
    interim: list[Token] = []
    for token in tokens:
        (final if token.is_final else interim).append(token)
    return final, interim


def joined_text(tokens: Iterable[Token]) -> str:
    # Provider tokens carry their own spacing and punctuation.
    return "".join(token.text for token in tokens)
