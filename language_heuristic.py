from __future__ import annotations

import re
from typing import Final, Optional

from session_config import CJK_LANGUAGES, SegmentationSettings, SessionConfig

_CJK_PATTERN: Final[re.Pattern[str]] = re.compile(r"[\u4e00-\u9fff\u3400-\u4dbf\uf900-\ufaff]")
_WHITESPACE_PATTERN: Final[re.Pattern[str]] = re.compile(r"\s")


def visible_length(text: str) -> int:
    return len(_WHITESPACE_PATTERN.sub("", text or ""))


def cjk_ratio(text: str) -> float:
    total = visible_length(text)
    if total == 0:
        return 0.0
    return len(_CJK_PATTERN.findall(text)) / total


class LanguageHeuristic:
    def __init__(self, config: SessionConfig, settings: Optional[SegmentationSettings] = None) -> None:
        self._config = config
        self._settings = settings or SegmentationSettings()

    def detect(self, text: str) -> str:
        if visible_length(text) < self._settings.min_detect_chars:
            return ""
        if cjk_ratio(text) > self._settings.cjk_ratio_threshold:
            return self._cjk_language()
        return self._non_cjk_language()

    def _cjk_language(self) -> str:
        for code in (*self._config.explicit_source_languages, self._config.target_language):
            if self._base(code) in CJK_LANGUAGES:
                return code
        return "zh"

    def _non_cjk_language(self) -> str:
        for code in self._config.explicit_source_languages:
            if self._base(code) not in CJK_LANGUAGES:
                return code
        target = self._config.target_language
        if target and self._base(target) not in CJK_LANGUAGES:
            return target
        return "en"

    @staticmethod
    def _base(code: str) -> str:
        return (code or "").split("-", 1)[0].lower()
