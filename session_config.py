from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final, Optional

from config_utils import read_float_env, read_int_env, read_list_env, read_str_env

ANY_LANGUAGE: Final[str] = "*"
CJK_LANGUAGES: Final[frozenset[str]] = frozenset({"zh", "ja", "ko"})

CONTEXT_TERM_PRESETS: Final[dict[str, tuple[str, ...]]] = {
    "manufacturing": (
        "OEM", "GMP", "MOQ", "BOM", "QC", "QA", "ISO", "CNC", "PLC", "ERP", "MES",
        "FMEA", "PPAP", "Kaizen", "Kanban", "Six Sigma", "良率", "公差", "模具", "注塑",
    ),
    "medical": (
        "FDA", "ICH", "GCP", "GLP", "GMP", "IND", "NDA", "CRO", "IRB", "HIPAA",
        "临床试验", "不良反应", "适应症", "药代动力学", "随机对照", "双盲",
    ),
    "legal": (
        "NDA", "SPA", "IP", "LLC", "M&A", "due diligence", "indemnification",
        "arbitration", "jurisdiction", "liability", "compliance",
        "知识产权", "合规", "尽职调查", "仲裁",
    ),
    "tech": (
        "API", "SDK", "SaaS", "CI/CD", "DevOps", "Kubernetes", "Docker",
        "microservices", "GraphQL", "REST", "机器学习", "大模型", "向量数据库",
    ),
    "finance": (
        "ROI", "P/E", "EBITDA", "IPO", "AUM", "KYC", "AML", "VaR",
        "资产配置", "风控", "对冲", "杠杆", "估值",
    ),
}


class TranslationMode(str, Enum):
    TWO_WAY = "two_way"
    ONE_WAY = "one_way"

    @classmethod
    def parse(cls, raw: str, default: Optional["TranslationMode"] = None) -> "TranslationMode":
        normalized = (raw or "").strip().lower().replace("-", "_")
        for mode in cls:
            if mode.value == normalized:
                return mode
        return default or cls.TWO_WAY


@dataclass(frozen=True)
class SessionConfig:
    source_languages: tuple[str, ...] = (ANY_LANGUAGE,)
    target_language: str = "en"
    context_terms: tuple[str, ...] = ()
    translation_mode: TranslationMode = TranslationMode.TWO_WAY

    def __post_init__(self) -> None:
        sources = tuple(code.strip().lower() for code in self.source_languages if code and code.strip())
        object.__setattr__(self, "source_languages", sources or (ANY_LANGUAGE,))
        object.__setattr__(self, "target_language", (self.target_language or "en").strip().lower())
        object.__setattr__(self, "context_terms", tuple(term for term in self.context_terms if term))
        if not isinstance(self.translation_mode, TranslationMode):
            object.__setattr__(self, "translation_mode", TranslationMode.parse(str(self.translation_mode)))

    @property
    def is_any_source(self) -> bool:
        return ANY_LANGUAGE in self.source_languages or "auto" in self.source_languages

    @property
    def explicit_source_languages(self) -> tuple[str, ...]:
        return tuple(code for code in self.source_languages if code not in (ANY_LANGUAGE, "auto"))

    @property
    def language_a(self) -> str:
        for code in self.explicit_source_languages:
            if code != self.target_language:
                return code
        return "zh" if self.target_language == "en" else "en"

    @property
    def language_hints(self) -> list[str]:
        hints: list[str] = []
        for code in (*self.explicit_source_languages, self.target_language):
            if code and code not in hints:
                hints.append(code)
        return hints

    @classmethod
    def from_env(cls) -> "SessionConfig":
        terms = list(read_list_env("CONTEXT_TERMS"))
        preset = read_str_env("CONTEXT_TERMS_PRESET", "").lower()
        for term in CONTEXT_TERM_PRESETS.get(preset, ()):
            if term not in terms:
                terms.append(term)
        return cls(
            source_languages=read_list_env("SOURCE_LANGUAGES", (ANY_LANGUAGE,)),
            target_language=read_str_env("TARGET_LANGUAGE", "en"),
            context_terms=tuple(terms),
            translation_mode=TranslationMode.parse(read_str_env("TRANSLATION_MODE", "two_way")),
        )


@dataclass(frozen=True)
class SegmentationSettings:
    # Empirical thresholds; tune per deployment.
    merge_gap_ms: int = 2000
    merge_max_chars: int = 15
    cjk_ratio_threshold: float = 0.2
    min_detect_chars: int = 3
    context_window: int = 3

    @classmethod
    def from_env(cls) -> "SegmentationSettings":
        return cls(
            merge_gap_ms=read_int_env("MERGE_GAP_MS", cls.merge_gap_ms),
            merge_max_chars=read_int_env("MERGE_MAX_CHARS", cls.merge_max_chars),
            cjk_ratio_threshold=read_float_env("CJK_RATIO_THRESHOLD", cls.cjk_ratio_threshold),
            min_detect_chars=read_int_env("LANGUAGE_MIN_CHARS", cls.min_detect_chars),
            context_window=read_int_env("TRANSLATION_CONTEXT_ENTRIES", cls.context_window),
        )
