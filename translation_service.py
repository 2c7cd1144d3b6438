from __future__ import annotations

import os
import re
from typing import Final, Optional, Sequence

from openai import APIStatusError, AsyncOpenAI

from config_utils import read_float_env, read_int_env


class TranslationService:
    MAX_CONTEXT_LINES: Final[int] = 3
    _LANGUAGE_NAMES: Final[dict[str, str]] = {
        "zh": "Chinese",
        "en": "English",
        "es": "Spanish",
        "ja": "Japanese",
        "ko": "Korean",
        "fr": "French",
        "de": "German",
        "pt": "Portuguese",
        "ru": "Russian",
        "it": "Italian",
        "ar": "Arabic",
        "hi": "Hindi",
        "th": "Thai",
        "vi": "Vietnamese",
        "nl": "Dutch",
        "pl": "Polish",
        "tr": "Turkish",
        "id": "Indonesian",
        "ms": "Malay",
        "uk": "Ukrainian",
    }

    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-4o-mini") -> None:
        key = api_key or os.getenv("OPENAI_API_KEY")
        if not key:
            raise RuntimeError("OPENAI_API_KEY is required for translation.")
        self._client = AsyncOpenAI(api_key=key)
        primary_model = os.getenv("TRANSLATION_MODEL", model).strip() or model
        fallback_model = os.getenv("TRANSLATION_FALLBACK_MODEL", "gpt-4.1-mini").strip()
        self._models = [primary_model]
        if fallback_model and fallback_model not in self._models:
            self._models.append(fallback_model)
        self._active_model_index = 0
        self._max_completion_tokens = read_int_env("TRANSLATION_MAX_TOKENS", 1000)
        self._temperature = read_float_env("TRANSLATION_TEMPERATURE", 0.3)

    async def translate(
        self,
        text: str,
        source_language: str,
        target_language: str,
        context: Optional[Sequence[str]] = None,
        terms: Optional[Sequence[str]] = None,
    ) -> str:
        cleaned = self._sanitize(text)
        if not cleaned:
            return ""
        system_prompt = self._system_prompt(source_language, target_language)
        user_prompt = self._user_prompt(cleaned, context or (), terms or ())
        translated = await self._chat(user_prompt, system_prompt)
        if self._is_refusal_like(translated):
            raise RuntimeError("Translation model refused the fragment.")
        return translated

    @classmethod
    def language_name(cls, code: str) -> str:
        normalized = (code or "").strip().lower()
        return cls._LANGUAGE_NAMES.get(normalized.split("-", 1)[0], normalized or "the target language")

    def _system_prompt(self, source_language: str, target_language: str) -> str:
        target_name = self.language_name(target_language)
        source_clause = f"{self.language_name(source_language)} " if source_language else ""
        return (
            f"You are a real-time meeting interpreter. Translate the following {source_clause}text to {target_name}.\n"
            "Rules:\n"
            "1) Keep proper names, acronyms, numbers and units exactly.\n"
            "2) Use the recent context only to disambiguate; never translate or repeat it.\n"
            "3) Prefer the listed terminology when it applies.\n"
            "4) Output ONLY the translation, nothing else."
        )

    def _user_prompt(self, text: str, context: Sequence[str], terms: Sequence[str]) -> str:
        prompt_lines: list[str] = []
        recent = [self._sanitize(line) for line in context if self._sanitize(line)]
        if recent:
            prompt_lines.append("Recent context:\n" + "\n".join(recent[-self.MAX_CONTEXT_LINES :]))
        if terms:
            prompt_lines.append(f"Terminology: {', '.join(terms)}")
        prompt_lines.append(f"Text:\n{text}")
        return "\n\n".join(prompt_lines)

    async def _chat(self, user_prompt: str, system_prompt: Optional[str] = None) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        last_exc: Optional[Exception] = None
        while self._active_model_index < len(self._models):
            model_name = self._models[self._active_model_index]
            try:
                response = await self._client.chat.completions.create(
                    model=model_name,
                    temperature=self._temperature,
                    messages=messages,
                    max_tokens=self._max_completion_tokens,
                )
                content = response.choices[0].message.content or ""
                return self._sanitize(content)
            except APIStatusError as exc:
                last_exc = exc
                # Promote to fallback model once and keep it for subsequent requests.
                if exc.status_code in (400, 404) and self._active_model_index + 1 < len(self._models):
                    self._active_model_index += 1
                    continue
                break
            except Exception as exc:  # noqa: BLE001 - API boundary
                last_exc = exc
                break
        raise RuntimeError(f"Translation API failed: {last_exc}") from last_exc

    @staticmethod
    def _sanitize(text: str) -> str:
        return re.sub(r"\s+", " ", text or "").strip()

    @staticmethod
    def _is_refusal_like(text: str) -> bool:
        normalized = TranslationService._sanitize(text).lower()
        if not normalized:
            return False
        refusal_patterns = (
            "i'm sorry, i can't help with that",
            "i cannot help with that",
            "i can’t help with that",
            "i can't assist with that",
            "cannot assist with that",
            "抱歉，我无法",
        )
        return any(pattern in normalized for pattern in refusal_patterns)
