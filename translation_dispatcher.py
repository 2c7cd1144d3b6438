from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from metrics_reporter import SessionMetricsReporter
from session_config import SessionConfig, TranslationMode

logger = logging.getLogger(__name__)

TranslatedCallback = Callable[[str, str], None]


class Translator(Protocol):
    def translate(
        self,
        text: str,
        source_language: str,
        target_language: str,
        context: Optional[Sequence[str]] = None,
        terms: Optional[Sequence[str]] = None,
    ) -> Awaitable[str]: ...


def resolve_target_language(source_language: str, config: SessionConfig) -> str:
    if config.translation_mode is TranslationMode.ONE_WAY:
        return config.target_language
    if (source_language or "").lower() == config.target_language:
        return config.language_a
    return config.target_language


class TranslationDispatcher:
    def __init__(
        self,
        translator: Translator,
        on_translated: TranslatedCallback,
        context_window: int = 3,
        metrics: Optional[SessionMetricsReporter] = None,
    ) -> None:
        self._translator = translator
        self._on_translated = on_translated
        self._context_window = context_window
        self._metrics = metrics
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(
        self,
        entry_id: str,
        text: str,
        source_language: str,
        config: SessionConfig,
        context: Sequence[str] = (),
    ) -> Optional[asyncio.Task[None]]:
        cleaned = (text or "").strip()
        if not cleaned:
            return None
        if not (source_language or "").strip():
            logger.debug("translation_skipped entry=%s reason=unknown_language", entry_id)
            return None
        target_language = resolve_target_language(source_language, config)
        if not target_language or target_language == (source_language or "").lower():
            logger.debug("translation_skipped entry=%s reason=same_language lang=%s", entry_id, target_language)
            return None
        if entry_id in self._tasks:
            return self._tasks[entry_id]

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("translation_skipped entry=%s reason=no_running_loop", entry_id)
            return None

        trimmed_context: list[str] = []
        if self._context_window > 0:
            trimmed_context = [line for line in context if line and line.strip()][-self._context_window :]
        task = loop.create_task(
            self._run(entry_id, cleaned, source_language, target_language, trimmed_context, config.context_terms),
            name=f"translate-{entry_id}",
        )
        self._tasks[entry_id] = task
        task.add_done_callback(lambda _done, key=entry_id: self._tasks.pop(key, None))
        return task

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def _run(
        self,
        entry_id: str,
        text: str,
        source_language: str,
        target_language: str,
        context: list[str],
        terms: Sequence[str],
    ) -> None:
        started = perf_counter()
        try:
            translated = await self._translator.translate(
                text,
                source_language,
                target_language,
                context=context,
                terms=list(terms),
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - translation is best-effort per entry
            logger.warning("translation_failed entry=%s target=%s error=%s", entry_id, target_language, exc)
            self._record(entry_id, target_language, perf_counter() - started, str(exc))
            return
        latency = perf_counter() - started
        translated = (translated or "").strip()
        self._record(entry_id, target_language, latency, "" if translated else "empty_translation")
        if not translated:
            return
        logger.debug("translation_done entry=%s target=%s latency_s=%.3f", entry_id, target_language, latency)
        self._on_translated(entry_id, translated)

    def _record(self, entry_id: str, target_language: str, latency_s: float, error: str) -> None:
        if self._metrics is None:
            return
        self._metrics.record_translation(
            entry_id=entry_id,
            target_language=target_language,
            latency_s=latency_s,
            error=error,
        )
