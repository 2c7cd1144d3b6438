from __future__ import annotations

import asyncio
import logging
import os
from contextlib import suppress
from enum import Enum
from typing import Callable, Optional

from audio_listener import AudioFrame, MicrophoneListener, to_pcm16
from config_utils import read_bool_env, read_int_env
from entry_store import Entry, EntryStore, SpeakerInfo
from metrics_reporter import SessionMetricsReporter
from provider_adapter import NORMAL_CLOSE_CODES, ProviderAdapter, StreamingTransport
from providers import provider_from_env
from segment_accumulator import SegmentAccumulator
from session_config import SegmentationSettings, SessionConfig
from translation_dispatcher import TranslationDispatcher, Translator
from translation_service import TranslationService

logger = logging.getLogger(__name__)

SegmentFinalizedCallback = Callable[[str, str, str], None]
MicrophoneFactory = Callable[[asyncio.AbstractEventLoop, "asyncio.Queue[AudioFrame]"], MicrophoneListener]


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RECORDING = "recording"


class _StartAborted(Exception):
    pass


def _default_microphone(loop: asyncio.AbstractEventLoop, queue: "asyncio.Queue[AudioFrame]") -> MicrophoneListener:
    return MicrophoneListener(loop=loop, output_queue=queue, device=os.getenv("AUDIO_INPUT_DEVICE"))


class SessionController:
    def __init__(
        self,
        translator: Optional[Translator] = None,
        provider: Optional[ProviderAdapter] = None,
        microphone_factory: Optional[MicrophoneFactory] = None,
        settings: Optional[SegmentationSettings] = None,
        skip_translation: bool = False,
        on_segment_finalized: Optional[SegmentFinalizedCallback] = None,
        on_change: Optional[Callable[[], None]] = None,
        metrics: Optional[SessionMetricsReporter] = None,
    ) -> None:
        self.settings = settings or SegmentationSettings.from_env()
        self.store = EntryStore()
        self.accumulator = SegmentAccumulator(
            self.store,
            settings=self.settings,
            on_finalized=self._on_segment_finalized,
        )
        self.metrics = metrics or SessionMetricsReporter(
            enabled=read_bool_env("METRICS_ENABLED", False),
            output_path=os.getenv("METRICS_OUTPUT_PATH", "./reports/session_metrics.jsonl"),
            summary_path=os.getenv("METRICS_SUMMARY_PATH", "./reports/session_summary.json"),
            append_mode=read_bool_env("METRICS_APPEND_MODE", False),
        )
        self.skip_translation = skip_translation
        self.translator = translator
        self.dispatcher: Optional[TranslationDispatcher] = None
        self._provider = provider or provider_from_env()
        self._microphone_factory = microphone_factory or _default_microphone
        self._on_segment_finalized_callback = on_segment_finalized
        self._on_change = on_change
        self._audio_queue_maxsize = read_int_env("AUDIO_QUEUE_MAXSIZE", 64)

        self.state = SessionState.IDLE
        self.error: Optional[str] = None
        self.elapsed_seconds = 0
        self.config: Optional[SessionConfig] = None
        self._generation = 0
        self._transport: Optional[StreamingTransport] = None
        self._microphone: Optional[MicrophoneListener] = None
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def entries(self) -> list[Entry]:
        return self.store.entries()

    @property
    def current_interim(self) -> str:
        return self.accumulator.current_interim

    @property
    def speakers(self) -> list[SpeakerInfo]:
        return self.store.speakers.speakers()

    async def start(self, config: SessionConfig) -> bool:
        if self.state is not SessionState.IDLE:
            return False
        self._generation += 1
        generation = self._generation
        self.config = config
        self.error = None
        self.elapsed_seconds = 0
        self.accumulator.configure(config)
        self.accumulator.reset()
        self._set_state(SessionState.CONNECTING)

        transport: Optional[StreamingTransport] = None
        microphone: Optional[MicrophoneListener] = None
        try:
            self._ensure_services()
            credential = await self._provider.fetch_credential()
            self._ensure_current(generation)
            transport = self._provider.create_transport()
            await transport.connect(credential, config)
            self._ensure_current(generation)
            audio_queue: asyncio.Queue[AudioFrame] = asyncio.Queue(maxsize=self._audio_queue_maxsize)
            microphone = self._microphone_factory(asyncio.get_running_loop(), audio_queue)
            microphone.start()
        except _StartAborted:
            logger.info("session_start_aborted reason=stopped_while_connecting")
            await self._release(transport, microphone, graceful=False)
            return False
        except Exception as exc:  # noqa: BLE001 - session startup boundary
            await self._release(transport, microphone, graceful=False)
            if generation != self._generation:
                return False
            self.error = str(exc) or "Failed to start"
            logger.error("session_start_failed error=%s", self.error)
            self.metrics.record_error("startup", self.error)
            self._set_state(SessionState.IDLE)
            return False

        self._transport = transport
        self._microphone = microphone
        self.metrics.start_session()
        self._tasks = [
            asyncio.create_task(self._receive_loop(generation, transport), name="provider-recv"),
            asyncio.create_task(self._route_audio(transport, audio_queue), name="provider-audio"),
            asyncio.create_task(self._tick_elapsed(), name="session-timer"),
        ]
        self._set_state(SessionState.RECORDING)
        logger.info(
            "session_started provider=%s mode=%s target=%s",
            self._provider.name,
            config.translation_mode.value,
            config.target_language,
        )
        return True

    async def stop(self) -> None:
        if self.state is SessionState.IDLE:
            return
        await self._teardown(graceful=True)
        logger.info("session_stopped elapsed_s=%d entries=%d", self.elapsed_seconds, len(self.store))

    async def shutdown(self) -> None:
        await self.stop()
        if self.dispatcher is not None:
            await self.dispatcher.drain()

    def clear(self) -> None:
        self.store.clear()
        self.accumulator.reset()
        self.elapsed_seconds = 0
        self.error = None
        self._notify()

    def reassign_speaker(self, entry_id: str, speaker_id: str) -> bool:
        changed = self.store.reassign_speaker(entry_id, speaker_id)
        if changed:
            self._notify()
        return changed

    def rename_speaker(self, speaker_id: str, label: str) -> bool:
        changed = self.store.rename_speaker(speaker_id, label)
        if changed:
            self._notify()
        return changed

    def _ensure_services(self) -> None:
        if self.skip_translation:
            return
        if self.translator is None:
            try:
                self.translator = TranslationService()
            except RuntimeError as exc:
                logger.warning("translation_disabled error=%s", exc)
                return
        if self.dispatcher is None:
            self.dispatcher = TranslationDispatcher(
                self.translator,
                on_translated=self._on_translated,
                context_window=self.settings.context_window,
                metrics=self.metrics,
            )

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation or self.state is not SessionState.CONNECTING:
            raise _StartAborted()

    async def _receive_loop(self, generation: int, transport: StreamingTransport) -> None:
        try:
            async for raw in transport.messages():
                if generation != self._generation:
                    return
                message = self._provider.parse_message(raw)
                if message is None:
                    continue
                if message.is_error:
                    logger.error("provider_error error=%s", message.error)
                    await self._fail(generation, message.error, stage="provider")
                    return
                if message.tokens:
                    self.accumulator.handle_tokens(message.tokens)
                if message.is_finished:
                    logger.debug("provider_finished")
                    self.accumulator.finalize()
                self._notify()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - realtime boundary
            logger.exception("receive_loop_failed")
            await self._fail(generation, str(exc) or "WebSocket error", stage="transport")
            return

        if generation != self._generation:
            return
        code = transport.close_code
        error = None if code in NORMAL_CLOSE_CODES else f"Disconnected: {code}"
        if error:
            logger.warning("transport_closed code=%s", code)
        await self._fail(generation, error, stage="transport")

    async def _route_audio(self, transport: StreamingTransport, queue: "asyncio.Queue[AudioFrame]") -> None:
        while True:
            frame = await queue.get()
            pcm16 = to_pcm16(frame.samples, frame.sample_rate)
            try:
                await transport.send_audio(pcm16)
            except Exception as exc:  # noqa: BLE001 - the receive loop reports the close
                logger.debug("audio_send_failed error=%s", exc)
                return

    async def _tick_elapsed(self) -> None:
        while True:
            await asyncio.sleep(1.0)
            self.elapsed_seconds += 1
            self._notify()

    async def _fail(self, generation: int, error: Optional[str], stage: str) -> None:
        if generation != self._generation or self.state is SessionState.IDLE:
            return
        if error:
            self.error = error
            self.metrics.record_error(stage, error)
        await self._teardown(graceful=False)

    async def _teardown(self, graceful: bool) -> None:
        # Whatever the provider already confirmed is kept, however the session ends.
        self.accumulator.finalize()
        self._generation += 1
        transport, microphone = self._transport, self._microphone
        tasks, self._tasks = self._tasks, []
        self._transport = None
        self._microphone = None
        self._set_state(SessionState.IDLE)

        current = asyncio.current_task()
        pending = [task for task in tasks if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        for task in pending:
            with suppress(asyncio.CancelledError):
                await task
        await self._release(transport, microphone, graceful=graceful)
        summary = self.metrics.finalize_session()
        if summary:
            logger.info("metrics_session_summary %s", summary)
        self._notify()

    async def _release(
        self,
        transport: Optional[StreamingTransport],
        microphone: Optional[MicrophoneListener],
        graceful: bool,
    ) -> None:
        if microphone is not None:
            try:
                microphone.stop()
            except Exception as exc:  # noqa: BLE001 - device release boundary
                logger.warning("microphone_release_failed error=%s", exc)
        if transport is not None:
            if graceful:
                await transport.send_end_of_input()
            await transport.close()

    def _on_segment_finalized(self, entry: Entry, merged: bool) -> None:
        self.metrics.record_segment(
            entry_id=entry.id,
            speaker_id=entry.speaker_id,
            language=entry.language,
            text_length=len(entry.original_text),
            merged=merged,
        )
        if self.skip_translation:
            if self._on_segment_finalized_callback is None:
                return
            try:
                self._on_segment_finalized_callback(entry.id, entry.original_text, entry.language)
            except Exception as exc:  # noqa: BLE001 - caller callback boundary
                logger.warning("segment_callback_failed entry=%s error=%s", entry.id, exc)
            return
        if self.dispatcher is None or self.config is None:
            return
        context = self.store.recent_originals(exclude_id=entry.id, limit=self.settings.context_window)
        self.dispatcher.dispatch(entry.id, entry.original_text, entry.language, self.config, context)

    def _on_translated(self, entry_id: str, text: str) -> None:
        if self.store.patch_translation(entry_id, text):
            self._notify()

    def _set_state(self, state: SessionState) -> None:
        if self.state is state:
            return
        self.state = state
        self._notify()

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change()
        except Exception as exc:  # noqa: BLE001 - renderer boundary
            logger.warning("change_listener_failed error=%s", exc)
