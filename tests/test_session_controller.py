from __future__ import annotations

import asyncio
import json
import os
import unittest
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

from deepgram_client import DeepgramAdapter
from metrics_reporter import SessionMetricsReporter
from session_config import SegmentationSettings, SessionConfig
from session_controller import SessionController, SessionState
from soniox_client import SonioxAdapter


class FakeTransport:
    def __init__(self, connect_gate: Optional[asyncio.Event] = None) -> None:
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.connect_gate = connect_gate
        self.connected_with: Optional[str] = None
        self.sent_audio: list[bytes] = []
        self.end_of_input_sent = 0
        self.closed = 0
        self.close_code: Optional[int] = None

    async def connect(self, api_key: str, config: SessionConfig) -> None:
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        self.connected_with = api_key

    async def send_audio(self, pcm16: bytes) -> None:
        self.sent_audio.append(pcm16)

    async def messages(self):
        while True:
            raw = await self.inbox.get()
            if raw is None:
                return
            yield raw

    async def send_end_of_input(self) -> None:
        self.end_of_input_sent += 1

    async def close(self) -> None:
        self.closed += 1

    def push(self, payload) -> None:
        self.inbox.put_nowait(payload if isinstance(payload, str) else json.dumps(payload))

    def disconnect(self, code: int) -> None:
        self.close_code = code
        self.inbox.put_nowait(None)


class FakeMicrophone:
    def __init__(self, fail_with: Optional[Exception] = None) -> None:
        self.fail_with = fail_with
        self.started = 0
        self.stopped = 0

    def start(self) -> None:
        self.started += 1
        if self.fail_with is not None:
            raise self.fail_with

    def stop(self) -> None:
        self.stopped += 1


def _tokens(*items: tuple[str, bool], speaker: str = "1", language: str = "en") -> dict:
    return {
        "tokens": [
            {"text": text, "is_final": final, "speaker": speaker, "language": language}
            for text, final in items
        ]
    }


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


class _Rig:
    def __init__(
        self,
        translate_result: str = "你好",
        skip_translation: bool = False,
        on_segment_finalized=None,
        microphone: Optional[FakeMicrophone] = None,
        connect_gate: Optional[asyncio.Event] = None,
        with_translator: bool = True,
        adapter_class=SonioxAdapter,
    ) -> None:
        self.credentials = MagicMock()
        self.credentials.fetch_temporary_key = AsyncMock(return_value="temp-key")
        self.translator = MagicMock()
        self.translator.translate = AsyncMock(return_value=translate_result)
        self.transports: list[FakeTransport] = []
        self.microphone = microphone or FakeMicrophone()
        self.connect_gate = connect_gate
        self.changes = 0
        self.controller = SessionController(
            translator=self.translator if with_translator else None,
            provider=adapter_class(credentials=self.credentials, transport_factory=self._make_transport),
            microphone_factory=lambda loop, queue: self.microphone,
            settings=SegmentationSettings(),
            skip_translation=skip_translation,
            on_segment_finalized=on_segment_finalized,
            on_change=self._changed,
            metrics=SessionMetricsReporter(False, "unused.jsonl", "unused.json"),
        )

    @property
    def transport(self) -> FakeTransport:
        return self.transports[-1]

    def _make_transport(self) -> FakeTransport:
        transport = FakeTransport(self.connect_gate)
        self.transports.append(transport)
        return transport

    def _changed(self) -> None:
        self.changes += 1


CONFIG = SessionConfig(source_languages=("en",), target_language="zh")


class SessionStartTests(unittest.TestCase):
    def test_start_connects_and_records(self) -> None:
        async def scenario() -> None:
            rig = _Rig()
            self.assertTrue(await rig.controller.start(CONFIG))
            self.assertIs(rig.controller.state, SessionState.RECORDING)
            self.assertEqual(rig.transport.connected_with, "temp-key")
            self.assertEqual(rig.microphone.started, 1)
            self.assertIsNone(rig.controller.error)
            self.assertFalse(await rig.controller.start(CONFIG))
            await rig.controller.stop()

        asyncio.run(scenario())

    def test_credential_failure_returns_to_idle(self) -> None:
        async def scenario() -> None:
            rig = _Rig()
            rig.credentials.fetch_temporary_key = AsyncMock(side_effect=RuntimeError("Failed to get Soniox token"))
            self.assertFalse(await rig.controller.start(CONFIG))
            self.assertIs(rig.controller.state, SessionState.IDLE)
            self.assertEqual(rig.controller.error, "Failed to get Soniox token")
            self.assertEqual(rig.transports, [])
            self.assertEqual(rig.microphone.started, 0)

        asyncio.run(scenario())

    def test_missing_translation_key_records_untranslated(self) -> None:
        saved = os.environ.pop("OPENAI_API_KEY", None)
        if saved is not None:
            self.addCleanup(os.environ.__setitem__, "OPENAI_API_KEY", saved)

        async def scenario() -> None:
            rig = _Rig(with_translator=False)
            with self.assertLogs("session_controller", level="WARNING") as logs:
                self.assertTrue(await rig.controller.start(CONFIG))
            self.assertIn("translation_disabled", logs.output[0])
            self.assertIs(rig.controller.state, SessionState.RECORDING)
            self.assertIsNone(rig.controller.dispatcher)
            self.assertIsNone(rig.controller.error)

            rig.transport.push(_tokens(("Hello", True)))
            await _settle()
            await rig.controller.shutdown()
            entries = rig.controller.entries
            self.assertEqual(len(entries), 1)
            self.assertTrue(entries[0].is_final)
            self.assertEqual(entries[0].translated_text, "")

        asyncio.run(scenario())

    def test_microphone_failure_releases_transport(self) -> None:
        async def scenario() -> None:
            rig = _Rig(microphone=FakeMicrophone(fail_with=RuntimeError("Microphone permission denied")))
            self.assertFalse(await rig.controller.start(CONFIG))
            self.assertIs(rig.controller.state, SessionState.IDLE)
            self.assertEqual(rig.controller.error, "Microphone permission denied")
            self.assertEqual(rig.transport.closed, 1)
            self.assertEqual(rig.transport.end_of_input_sent, 0)
            self.assertEqual(rig.microphone.stopped, 1)

        asyncio.run(scenario())

    def test_stop_while_fetching_credential_wins(self) -> None:
        async def scenario() -> None:
            rig = _Rig()
            release = asyncio.Event()

            async def slow_fetch() -> str:
                await release.wait()
                return "temp-key"

            rig.credentials.fetch_temporary_key = slow_fetch
            start_task = asyncio.create_task(rig.controller.start(CONFIG))
            await _settle()
            self.assertIs(rig.controller.state, SessionState.CONNECTING)

            await rig.controller.stop()
            self.assertIs(rig.controller.state, SessionState.IDLE)
            release.set()
            self.assertFalse(await start_task)
            self.assertIs(rig.controller.state, SessionState.IDLE)
            self.assertEqual(rig.transports, [])
            self.assertEqual(rig.microphone.started, 0)
            self.assertIsNone(rig.controller.error)

        asyncio.run(scenario())

    def test_stop_while_transport_connects_closes_it(self) -> None:
        async def scenario() -> None:
            gate = asyncio.Event()
            rig = _Rig(connect_gate=gate)
            start_task = asyncio.create_task(rig.controller.start(CONFIG))
            await _settle()
            self.assertEqual(len(rig.transports), 1)

            await rig.controller.stop()
            gate.set()
            self.assertFalse(await start_task)
            self.assertIs(rig.controller.state, SessionState.IDLE)
            self.assertEqual(rig.transport.closed, 1)
            self.assertEqual(rig.microphone.started, 0)

        asyncio.run(scenario())


class SessionRecordingTests(unittest.TestCase):
    def test_final_segment_is_translated_and_patched(self) -> None:
        async def scenario() -> None:
            rig = _Rig(translate_result="你好")
            await rig.controller.start(CONFIG)
            rig.transport.push(_tokens(("Hello", True)))
            await _settle()
            await rig.controller.shutdown()

            entries = rig.controller.entries
            self.assertEqual(len(entries), 1)
            self.assertEqual(entries[0].original_text, "Hello")
            self.assertEqual(entries[0].translated_text, "你好")
            args = rig.translator.translate.await_args
            self.assertEqual(args.args, ("Hello", "en", "zh"))
            self.assertGreater(rig.changes, 0)

        asyncio.run(scenario())

    def test_malformed_messages_are_ignored(self) -> None:
        async def scenario() -> None:
            rig = _Rig()
            await rig.controller.start(CONFIG)
            rig.transport.push("not json")
            rig.transport.push(_tokens(("Still ", True), ("here", False)))
            await _settle()
            self.assertIs(rig.controller.state, SessionState.RECORDING)
            self.assertEqual(rig.controller.current_interim, "here")
            await rig.controller.stop()

        asyncio.run(scenario())

    def test_stop_finalizes_active_segment_and_is_idempotent(self) -> None:
        async def scenario() -> None:
            rig = _Rig()
            await rig.controller.start(CONFIG)
            rig.transport.push(_tokens(("Hello ", True), ("wor", False)))
            await _settle()

            await rig.controller.stop()
            await rig.controller.stop()

            entries = rig.controller.entries
            self.assertEqual(len(entries), 1)
            self.assertTrue(entries[0].is_final)
            self.assertEqual(entries[0].original_text, "Hello")
            self.assertIs(rig.controller.state, SessionState.IDLE)
            self.assertEqual(rig.transport.end_of_input_sent, 1)
            self.assertEqual(rig.transport.closed, 1)
            self.assertEqual(rig.microphone.stopped, 1)
            await rig.controller.dispatcher.drain()

        asyncio.run(scenario())

    def test_finished_message_finalizes(self) -> None:
        async def scenario() -> None:
            rig = _Rig()
            await rig.controller.start(CONFIG)
            rig.transport.push(_tokens(("Thanks ", True), ("every", False)))
            rig.transport.push({"finished": True})
            await _settle()
            self.assertIsNone(rig.controller.accumulator.active_segment)
            self.assertTrue(rig.controller.entries[0].is_final)
            await rig.controller.shutdown()

        asyncio.run(scenario())

    def test_provider_error_tears_down(self) -> None:
        async def scenario() -> None:
            rig = _Rig()
            await rig.controller.start(CONFIG)
            rig.transport.push(_tokens(("Half ", True), ("way", False)))
            rig.transport.push({"error_code": 401, "error_message": "Invalid API key"})
            await _settle()

            self.assertIs(rig.controller.state, SessionState.IDLE)
            self.assertEqual(rig.controller.error, "Invalid API key")
            self.assertEqual(rig.controller.entries[0].original_text, "Half")
            self.assertTrue(rig.controller.entries[0].is_final)
            self.assertEqual(rig.transport.closed, 1)
            self.assertEqual(rig.transport.end_of_input_sent, 0)
            self.assertEqual(rig.microphone.stopped, 1)
            await rig.controller.dispatcher.drain()

        asyncio.run(scenario())

    def test_unexpected_close_reports_code_and_keeps_confirmed_text(self) -> None:
        async def scenario() -> None:
            rig = _Rig()
            await rig.controller.start(CONFIG)
            rig.transport.push(_tokens(("Before the drop ", True), ("and", False)))
            rig.transport.disconnect(1006)
            await _settle()

            self.assertIs(rig.controller.state, SessionState.IDLE)
            self.assertEqual(rig.controller.error, "Disconnected: 1006")
            self.assertEqual(rig.controller.entries[0].original_text, "Before the drop")
            self.assertTrue(rig.controller.entries[0].is_final)
            self.assertEqual(rig.microphone.stopped, 1)
            await rig.controller.dispatcher.drain()

        asyncio.run(scenario())

    def test_normal_close_is_not_an_error(self) -> None:
        async def scenario() -> None:
            rig = _Rig()
            await rig.controller.start(CONFIG)
            rig.transport.disconnect(1000)
            await _settle()
            self.assertIs(rig.controller.state, SessionState.IDLE)
            self.assertIsNone(rig.controller.error)

        asyncio.run(scenario())

    def test_in_flight_translation_lands_after_stop(self) -> None:
        async def scenario() -> None:
            rig = _Rig()
            release = asyncio.Event()

            async def slow_translate(*_args, **_kwargs) -> str:
                await release.wait()
                return "你好"

            rig.translator.translate = slow_translate
            await rig.controller.start(CONFIG)
            rig.transport.push(_tokens(("Hello", True)))
            await _settle()
            await rig.controller.stop()
            self.assertEqual(rig.controller.entries[0].translated_text, "")

            release.set()
            await rig.controller.dispatcher.drain()
            self.assertEqual(rig.controller.entries[0].translated_text, "你好")

        asyncio.run(scenario())

    def test_skip_translation_reports_segments_to_callback(self) -> None:
        finalized: list[tuple[str, str, str]] = []

        async def scenario() -> None:
            rig = _Rig(skip_translation=True, on_segment_finalized=lambda *args: finalized.append(args))
            await rig.controller.start(CONFIG)
            rig.transport.push(_tokens(("你好世界", True), language="zh"))
            await _settle()
            await rig.controller.shutdown()
            rig.translator.translate.assert_not_awaited()
            self.assertIsNone(rig.controller.dispatcher)

        asyncio.run(scenario())
        self.assertEqual(len(finalized), 1)
        entry_id, text, language = finalized[0]
        self.assertTrue(entry_id.startswith("entry-"))
        self.assertEqual(text, "你好世界")
        self.assertEqual(language, "zh")

    def test_deepgram_results_drive_segments(self) -> None:
        def results(words: list[tuple[str, float]], is_final: bool, speech_final: bool = False) -> dict:
            return {
                "type": "Results",
                "is_final": is_final,
                "speech_final": speech_final,
                "channel": {
                    "detected_language": "en",
                    "alternatives": [
                        {
                            "transcript": " ".join(word for word, _ in words),
                            "words": [
                                {"word": word.lower(), "punctuated_word": word, "start": start, "end": start + 0.3, "speaker": 0}
                                for word, start in words
                            ],
                        }
                    ],
                },
            }

        async def scenario() -> None:
            rig = _Rig(adapter_class=DeepgramAdapter)
            await rig.controller.start(CONFIG)
            rig.transport.push({"type": "Metadata", "request_id": "abc"})
            rig.transport.push(results([("Hello", 0.1)], is_final=False))
            await _settle()
            self.assertEqual(rig.controller.current_interim, " Hello")

            rig.transport.push(results([("Hello", 0.1), ("there.", 0.5)], is_final=True))
            await _settle()
            self.assertIsNotNone(rig.controller.accumulator.active_segment)

            rig.transport.push({"type": "UtteranceEnd", "last_word_end": 0.8})
            await _settle()
            await rig.controller.shutdown()

            entries = rig.controller.entries
            self.assertEqual(len(entries), 1)
            self.assertEqual(entries[0].original_text, "Hello there.")
            self.assertEqual(entries[0].speaker_id, "0")
            self.assertEqual(entries[0].translated_text, "你好")
            self.assertEqual(rig.translator.translate.await_args.args, ("Hello there.", "en", "zh"))

        asyncio.run(scenario())

    def test_clear_drops_entries_and_speakers(self) -> None:
        async def scenario() -> None:
            rig = _Rig()
            await rig.controller.start(CONFIG)
            rig.transport.push(_tokens(("Hello", True)))
            await _settle()
            await rig.controller.shutdown()
            self.assertEqual(len(rig.controller.speakers), 1)

            self.assertTrue(rig.controller.rename_speaker("1", "Host"))
            self.assertEqual(rig.controller.entries[0].speaker_label, "Host")
            rig.controller.clear()
            self.assertEqual(rig.controller.entries, [])
            self.assertEqual(rig.controller.speakers, [])

        asyncio.run(scenario())


if __name__ == "__main__":
    unittest.main()
