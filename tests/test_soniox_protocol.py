from __future__ import annotations

import json
import unittest

from session_config import SessionConfig
from soniox_protocol import SAMPLE_RATE, build_session_config_message, parse_provider_message


class ParseProviderMessageTests(unittest.TestCase):
    def test_token_frame_is_normalized(self) -> None:
        raw = json.dumps(
            {
                "tokens": [
                    {"text": "Hello", "is_final": True, "speaker": 1, "start_ms": 120, "end_ms": 480.0, "language": "EN"},
                    {"text": " wor", "is_final": False, "speaker": "1"},
                    {"is_final": True},
                    "garbage",
                ]
            }
        )
        message = parse_provider_message(raw)
        self.assertIsNotNone(message)
        self.assertTrue(message.is_tokens)
        self.assertEqual(len(message.tokens), 2)
        first = message.tokens[0]
        self.assertEqual(first.speaker, "1")
        self.assertEqual(first.start_ms, 120)
        self.assertEqual(first.end_ms, 480)
        self.assertEqual(first.language, "en")
        self.assertTrue(first.is_final)
        self.assertFalse(message.tokens[1].is_final)
        self.assertEqual(message.tokens[1].language, "")

    def test_error_frame_prefers_error_message(self) -> None:
        message = parse_provider_message('{"error_code": 401, "error_message": "Invalid API key"}')
        self.assertTrue(message.is_error)
        self.assertEqual(message.error, "Invalid API key")

    def test_error_frame_without_message_uses_code(self) -> None:
        message = parse_provider_message({"error_code": 503})
        self.assertTrue(message.is_error)
        self.assertEqual(message.error, "Error code: 503")

    def test_finished_frame_keeps_trailing_tokens(self) -> None:
        message = parse_provider_message({"finished": True, "tokens": [{"text": "bye", "is_final": True}]})
        self.assertTrue(message.is_finished)
        self.assertEqual([token.text for token in message.tokens], ["bye"])

    def test_malformed_frames_are_dropped(self) -> None:
        self.assertIsNone(parse_provider_message("not json"))
        self.assertIsNone(parse_provider_message("[1, 2, 3]"))
        self.assertIsNone(parse_provider_message('{"status": "ok"}'))


class SessionConfigMessageTests(unittest.TestCase):
    def test_includes_audio_format_and_language_hints(self) -> None:
        config = SessionConfig(source_languages=("zh",), target_language="en")
        message = build_session_config_message("temp-key", config, model="stt-rt-preview")
        self.assertEqual(message["api_key"], "temp-key")
        self.assertEqual(message["audio_format"], "pcm_s16le")
        self.assertEqual(message["sample_rate"], SAMPLE_RATE)
        self.assertEqual(message["num_channels"], 1)
        self.assertTrue(message["enable_speaker_diarization"])
        self.assertTrue(message["enable_endpoint_detection"])
        self.assertEqual(message["language_hints"], ["zh", "en"])
        self.assertNotIn("context", message)

    def test_context_terms_are_sent_when_present(self) -> None:
        config = SessionConfig(source_languages=("*",), target_language="en", context_terms=("OEM", "MOQ"))
        message = build_session_config_message("temp-key", config)
        self.assertEqual(message["language_hints"], ["en"])
        self.assertEqual(message["context"], {"terms": ["OEM", "MOQ"]})


if __name__ == "__main__":
    unittest.main()
