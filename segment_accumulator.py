from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional

from entry_store import Entry, EntryStore
from language_heuristic import LanguageHeuristic
from session_config import SegmentationSettings, SessionConfig
from token_filter import Token, filter_tokens, is_endpoint_marker, joined_text, split_tokens

logger = logging.getLogger(__name__)

FinalizeHook = Callable[[Entry, bool], None]


@dataclass
class Segment:
    speaker_id: str
    entry_id: str
    start_ms: int = 0
    end_ms: int = 0
    language: str = ""
    language_from_provider: bool = False
    final_tokens: list[Token] = field(default_factory=list)
    interim_tokens: list[Token] = field(default_factory=list)
    opened_at: datetime = field(default_factory=datetime.now)

    def final_text(self) -> str:
        return joined_text(self.final_tokens)

    def interim_text(self) -> str:
        return joined_text(self.interim_tokens)


@dataclass(frozen=True)
class LastFinalizedMemo:
    speaker_id: str
    language: str
    end_ms: int


def resolve_merged_speaker(
    speaker_id: str,
    text: str,
    language: str,
    start_ms: int,
    memo: Optional[LastFinalizedMemo],
    settings: SegmentationSettings,
) -> str:
    if memo is None or memo.speaker_id == speaker_id:
        return speaker_id
    if start_ms - memo.end_ms >= settings.merge_gap_ms:
        return speaker_id
    if len(text) >= settings.merge_max_chars:
        return speaker_id
    if language != memo.language:
        return speaker_id
    return memo.speaker_id


class SegmentAccumulator:
    DEFAULT_SPEAKER = "0"

    def __init__(
        self,
        store: EntryStore,
        config: Optional[SessionConfig] = None,
        settings: Optional[SegmentationSettings] = None,
        on_finalized: Optional[FinalizeHook] = None,
    ) -> None:
        self._store = store
        self._settings = settings or SegmentationSettings()
        self._config = config or SessionConfig()
        self._heuristic = LanguageHeuristic(self._config, self._settings)
        self._on_finalized = on_finalized
        self._segment: Optional[Segment] = None
        self._last_finalized: Optional[LastFinalizedMemo] = None
        self._ids = itertools.count()
        self.current_interim = ""

    @property
    def active_segment(self) -> Optional[Segment]:
        return self._segment

    @property
    def last_finalized(self) -> Optional[LastFinalizedMemo]:
        return self._last_finalized

    @property
    def config(self) -> SessionConfig:
        return self._config

    def configure(self, config: SessionConfig) -> None:
        self._config = config
        self._heuristic = LanguageHeuristic(config, self._settings)

    def reset(self) -> None:
        # Entry ids are never reused, even across sessions.
        self._segment = None
        self._last_finalized = None
        self.current_interim = ""

    def handle_tokens(self, raw_tokens: Iterable[Token]) -> None:
        raw_tokens = list(raw_tokens)
        endpoint_marked = any(is_endpoint_marker(token) for token in raw_tokens)
        tokens = filter_tokens(raw_tokens)
        if not tokens:
            if endpoint_marked:
                self.finalize()
            return

        final_tokens, interim_tokens = split_tokens(tokens)
        batch_speaker = self._batch_speaker(tokens)

        if self._segment is not None and self._segment.speaker_id != batch_speaker:
            logger.debug(
                "speaker_change from=%s to=%s entry=%s",
                self._segment.speaker_id,
                batch_speaker,
                self._segment.entry_id,
            )
            self.finalize()

        if self._segment is None:
            self._segment = self._open_segment(batch_speaker, tokens)
        segment = self._segment

        self._update_language(segment, tokens)
        if final_tokens:
            segment.final_tokens.extend(final_tokens)
            segment.end_ms = final_tokens[-1].end_ms
        # Interim tokens are a full preview of the next words, never accumulated.
        segment.interim_tokens = interim_tokens

        if not interim_tokens and (final_tokens or endpoint_marked):
            self.finalize()
            return
        self._publish_interim(segment)

    def finalize(self) -> Optional[Entry]:
        segment = self._segment
        if segment is None:
            return None
        self._segment = None
        self.current_interim = ""

        text = segment.final_text().strip()
        if not text:
            self._store.remove(segment.entry_id)
            logger.debug("segment_discarded entry=%s reason=empty_text", segment.entry_id)
            return None

        language = segment.language or self._heuristic.detect(text)
        speaker_id = resolve_merged_speaker(
            segment.speaker_id,
            text,
            language,
            segment.start_ms,
            self._last_finalized,
            self._settings,
        )
        if speaker_id != segment.speaker_id:
            logger.debug(
                "segment_merged entry=%s speaker=%s previous_speaker=%s",
                segment.entry_id,
                segment.speaker_id,
                speaker_id,
            )
        entry = Entry(
            id=segment.entry_id,
            speaker_id=speaker_id,
            language=language,
            original_text=text,
            is_final=True,
            start_ms=segment.start_ms,
            end_ms=segment.end_ms,
            timestamp=segment.opened_at,
        )
        self._store.upsert(entry)
        self._last_finalized = LastFinalizedMemo(speaker_id=speaker_id, language=language, end_ms=segment.end_ms)
        logger.debug(
            "segment_finalized entry=%s speaker=%s language=%s chars=%d",
            entry.id,
            speaker_id,
            language or "unknown",
            len(text),
        )
        if self._on_finalized is not None:
            self._on_finalized(entry, speaker_id != segment.speaker_id)
        return entry

    def _batch_speaker(self, tokens: list[Token]) -> str:
        for token in tokens:
            if token.speaker:
                return token.speaker
        if self._segment is not None:
            return self._segment.speaker_id
        return self.DEFAULT_SPEAKER

    def _open_segment(self, speaker_id: str, tokens: list[Token]) -> Segment:
        language = next((token.language for token in tokens if token.language), "")
        return Segment(
            speaker_id=speaker_id,
            entry_id=f"entry-{next(self._ids)}",
            start_ms=tokens[0].start_ms,
            end_ms=tokens[0].start_ms,
            language=language,
            language_from_provider=bool(language),
        )

    def _update_language(self, segment: Segment, tokens: list[Token]) -> None:
        provided = next((token.language for token in tokens if token.language), "")
        if provided:
            if not segment.language_from_provider:
                segment.language = provided
                segment.language_from_provider = True
            return
        if segment.language:
            return
        segment.language = self._heuristic.detect(segment.final_text() + joined_text(tokens))

    def _publish_interim(self, segment: Segment) -> None:
        interim_text = segment.interim_text()
        end_ms = segment.interim_tokens[-1].end_ms if segment.interim_tokens else segment.end_ms
        self._store.upsert(
            Entry(
                id=segment.entry_id,
                speaker_id=segment.speaker_id,
                language=segment.language,
                original_text=segment.final_text().strip(),
                is_final=False,
                start_ms=segment.start_ms,
                end_ms=max(end_ms, segment.end_ms),
                interim_original=interim_text,
                timestamp=segment.opened_at,
            )
        )
        self.current_interim = interim_text
