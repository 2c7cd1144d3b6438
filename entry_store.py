from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Final, Iterator, Optional

logger = logging.getLogger(__name__)

_WORD_PATTERN: Final[re.Pattern[str]] = re.compile(r"[\u4e00-\u9fff\u3400-\u4dbf]|[^\s\u4e00-\u9fff\u3400-\u4dbf]+")


def count_words(text: str) -> int:
    # CJK ideographs count one each; other scripts count whitespace-separated runs.
    return len(_WORD_PATTERN.findall(text or ""))


@dataclass
class Entry:
    id: str
    speaker_id: str
    language: str
    original_text: str
    is_final: bool
    start_ms: int = 0
    end_ms: int = 0
    speaker_label: str = ""
    translated_text: str = ""
    interim_original: Optional[str] = None
    interim_translated: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class SpeakerInfo:
    id: str
    label: str
    word_count: int = 0


class SpeakerRegistry:
    def __init__(self) -> None:
        self._speakers: dict[str, SpeakerInfo] = {}

    def register(self, speaker_id: str) -> SpeakerInfo:
        info = self._speakers.get(speaker_id)
        if info is None:
            info = SpeakerInfo(id=speaker_id, label=f"Speaker {len(self._speakers) + 1}")
            self._speakers[speaker_id] = info
        return info

    def label(self, speaker_id: str) -> str:
        return self.register(speaker_id).label

    def rename(self, speaker_id: str, label: str) -> bool:
        info = self._speakers.get(speaker_id)
        cleaned = (label or "").strip()
        if info is None or not cleaned:
            return False
        info.label = cleaned
        return True

    def add_words(self, speaker_id: str, count: int) -> None:
        info = self.register(speaker_id)
        info.word_count = max(0, info.word_count + count)

    def speakers(self) -> list[SpeakerInfo]:
        return list(self._speakers.values())

    def clear(self) -> None:
        self._speakers.clear()


class EntryStore:
    # Field writers are disjoint; patches against unknown ids are no-ops.
    def __init__(self, speakers: Optional[SpeakerRegistry] = None) -> None:
        self._entries: dict[str, Entry] = {}
        self.speakers = speakers or SpeakerRegistry()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    def __iter__(self) -> Iterator[Entry]:
        return iter(list(self._entries.values()))

    def get(self, entry_id: str) -> Optional[Entry]:
        return self._entries.get(entry_id)

    def entries(self) -> list[Entry]:
        return list(self._entries.values())

    def upsert(self, entry: Entry) -> bool:
        existing = self._entries.get(entry.id)
        if existing is not None and existing.is_final and not entry.is_final:
            logger.warning("entry_upsert_rejected entry=%s reason=already_final", entry.id)
            return False
        entry.speaker_label = self.speakers.label(entry.speaker_id)
        if existing is not None and existing.is_final:
            # Keep fields owned by other writers.
            entry.translated_text = entry.translated_text or existing.translated_text
        if entry.is_final and (existing is None or not existing.is_final):
            self.speakers.add_words(entry.speaker_id, count_words(entry.original_text))
        self._entries[entry.id] = entry
        return True

    def remove(self, entry_id: str) -> bool:
        entry = self._entries.get(entry_id)
        if entry is None or entry.is_final:
            return False
        del self._entries[entry_id]
        return True

    def patch_translation(self, entry_id: str, text: str) -> bool:
        entry = self._entries.get(entry_id)
        if entry is None:
            return False
        entry.translated_text = text
        return True

    def reassign_speaker(self, entry_id: str, speaker_id: str) -> bool:
        entry = self._entries.get(entry_id)
        if entry is None:
            return False
        speaker_id = str(speaker_id)
        if entry.speaker_id == speaker_id:
            return True
        if entry.is_final:
            words = count_words(entry.original_text)
            self.speakers.add_words(entry.speaker_id, -words)
            self.speakers.add_words(speaker_id, words)
        entry.speaker_id = speaker_id
        entry.speaker_label = self.speakers.label(speaker_id)
        return True

    def rename_speaker(self, speaker_id: str, label: str) -> bool:
        if not self.speakers.rename(speaker_id, label):
            return False
        for entry in self._entries.values():
            if entry.speaker_id == speaker_id:
                entry.speaker_label = label.strip()
        return True

    def recent_originals(self, exclude_id: Optional[str] = None, limit: int = 3) -> list[str]:
        if limit <= 0:
            return []
        context: list[str] = []
        for entry in reversed(self._entries.values()):
            if entry.id == exclude_id or not entry.is_final:
                continue
            text = entry.original_text.strip()
            if not text:
                continue
            context.append(text)
            if len(context) >= limit:
                break
        context.reverse()
        return context

    def clear(self) -> None:
        self._entries.clear()
        self.speakers.clear()
