from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional


def _percentile(values: list[float], ratio: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    if len(ordered) == 1:
        return ordered[0]
    index = (len(ordered) - 1) * ratio
    lower = int(index)
    upper = min(lower + 1, len(ordered) - 1)
    if lower == upper:
        return ordered[lower]
    weight = index - lower
    return ordered[lower] * (1.0 - weight) + ordered[upper] * weight


def _now_iso() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


class SessionMetricsReporter:
    def __init__(self, enabled: bool, output_path: str, summary_path: str, append_mode: bool = False) -> None:
        self._enabled = enabled
        self._output_path = Path(output_path)
        self._summary_path = Path(summary_path)
        self._append_mode = append_mode
        self._session_started_at: Optional[datetime] = None
        self._translation_latencies: list[float] = []
        self._segments_finalized = 0
        self._segments_merged = 0
        self._translations_failed = 0
        self._error_events = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start_session(self) -> None:
        if not self._enabled:
            return
        self._session_started_at = datetime.now()
        self._translation_latencies.clear()
        self._segments_finalized = 0
        self._segments_merged = 0
        self._translations_failed = 0
        self._error_events = 0
        self._ensure_parent_dirs()
        if not self._append_mode:
            self._output_path.write_text("", encoding="utf-8")

    def record_segment(
        self,
        entry_id: str,
        speaker_id: str,
        language: str,
        text_length: int,
        merged: bool = False,
    ) -> None:
        if not self._enabled:
            return
        self._segments_finalized += 1
        if merged:
            self._segments_merged += 1
        self._append_jsonl(
            {
                "event_type": "segment",
                "recorded_at": _now_iso(),
                "entry_id": entry_id,
                "speaker_id": speaker_id,
                "language": language or "unknown",
                "text_length": text_length,
                "merged": merged,
            }
        )

    def record_translation(self, entry_id: str, target_language: str, latency_s: float, error: str = "") -> None:
        if not self._enabled:
            return
        if error:
            self._translations_failed += 1
        else:
            self._translation_latencies.append(latency_s)
        self._append_jsonl(
            {
                "event_type": "translation",
                "recorded_at": _now_iso(),
                "entry_id": entry_id,
                "target_language": target_language,
                "latency_s": latency_s,
                "error": error,
            }
        )

    def record_error(self, stage: str, error: str) -> None:
        if not self._enabled:
            return
        self._error_events += 1
        self._append_jsonl(
            {
                "event_type": "error",
                "recorded_at": _now_iso(),
                "stage": stage,
                "error": error,
            }
        )

    def snapshot(self) -> dict[str, float]:
        translations = len(self._translation_latencies) + self._translations_failed
        return {
            "avg_translation_s": (
                sum(self._translation_latencies) / len(self._translation_latencies)
                if self._translation_latencies
                else 0.0
            ),
            "p95_translation_s": _percentile(self._translation_latencies, 0.95),
            "translation_failure_pct": (self._translations_failed / translations) * 100.0 if translations else 0.0,
        }

    def finalize_session(self) -> dict[str, Any]:
        if not self._enabled or self._session_started_at is None:
            return {}
        now = datetime.now()
        started = self._session_started_at
        summary = {
            "session_started_at": started.isoformat(timespec="milliseconds"),
            "session_ended_at": now.isoformat(timespec="milliseconds"),
            "session_duration_s": max(0.0, (now - started).total_seconds()),
            "segments_finalized": self._segments_finalized,
            "segments_merged": self._segments_merged,
            "translations_ok": len(self._translation_latencies),
            "translations_failed": self._translations_failed,
            "error_events": self._error_events,
            "translation_p50_s": _percentile(self._translation_latencies, 0.50),
            "translation_p95_s": _percentile(self._translation_latencies, 0.95),
            "translation_max_s": max(self._translation_latencies) if self._translation_latencies else 0.0,
        }
        self._session_started_at = None
        self._write_summary(summary)
        return summary

    def _ensure_parent_dirs(self) -> None:
        self._output_path.parent.mkdir(parents=True, exist_ok=True)
        self._summary_path.parent.mkdir(parents=True, exist_ok=True)

    def _append_jsonl(self, payload: dict[str, Any]) -> None:
        self._ensure_parent_dirs()
        line = json.dumps(payload, ensure_ascii=False)
        with self._output_path.open("a", encoding="utf-8") as handle:
            handle.write(line)
            handle.write("\n")

    def _write_summary(self, summary: dict[str, Any]) -> None:
        self._ensure_parent_dirs()
        with self._summary_path.open("w", encoding="utf-8") as handle:
            json.dump(summary, handle, ensure_ascii=False, indent=2)
