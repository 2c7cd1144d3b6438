from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import numpy as np

from provider_adapter import SAMPLE_RATE


@dataclass
class AudioFrame:
    captured_at: datetime
    sample_rate: int
    samples: np.ndarray


def to_pcm16(samples: np.ndarray, sample_rate: int, target_rate: int = SAMPLE_RATE) -> bytes:
    mono = np.asarray(samples, dtype=np.float32).reshape(-1)
    if mono.shape[0] == 0:
        return b""
    if sample_rate != target_rate:
        target_len = max(1, int(round(mono.shape[0] * target_rate / sample_rate)))
        src_x = np.linspace(0.0, 1.0, num=mono.shape[0], endpoint=False)
        dst_x = np.linspace(0.0, 1.0, num=target_len, endpoint=False)
        mono = np.interp(dst_x, src_x, mono).astype(np.float32)
    clamped = np.clip(mono, -1.0, 1.0)
    return (clamped * 32767).astype("<i2").tobytes()


class MicrophoneListener:
    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        output_queue: asyncio.Queue[AudioFrame],
        sample_rate: int = SAMPLE_RATE,
        channels: int = 1,
        device: Optional[str] = None,
    ) -> None:
        self._loop = loop
        self._output_queue = output_queue
        self._sample_rate = sample_rate
        self._channels = channels
        self._device = device or None
        self._stream = None
        self._lock = threading.Lock()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    def start(self) -> None:
        if self._running:
            return
        import sounddevice as sd

        stream = sd.InputStream(
            samplerate=self._sample_rate,
            channels=self._channels,
            dtype="float32",
            callback=self._audio_callback,
            device=self._device,
            blocksize=0,
        )
        try:
            stream.start()
        except Exception:
            stream.close()
            raise
        self._stream = stream
        self._running = True

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            stream = self._stream
            self._stream = None
        if stream is not None:
            stream.stop()
            stream.close()

    def _audio_callback(self, indata, frames, time_info, status) -> None:
        del frames, time_info, status
        if not self._running:
            return
        frame = AudioFrame(
            captured_at=datetime.now(),
            sample_rate=self._sample_rate,
            samples=np.copy(indata[:, 0]),
        )
        with self._lock:
            if not self._running:
                return
            self._loop.call_soon_threadsafe(self._publish_frame, frame)

    def _publish_frame(self, frame: AudioFrame) -> None:
        if not self._running:
            return
        try:
            self._output_queue.put_nowait(frame)
        except asyncio.QueueFull:
            try:
                self._output_queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._output_queue.put_nowait(frame)
