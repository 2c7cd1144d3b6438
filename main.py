from __future__ import annotations

import asyncio
import logging
import os
import signal
from contextlib import suppress
from typing import Optional

from dotenv import load_dotenv

from config_utils import read_int_env
from entry_store import Entry
from session_config import SessionConfig
from session_controller import SessionController, SessionState


class ConsoleRenderer:
    def __init__(self) -> None:
        self._controller: Optional[SessionController] = None
        self._printed_originals: set[str] = set()
        self._printed_translations: set[str] = set()
        self._last_interim = ""

    def attach(self, controller: SessionController) -> None:
        self._controller = controller

    def refresh(self) -> None:
        if self._controller is None:
            return
        for entry in self._controller.entries:
            if not entry.is_final:
                continue
            if entry.id not in self._printed_originals:
                self._printed_originals.add(entry.id)
                print(self._format_original(entry), flush=True)
            if entry.translated_text and entry.id not in self._printed_translations:
                self._printed_translations.add(entry.id)
                print(f"        -> {entry.translated_text}", flush=True)
        interim = self._controller.current_interim.strip()
        if interim and interim != self._last_interim:
            logging.debug("interim text=%r", interim[:120])
        self._last_interim = interim

    @staticmethod
    def _format_original(entry: Entry) -> str:
        seconds = max(0, entry.start_ms) // 1000
        language = entry.language or "?"
        return f"[{seconds // 60:02d}:{seconds % 60:02d}] {entry.speaker_label} ({language}): {entry.original_text}"


async def run_session() -> None:
    config = SessionConfig.from_env()
    renderer = ConsoleRenderer()
    controller = SessionController(on_change=renderer.refresh)
    renderer.attach(controller)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_requested.set)

    if not await controller.start(config):
        logging.error("Startup error: %s", controller.error)
        return
    logging.info("Recording. Press Ctrl+C to stop.")

    max_seconds = read_int_env("SESSION_MAX_SECONDS", 0)
    while controller.state is not SessionState.IDLE and not stop_requested.is_set():
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop_requested.wait(), timeout=0.5)
        if max_seconds and controller.elapsed_seconds >= max_seconds:
            break

    await controller.shutdown()
    if controller.error:
        logging.error("Session ended with error: %s", controller.error)


def main() -> None:
    load_dotenv()
    log_level_name = (os.getenv("LOG_LEVEL", "INFO") or "INFO").upper()
    log_level = getattr(logging, log_level_name, logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(message)s")
    logging.getLogger("httpx").setLevel(logging.WARNING)
    asyncio.run(run_session())


if __name__ == "__main__":
    main()
