from __future__ import annotations

import asyncio
import logging
import os
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Final, Optional, Protocol, Union

import httpx
import websockets

from config_utils import read_float_env, read_int_env
from session_config import SessionConfig
from token_filter import Token

logger = logging.getLogger(__name__)

SAMPLE_RATE: Final[int] = 24000
NORMAL_CLOSE_CODES: Final[frozenset[int]] = frozenset({1000, 1005})
ABNORMAL_CLOSE_CODE: Final[int] = 1006

RawMessage = Union[str, bytes]


@dataclass
class ProviderMessage:
    kind: str
    tokens: list[Token] = field(default_factory=list)
    error: str = ""

    @property
    def is_tokens(self) -> bool:
        return self.kind == "tokens"

    @property
    def is_finished(self) -> bool:
        return self.kind == "finished"

    @property
    def is_error(self) -> bool:
        return self.kind == "error"


class StreamingTransport(Protocol):
    @property
    def close_code(self) -> Optional[int]: ...

    async def connect(self, credential: str, config: SessionConfig) -> None: ...

    async def send_audio(self, pcm16: bytes) -> None: ...

    def messages(self) -> AsyncIterator[RawMessage]: ...

    async def send_end_of_input(self) -> None: ...

    async def close(self) -> None: ...


class ProviderAdapter(Protocol):
    name: str

    async def fetch_credential(self) -> str: ...

    def create_transport(self) -> StreamingTransport: ...

    def parse_message(self, raw: RawMessage) -> Optional[ProviderMessage]: ...


class TemporaryCredentialProvider:
    provider_name = "Provider"
    env_prefix = ""
    default_url = ""
    auth_scheme = "Bearer"
    response_key = "api_key"

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._url = url or self.default_url
        self._transport = transport
        self._ttl_seconds = read_int_env(f"{self.env_prefix}_KEY_TTL_SECONDS", 600)
        self._timeout_s = read_float_env(f"{self.env_prefix}_TOKEN_TIMEOUT_S", 10.0)

    @property
    def api_key_env(self) -> str:
        return f"{self.env_prefix}_API_KEY"

    async def fetch_temporary_key(self) -> str:
        key = self._api_key or os.getenv(self.api_key_env)
        if not key:
            raise RuntimeError(f"{self.api_key_env} is required for transcription.")
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.post(
                    self._url,
                    headers={"Authorization": f"{self.auth_scheme} {key}"},
                    json=self._request_body(),
                )
        except httpx.HTTPError as exc:
            raise RuntimeError(f"{self.provider_name} token request failed: {exc}") from exc
        if not response.is_success:
            raise RuntimeError(f"{self.provider_name} token request failed: {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise RuntimeError(f"{self.provider_name} token response was not JSON.") from exc
        temporary_key = data.get(self.response_key) if isinstance(data, dict) else None
        if not isinstance(temporary_key, str) or not temporary_key:
            raise RuntimeError(f"{self.provider_name} token response did not include an {self.response_key}.")
        return temporary_key

    def _request_body(self) -> dict[str, Any]:
        return {"expires_in_seconds": self._ttl_seconds}


class WebSocketTransport:
    provider_name = "Provider"
    env_prefix = ""

    def __init__(self, url: str) -> None:
        self._url = url
        self._connect_timeout_s = read_float_env(f"{self.env_prefix}_CONNECT_TIMEOUT_S", 10.0)
        self._ws = None
        self._close_code: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    @property
    def close_code(self) -> Optional[int]:
        return self._close_code

    async def connect(self, credential: str, config: SessionConfig) -> None:
        self._close_code = None
        try:
            ws = await asyncio.wait_for(
                websockets.connect(
                    self._connect_url(credential, config),
                    additional_headers=self._connect_headers(credential),
                    max_size=None,
                ),
                timeout=self._connect_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise RuntimeError(f"{self.provider_name} connection timeout") from exc
        except (OSError, websockets.WebSocketException) as exc:
            raise RuntimeError(f"{self.provider_name} WebSocket error: {exc}") from exc
        self._ws = ws
        logger.debug("provider_connected provider=%s", self.provider_name)
        initial = self._initial_message(credential, config)
        if initial is None:
            return
        try:
            await ws.send(initial)
        except Exception:
            await self.close()
            raise

    async def send_audio(self, pcm16: bytes) -> None:
        if self._ws is None or not pcm16:
            return
        await self._ws.send(pcm16)

    async def messages(self) -> AsyncIterator[RawMessage]:
        ws = self._ws
        if ws is None:
            return
        try:
            async for message in ws:
                yield message
        except websockets.ConnectionClosed as exc:
            self._close_code = exc.rcvd.code if exc.rcvd is not None else ABNORMAL_CLOSE_CODE
            return
        self._close_code = getattr(ws, "close_code", None) or 1000

    async def send_end_of_input(self) -> None:
        if self._ws is None:
            return
        with suppress(Exception):
            await self._ws.send(self._end_of_input())

    async def close(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is None:
            return
        with suppress(Exception):
            await ws.close()

    def _connect_url(self, credential: str, config: SessionConfig) -> str:
        return self._url

    def _connect_headers(self, credential: str) -> dict[str, str]:
        return {}

    def _initial_message(self, credential: str, config: SessionConfig) -> Optional[RawMessage]:
        return None

    def _end_of_input(self) -> RawMessage:
        return b""
