from __future__ import annotations

from typing import Any, Callable, Optional

from config_utils import read_str_env
from deepgram_protocol import (
    CLOSE_STREAM,
    DEFAULT_MODEL,
    GRANT_URL,
    LISTEN_URL,
    build_listen_url,
    parse_deepgram_message,
)
from provider_adapter import (
    ProviderMessage,
    RawMessage,
    TemporaryCredentialProvider,
    WebSocketTransport,
)
from session_config import SessionConfig


class DeepgramCredentialProvider(TemporaryCredentialProvider):
    provider_name = "Deepgram"
    env_prefix = "DEEPGRAM"
    default_url = GRANT_URL
    auth_scheme = "Token"
    response_key = "access_token"

    def _request_body(self) -> dict[str, Any]:
        return {"ttl_seconds": self._ttl_seconds}


class DeepgramTransport(WebSocketTransport):
    provider_name = "Deepgram"
    env_prefix = "DEEPGRAM"

    def __init__(self, url: str = LISTEN_URL, model: Optional[str] = None) -> None:
        super().__init__(url)
        self._model = model or read_str_env("DEEPGRAM_MODEL", DEFAULT_MODEL)

    def _connect_url(self, credential: str, config: SessionConfig) -> str:
        return build_listen_url(config, model=self._model, url=self._url)

    def _connect_headers(self, credential: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {credential}"}

    def _end_of_input(self) -> RawMessage:
        return CLOSE_STREAM


class DeepgramAdapter:
    name = "deepgram"

    def __init__(
        self,
        credentials: Optional[DeepgramCredentialProvider] = None,
        transport_factory: Optional[Callable[[], WebSocketTransport]] = None,
    ) -> None:
        self._credentials = credentials or DeepgramCredentialProvider()
        self._transport_factory = transport_factory or DeepgramTransport

    async def fetch_credential(self) -> str:
        return await self._credentials.fetch_temporary_key()

    def create_transport(self) -> WebSocketTransport:
        return self._transport_factory()

    def parse_message(self, raw: RawMessage) -> Optional[ProviderMessage]:
        return parse_deepgram_message(raw)
