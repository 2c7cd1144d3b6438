from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

from config_utils import read_str_env
from provider_adapter import (
    ProviderMessage,
    RawMessage,
    TemporaryCredentialProvider,
    WebSocketTransport,
)
from session_config import SessionConfig
from soniox_protocol import (
    DEFAULT_MODEL,
    END_OF_INPUT,
    TEMPORARY_KEY_URL,
    WEBSOCKET_URL,
    build_session_config_message,
    parse_provider_message,
)

logger = logging.getLogger(__name__)


class SonioxCredentialProvider(TemporaryCredentialProvider):
    provider_name = "Soniox"
    env_prefix = "SONIOX"
    default_url = TEMPORARY_KEY_URL

    def _request_body(self) -> dict[str, Any]:
        return {
            "usage_type": "transcribe_websocket",
            "expires_in_seconds": self._ttl_seconds,
        }


class SonioxTransport(WebSocketTransport):
    provider_name = "Soniox"
    env_prefix = "SONIOX"

    def __init__(self, url: str = WEBSOCKET_URL, model: Optional[str] = None) -> None:
        super().__init__(url)
        self._model = model or read_str_env("SONIOX_MODEL", DEFAULT_MODEL)

    def _initial_message(self, credential: str, config: SessionConfig) -> Optional[RawMessage]:
        logger.debug("soniox_connecting model=%s hints=%s", self._model, ",".join(config.language_hints))
        return json.dumps(build_session_config_message(credential, config, model=self._model))

    def _end_of_input(self) -> RawMessage:
        return END_OF_INPUT


class SonioxAdapter:
    name = "soniox"

    def __init__(
        self,
        credentials: Optional[SonioxCredentialProvider] = None,
        transport_factory: Optional[Callable[[], WebSocketTransport]] = None,
    ) -> None:
        self._credentials = credentials or SonioxCredentialProvider()
        self._transport_factory = transport_factory or SonioxTransport

    async def fetch_credential(self) -> str:
        return await self._credentials.fetch_temporary_key()

    def create_transport(self) -> WebSocketTransport:
        return self._transport_factory()

    def parse_message(self, raw: RawMessage) -> Optional[ProviderMessage]:
        return parse_provider_message(raw)
