"""
healthroute/remote/provider.py — Remote provider boundary and an OpenAI-compatible client.

The router only needs ``await provider.complete(query, health_context)``.
:class:`OpenAICompatibleProvider` posts the same system/user messages the
local prompt builder produces to ``{base_url}/v1/chat/completions``.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Mapping, Optional, Protocol

import httpx

from healthroute.core.config import RemoteConfig
from healthroute.core.errors import NetworkFailureError, RemoteProviderError
from healthroute.core.logger import HRLogger, get_logger
from healthroute.llm.prompt_builder import PromptBuilder

logger = logging.getLogger(__name__)


class RemoteProvider(Protocol):
    """Anything that can answer a health query over the network."""

    async def complete(self, query: Optional[str], health_context: Optional[Mapping[str, Any]] = None) -> str:
        ...


class OpenAICompatibleProvider:
    """
    Chat-completions client over ``httpx.AsyncClient``.

    Args:
        config: Endpoint, model and sampling settings. The API key is read
            from the environment variable named by ``api_key_env``.
        client: Optional shared client (tests inject ``httpx.MockTransport``).
        prompt_builder: Builds the chat messages.
        log: Structured logger.
    """

    def __init__(
        self,
        config: Optional[RemoteConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        log: Optional[HRLogger] = None,
    ) -> None:
        self._cfg = config or RemoteConfig()
        self._client = client
        self._owns_client = client is None
        self._builder = prompt_builder or PromptBuilder()
        self._log = log or get_logger()

    @property
    def endpoint(self) -> str:
        return f"{self._cfg.base_url.rstrip('/')}/v1/chat/completions"

    async def complete(self, query: Optional[str], health_context: Optional[Mapping[str, Any]] = None) -> str:
        """
        Ask the remote model.

        Raises:
            NetworkFailureError: Transport error or timeout.
            RemoteProviderError: Non-2xx status or an unusable payload.
        """
        payload = {
            "model": self._cfg.model,
            "messages": self._builder.build_chat_messages(query, health_context),
            "max_tokens": self._cfg.max_tokens,
            "temperature": self._cfg.temperature,
        }
        t0 = time.monotonic()
        try:
            response = await self._http().post(self.endpoint, json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise NetworkFailureError(f"Remote service unreachable at {self._cfg.base_url}", cause=exc) from exc

        if response.status_code != 200:
            body = response.text[:500]
            self._log.error("remote", "api_error", {"status": response.status_code, "body": body})
            raise RemoteProviderError(f"Remote service returned {response.status_code}: {body}")

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise RemoteProviderError("Remote service returned an unexpected payload", cause=exc) from exc
        if not isinstance(content, str) or not content.strip():
            raise RemoteProviderError("Remote service returned an empty answer")

        self._log.perf(
            "remote",
            "completion_done",
            latency_ms=(time.monotonic() - t0) * 1000.0,
            data={"model": self._cfg.model, "chars": len(content)},
        )
        return content.strip()

    async def aclose(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._cfg.timeout_s)
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = os.environ.get(self._cfg.api_key_env, "").strip()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        else:
            logger.debug("No API key in $%s; calling %s unauthenticated", self._cfg.api_key_env, self._cfg.base_url)
        return headers
