"""
Remote large-model answers (tier 3).

Supports:
- OpenAI-compatible AI proxy (default, ``/v1/chat/completions``)
- Anthropic Messages API
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

import anthropic
import httpx
import openai

from .config import RemoteModelConfig

logger = logging.getLogger(__name__)

NO_RESPONSE = "No response from LLM"


class Provider(Enum):
    """Remote model provider."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"


@dataclass
class RemoteResponse:
    """Response from the remote model."""

    content: str
    input_tokens: int
    output_tokens: int
    model: str
    provider: Provider
    stop_reason: str | None = None


class BaseRemoteClient(ABC):
    """Abstract base class for remote model clients."""

    provider: Provider

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        model: str,
        max_tokens: int,
    ) -> RemoteResponse:
        """Get a completion from the remote model."""
        ...

    @abstractmethod
    async def ping(self) -> bool:
        """Check if the service is reachable."""
        ...

    async def aclose(self) -> None:
        """Release any held resources."""


class OpenAIProxyClient(BaseRemoteClient):
    """OpenAI-compatible client pointed at the AI proxy."""

    provider = Provider.OPENAI

    def __init__(self, config: RemoteModelConfig, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self._http = http_client
        self._owns_http = http_client is None
        self.client = openai.AsyncOpenAI(
            # The proxy does not check keys, the SDK still requires one
            api_key=config.api_key or os.environ.get("OPENAI_API_KEY") or "ai-proxy",
            base_url=f"{self.base_url}/v1",
            timeout=config.timeout_seconds,
            max_retries=config.max_retries,
            http_client=http_client,
        )

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient()
        return self._http

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        model: str,
        max_tokens: int,
    ) -> RemoteResponse:
        # OpenAI uses system message in messages array
        full_messages: list[dict[str, str]] = []
        if system:
            full_messages.append({"role": "system", "content": system})
        full_messages.extend(messages)

        response = await self.client.chat.completions.create(
            model=model,
            messages=full_messages,  # type: ignore[arg-type]
            max_tokens=max_tokens,
        )

        content = ""
        stop_reason = None
        if response.choices:
            content = response.choices[0].message.content or ""
            stop_reason = response.choices[0].finish_reason

        return RemoteResponse(
            content=content,
            input_tokens=response.usage.prompt_tokens if response.usage else 0,
            output_tokens=response.usage.completion_tokens if response.usage else 0,
            model=model,
            provider=Provider.OPENAI,
            stop_reason=stop_reason,
        )

    async def ping(self) -> bool:
        """GET /health, falling back to /v1/models."""
        for path in ("/health", "/v1/models"):
            try:
                response = await self.http.get(f"{self.base_url}{path}", timeout=5.0)
                if response.status_code == 200:
                    return True
            except httpx.HTTPError as e:
                logger.debug(f"AI proxy {path} not reachable: {e!r}")
        return False

    async def aclose(self) -> None:
        await self.client.close()
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None


class AnthropicRemoteClient(BaseRemoteClient):
    """Anthropic Messages API client."""

    provider = Provider.ANTHROPIC

    def __init__(self, config: RemoteModelConfig):
        self.config = config
        self._client: anthropic.AsyncAnthropic | None = None

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            api_key = self.config.api_key or os.environ.get("ANTHROPIC_API_KEY")
            if not api_key:
                raise ValueError(
                    "Anthropic API key required. Set ANTHROPIC_API_KEY environment variable."
                )
            self._client = anthropic.AsyncAnthropic(
                api_key=api_key,
                timeout=self.config.timeout_seconds,
                max_retries=self.config.max_retries,
            )
        return self._client

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        model: str,
        max_tokens: int,
    ) -> RemoteResponse:
        request_params: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": messages,
        }
        if system:
            request_params["system"] = system

        response = await self.client.messages.create(**request_params)

        content = ""
        for block in response.content:
            if block.type == "text":
                content += block.text

        return RemoteResponse(
            content=content,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=model,
            provider=Provider.ANTHROPIC,
            stop_reason=response.stop_reason,
        )

    async def ping(self) -> bool:
        try:
            await self.client.models.list(limit=1)
            return True
        except Exception as e:
            logger.debug(f"Anthropic API not reachable: {e!r}")
            return False

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


def create_remote_client(
    config: RemoteModelConfig, http_client: httpx.AsyncClient | None = None
) -> BaseRemoteClient:
    """Create the client for the configured provider."""
    provider = Provider(config.provider)
    if provider == Provider.ANTHROPIC:
        return AnthropicRemoteClient(config)
    return OpenAIProxyClient(config, http_client=http_client)


class RemoteModelAdapter:
    """
    Free-text answers from the remote model.

    ``answer`` never raises: failures come back as ``"LLM error: ..."`` text.
    """

    def __init__(
        self,
        config: RemoteModelConfig | None = None,
        client: BaseRemoteClient | None = None,
    ):
        self.config = config or RemoteModelConfig()
        self.client = client or create_remote_client(self.config)
        self._stats = {"calls": 0, "errors": 0, "empty": 0}

    async def answer(self, query: str) -> str:
        self._stats["calls"] += 1
        try:
            response = await asyncio.wait_for(
                self.client.complete(
                    messages=[{"role": "user", "content": query}],
                    system=self.config.system_prompt,
                    model=self.config.model_name,
                    max_tokens=self.config.max_tokens,
                ),
                timeout=self.config.timeout_seconds,
            )
        except Exception as e:
            self._stats["errors"] += 1
            logger.warning(f"Remote model call failed: {e!r}")
            return f"LLM error: {e}"

        if not response.content:
            self._stats["empty"] += 1
            return NO_RESPONSE
        return response.content

    async def health(self) -> bool:
        try:
            return await self.client.ping()
        except Exception as e:
            logger.warning(f"Remote model health check failed: {e!r}")
            return False

    def get_statistics(self) -> dict[str, Any]:
        return {**self._stats, "provider": self.client.provider.value, "model": self.config.model_name}

    async def aclose(self) -> None:
        await self.client.aclose()


__all__ = [
    "AnthropicRemoteClient",
    "BaseRemoteClient",
    "NO_RESPONSE",
    "OpenAIProxyClient",
    "Provider",
    "RemoteModelAdapter",
    "RemoteResponse",
    "create_remote_client",
]
