"""
Local small-model routing (tier 2).

Asks a small local model (served by Ollama) to pick a tool and arguments
for a query, optionally with past-routing and source-code context. Parsing
is tolerant: anything that does not yield a valid decision becomes a
zero-confidence decision that requests escalation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .catalog import DEFAULT_CATALOG, ToolCatalog
from .config import LocalModelConfig
from .errors import MalformedModelOutputError, ServiceUnavailableError
from .types import ArgumentValue, clamp_confidence, validate_arguments

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.5

ROUTER_PREAMBLE = "You are a tool router and code assistant for ANKR."

TOOL_FORMAT = (
    "Output ONLY JSON with: tool_name, parameters, confidence (0-1), escalate (boolean)"
)
CODE_FORMAT = (
    "Output JSON with: tool_name (or null if answering code question), parameters, "
    "confidence (0-1), escalate (boolean), codeAnswer (string if answering code question)"
)


@dataclass
class LocalInferenceResult:
    """Raw output from local model inference."""

    content: str
    latency_ms: float
    tokens_generated: int
    model_name: str


class LocalModelRunner(ABC):
    """Abstract base class for local model inference."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> LocalInferenceResult:
        """Generate a JSON response from the local model."""
        pass

    @abstractmethod
    async def is_available(self) -> bool:
        """Check if the model service is reachable."""
        pass

    @abstractmethod
    def get_model_info(self) -> dict[str, Any]:
        """Get information about the configured model."""
        pass

    async def aclose(self) -> None:
        """Release any held resources."""


class OllamaRunner(LocalModelRunner):
    """Ollama-based local model runner."""

    def __init__(self, config: LocalModelConfig | None = None, client: httpx.AsyncClient | None = None):
        self.config = config or LocalModelConfig()
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    @property
    def base_url(self) -> str:
        return self.config.base_url.rstrip("/")

    async def is_available(self) -> bool:
        """Check if Ollama answers on /api/tags."""
        try:
            response = await self.client.get(f"{self.base_url}/api/tags", timeout=5.0)
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Ollama not reachable: {e!r}")
            return False

    async def generate(
        self,
        prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> LocalInferenceResult:
        """Generate response using Ollama's /api/generate in JSON mode."""
        payload = {
            "model": self.config.model_name,
            "prompt": prompt,
            "format": "json",
            "stream": False,
            "options": {
                "num_predict": max_tokens,
                "temperature": temperature,
            },
        }

        start = time.perf_counter()
        try:
            response = await self._post_with_retry(payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ServiceUnavailableError("ollama", repr(e)) from e

        data = response.json()
        latency_ms = (time.perf_counter() - start) * 1000

        content = data.get("response") if isinstance(data, dict) else None
        if not isinstance(content, str):
            logger.debug(f"Ollama returned no text response: {content!r}")
            content = ""

        return LocalInferenceResult(
            content=content,
            latency_ms=latency_ms,
            tokens_generated=data.get("eval_count", 0) if isinstance(data, dict) else 0,
            model_name=self.config.model_name,
        )

    async def _post_with_retry(self, payload: dict[str, Any]) -> httpx.Response:
        """POST once, retrying a single time on connection-level errors (not timeouts)."""
        url = f"{self.base_url}/api/generate"
        try:
            return await self.client.post(url, json=payload, timeout=self.config.timeout_seconds)
        except httpx.TimeoutException:
            raise
        except httpx.TransportError as e:
            if not self.config.retry_transient:
                raise
            logger.info(f"Ollama transport error, retrying once: {e!r}")
        return await self.client.post(url, json=payload, timeout=self.config.timeout_seconds)

    def get_model_info(self) -> dict[str, Any]:
        return {
            "backend": "ollama",
            "base_url": self.base_url,
            "model_name": self.config.model_name,
        }

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class ModelDecision(BaseModel):
    """Schema of the JSON object the local model is asked to produce."""

    model_config = ConfigDict(extra="ignore")

    tool_name: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    confidence: float | None = None
    escalate: bool = False
    code_answer: str | None = Field(
        default=None, validation_alias=AliasChoices("codeAnswer", "code_answer")
    )

    @field_validator("tool_name", "code_answer", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> str | None:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    @field_validator("parameters", mode="before")
    @classmethod
    def _parameters(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            # A null argument means the model left it out
            return {k: v for k, v in value.items() if v is not None}
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _numeric_confidence(cls, value: Any) -> float | None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if math.isnan(value):
            return None
        return clamp_confidence(value)

    @field_validator("escalate", mode="before")
    @classmethod
    def _strict_escalate(cls, value: Any) -> bool:
        return value is True


@dataclass
class LocalDecision:
    """Tier-2 decision after validation against the catalogue."""

    tool_name: str | None
    arguments: dict[str, ArgumentValue] = field(default_factory=dict)
    confidence: float = 0.0
    escalate: bool = True
    code_answer: str | None = None
    error: str | None = None
    latency_ms: float = 0.0

    @classmethod
    def failed(cls, error: str, latency_ms: float = 0.0) -> LocalDecision:
        return cls(tool_name=None, confidence=0.0, escalate=True, error=error, latency_ms=latency_ms)


def extract_json_object(text: str) -> dict[str, Any]:
    """
    Return the first JSON object found in ``text``.

    Raises:
        MalformedModelOutputError: If no JSON object can be decoded
    """
    text = text.strip()
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            data, _ = decoder.raw_decode(text, index)
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass
        index = text.find("{", index + 1)

    raise MalformedModelOutputError(f"No JSON found in response: {text[:200]}")


class LocalModelAdapter:
    """Builds the routing prompt, calls the local model and validates the answer."""

    def __init__(
        self,
        runner: LocalModelRunner | None = None,
        catalog: ToolCatalog | None = None,
        config: LocalModelConfig | None = None,
        confidence_threshold: float = 0.7,
    ):
        self.config = config or LocalModelConfig()
        self.runner = runner or OllamaRunner(self.config)
        self.catalog = catalog or DEFAULT_CATALOG
        self.confidence_threshold = confidence_threshold

        self._stats = {
            "calls": 0,
            "errors": 0,
            "parse_failures": 0,
            "unknown_tools": 0,
            "total_latency_ms": 0.0,
        }

    def build_prompt(
        self,
        query: str,
        memory_context: str | None = None,
        code_context: str | None = None,
    ) -> str:
        tool_list = "\n".join(f"- {name}: {desc}" for name, desc in self.catalog.describe())

        context_section = ""
        if memory_context:
            context_section += f"\nPast similar routings (for reference):\n{memory_context}\n"
        if code_context:
            context_section += f"\nRelevant code from ANKR packages:\n{code_context}\n"

        output_format = CODE_FORMAT if code_context else TOOL_FORMAT

        return (
            f"{ROUTER_PREAMBLE} {output_format}.\n"
            f"{context_section}\n"
            f"Available tools:\n{tool_list}\n\n"
            f"Query: {query}"
        )

    def parse(self, content: str, code_context_supplied: bool = False) -> LocalDecision:
        """
        Turn raw model output into a LocalDecision. Never raises.

        Missing confidence defaults to 0.5 and out-of-range values are
        clamped. A tool outside the catalogue counts as no tool.
        """
        if not isinstance(content, str):
            self._stats["parse_failures"] += 1
            return LocalDecision.failed(f"parse error: expected text, got {type(content).__name__}")

        try:
            decision = ModelDecision.model_validate(extract_json_object(content))
            arguments = validate_arguments(decision.parameters)
        except (MalformedModelOutputError, ValidationError) as e:
            self._stats["parse_failures"] += 1
            logger.debug(f"Unparsable local model output: {e}")
            return LocalDecision.failed(f"parse error: {e}")
        except Exception as e:
            # e.g. RecursionError from deeply nested JSON
            self._stats["parse_failures"] += 1
            logger.warning(f"Local model output could not be parsed: {e!r}")
            return LocalDecision.failed(f"parse error: {e!r}")

        confidence = DEFAULT_CONFIDENCE if decision.confidence is None else decision.confidence
        escalate = decision.escalate or confidence < self.confidence_threshold

        tool_name = decision.tool_name
        if tool_name is not None and tool_name not in self.catalog:
            self._stats["unknown_tools"] += 1
            logger.debug(f"Local model chose unknown tool: {tool_name}")
            tool_name = None
            arguments = {}
            escalate = True

        code_answer = decision.code_answer if code_context_supplied else None

        return LocalDecision(
            tool_name=tool_name,
            arguments=arguments,
            confidence=confidence,
            escalate=escalate,
            code_answer=code_answer,
        )

    async def route(
        self,
        query: str,
        memory_context: str | None = None,
        code_context: str | None = None,
    ) -> LocalDecision:
        """Ask the local model for a routing decision. Never raises on service failure."""
        self._stats["calls"] += 1
        prompt = self.build_prompt(query, memory_context, code_context)
        start = time.perf_counter()

        try:
            result = await asyncio.wait_for(
                self.runner.generate(
                    prompt,
                    max_tokens=self.config.max_tokens,
                    temperature=self.config.temperature,
                ),
                timeout=self.config.timeout_seconds,
            )
        except Exception as e:
            latency_ms = (time.perf_counter() - start) * 1000
            self._stats["errors"] += 1
            self._stats["total_latency_ms"] += latency_ms
            logger.warning(f"Local model call failed: {e!r}")
            return LocalDecision.failed(f"local model error: {e!r}", latency_ms)

        latency_ms = (time.perf_counter() - start) * 1000
        self._stats["total_latency_ms"] += latency_ms

        decision = self.parse(result.content, code_context_supplied=bool(code_context))
        decision.latency_ms = latency_ms
        return decision

    async def health(self) -> bool:
        try:
            return await self.runner.is_available()
        except Exception as e:
            logger.warning(f"Local model health check failed: {e!r}")
            return False

    def get_statistics(self) -> dict[str, Any]:
        calls = self._stats["calls"]
        return {
            **self._stats,
            "avg_latency_ms": self._stats["total_latency_ms"] / calls if calls else 0.0,
            "model": self.runner.get_model_info(),
        }

    async def aclose(self) -> None:
        await self.runner.aclose()


__all__ = [
    "LocalDecision",
    "LocalInferenceResult",
    "LocalModelAdapter",
    "LocalModelRunner",
    "ModelDecision",
    "OllamaRunner",
    "extract_json_object",
]
