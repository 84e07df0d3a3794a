"""
Configuration management for the SLM router.

Configuration is a tree of dataclasses. It can be loaded from a JSON file,
from environment variables (with ``.env`` support), or built in code.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv

DEFAULT_CONFIG_PATH = Path.home() / ".slm-router" / "config.json"


def _env_flag(name: str, default: bool = True) -> bool:
    """Read a boolean flag; false, 0, no and off disable it."""
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() not in ("false", "0", "no", "off")


@dataclass
class LocalModelConfig:
    """Configuration for the local small-model service (tier 2)."""

    base_url: str = "http://localhost:11434"
    model_name: str = "qwen2.5:1.5b"
    max_tokens: int = 256
    temperature: float = 0.1
    timeout_seconds: float = 30.0
    # One retry on transient transport errors, never more
    retry_transient: bool = True


@dataclass
class RemoteModelConfig:
    """Configuration for the remote large-model service (tier 3)."""

    provider: Literal["openai", "anthropic"] = "openai"
    base_url: str = "http://localhost:4444"
    model_name: str = "claude-sonnet"
    api_key: str | None = None
    max_tokens: int = 1024
    timeout_seconds: float = 60.0
    max_retries: int = 1
    system_prompt: str = (
        "You are an AI assistant for ANKR, an Indian logistics and compliance platform."
    )


@dataclass
class MemoryConfig:
    """Configuration for the similarity-search memory (tier 0)."""

    enabled: bool = True
    db_path: str | None = None  # None -> ~/.slm-router/memory.db
    search_limit: int = 20
    timeout_seconds: float = 5.0
    min_confidence: float = 0.8
    min_similarity: float = 0.7
    context_min_chars: int = 50
    context_max_chars: int = 500


@dataclass
class KnowledgeBaseConfig:
    """Configuration for source-code context lookups."""

    enabled: bool = True
    timeout_seconds: float = 5.0
    max_identifiers: int = 2
    max_chunks: int = 2
    chunk_chars: int = 600
    max_chars: int = 1200


@dataclass
class CascadeConfig:
    """Configuration for the cascade controller."""

    confidence_threshold: float = 0.7
    memory_short_circuit: float = 0.8
    escalated_confidence: float = 0.9
    max_concurrency: int = 4
    escalation_keywords: list[str] = field(
        default_factory=lambda: [
            "why",
            "explain",
            "help me understand",
            "plan",
            "strategy",
            "optimize",
            "compare",
            "analyze",
        ]
    )


@dataclass
class TelemetryConfig:
    """Configuration for decision logging."""

    log_decisions: bool = False
    log_path: str = "~/.slm-router/decisions.jsonl"
    max_size_mb: float = 50.0
    max_files: int = 5


@dataclass
class RouterConfig:
    """Complete router configuration."""

    local: LocalModelConfig = field(default_factory=LocalModelConfig)
    remote: RemoteModelConfig = field(default_factory=RemoteModelConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    knowledge_base: KnowledgeBaseConfig = field(default_factory=KnowledgeBaseConfig)
    cascade: CascadeConfig = field(default_factory=CascadeConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RouterConfig:
        """Build configuration from a nested dictionary."""
        return cls(
            local=LocalModelConfig(**data.get("local", {})),
            remote=RemoteModelConfig(**data.get("remote", {})),
            memory=MemoryConfig(**data.get("memory", {})),
            knowledge_base=KnowledgeBaseConfig(**data.get("knowledge_base", {})),
            cascade=CascadeConfig(**data.get("cascade", {})),
            telemetry=TelemetryConfig(**data.get("telemetry", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a nested dictionary."""
        return asdict(self)

    @classmethod
    def load(cls, path: Path | None = None) -> RouterConfig:
        """Load configuration from file; missing file gives defaults."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        return cls.from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """Save configuration to file."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        path.parent.mkdir(parents=True, exist_ok=True)

        data = self.to_dict()
        # Never write secrets to disk
        data["remote"]["api_key"] = None

        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> RouterConfig:
        """
        Build configuration from environment variables.

        Reads OLLAMA_URL, OLLAMA_MODEL, AI_PROXY_URL, AI_PROXY_MODEL,
        AI_PROXY_API_KEY, CONFIDENCE_THRESHOLD, SLM_MEMORY_DB,
        ENABLE_EON_MEMORY, ENABLE_KNOWLEDGE_BASE and SLM_MAX_CONCURRENCY.
        A ``.env`` file in the working directory is loaded first if present.
        """
        if env_file is None:
            env_file = Path.cwd() / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        config = cls()

        config.local.base_url = os.environ.get("OLLAMA_URL", config.local.base_url)
        config.local.model_name = os.environ.get("OLLAMA_MODEL", config.local.model_name)

        config.remote.base_url = os.environ.get("AI_PROXY_URL", config.remote.base_url)
        config.remote.model_name = os.environ.get("AI_PROXY_MODEL", config.remote.model_name)
        config.remote.api_key = (
            os.environ.get("AI_PROXY_API_KEY") or os.environ.get("ANTHROPIC_API_KEY") or None
        )
        if os.environ.get("AI_PROVIDER") in ("openai", "anthropic"):
            config.remote.provider = os.environ["AI_PROVIDER"]  # type: ignore[assignment]

        threshold = os.environ.get("CONFIDENCE_THRESHOLD")
        if threshold:
            config.cascade.confidence_threshold = float(threshold)

        concurrency = os.environ.get("SLM_MAX_CONCURRENCY")
        if concurrency:
            config.cascade.max_concurrency = max(1, int(concurrency))

        config.memory.enabled = _env_flag("ENABLE_EON_MEMORY")
        config.memory.db_path = os.environ.get("SLM_MEMORY_DB") or config.memory.db_path
        config.knowledge_base.enabled = _env_flag("ENABLE_KNOWLEDGE_BASE")

        return config

