"""
Shared type definitions for the SLM router.

Queries, routing decisions, memory records and the tool boundary records
are plain dataclasses; decisions are frozen once produced.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Any, Generic, TypeVar, Union

from .errors import InvalidQueryError, MalformedModelOutputError

# Argument values handed to tools: string/number/bool scalars, or lists and
# string-keyed maps of the same.
ArgumentValue = Union[str, int, float, bool, list[Any], dict[str, Any]]

T = TypeVar("T")


class Tier(IntEnum):
    """Cascade tiers in increasing cost order."""

    MEMORY = 0
    DETERMINISTIC = 1
    LOCAL_MODEL = 2
    REMOTE_MODEL = 3


class DecisionStatus(str, Enum):
    """Outcome marker attached to every routing decision."""

    ROUTED = "routed"
    CODE_ANSWER = "code_answer"
    ESCALATED = "escalated"
    NO_TOOL_MATCHED = "no_tool_matched"


class FeedbackState(str, Enum):
    """Feedback attached to a memory record."""

    UNSET = "unset"
    CORRECT = "correct"
    INCORRECT = "incorrect"
    USER_CORRECTED = "user_corrected"

    @classmethod
    def parse(cls, value: Any) -> FeedbackState:
        """Parse a stored feedback tag, treating unknown values as unset."""
        if isinstance(value, FeedbackState):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.UNSET


def utc_timestamp() -> str:
    """ISO-8601 timestamp with microseconds, UTC."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _validate_value(value: Any, path: str) -> ArgumentValue:
    # bool is an int subclass; both are accepted as-is
    if isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (list, tuple)):
        return [_validate_value(item, f"{path}[{i}]") for i, item in enumerate(value)]
    if isinstance(value, Mapping):
        return {
            str(key): _validate_value(item, f"{path}.{key}") for key, item in value.items()
        }
    raise MalformedModelOutputError(
        f"Unsupported argument value at {path}: {type(value).__name__}"
    )


def validate_arguments(raw: Any) -> dict[str, ArgumentValue]:
    """
    Normalize a raw argument mapping into tool-safe values.

    Args:
        raw: Mapping produced by a rule extractor, a model, or a caller.
            ``None`` is treated as an empty mapping.

    Returns:
        A new dict with string keys and ArgumentValue values

    Raises:
        MalformedModelOutputError: If the mapping or any nested value has an
            unsupported shape (None values, objects, non-mapping roots).
    """
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise MalformedModelOutputError(
            f"Arguments must be a mapping, got {type(raw).__name__}"
        )
    return {str(key): _validate_value(value, str(key)) for key, value in raw.items()}


def clamp_confidence(value: float) -> float:
    """Clamp a confidence score into [0, 1]."""
    return max(0.0, min(1.0, float(value)))


@dataclass(frozen=True)
class Query:
    """An incoming free-text query."""

    text: str
    user_id: str | None = None
    skip_memory: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.text, str) or not self.text.strip():
            raise InvalidQueryError("query is required")


@dataclass(frozen=True)
class ToolParameter:
    """A named parameter of a tool."""

    name: str
    type: str = "string"  # string, number, boolean, object, array
    description: str = ""
    required: bool = False


@dataclass(frozen=True)
class ToolCatalogEntry:
    """What the router knows about a tool: its name and description."""

    name: str
    description: str
    parameters: tuple[ToolParameter, ...] = ()


@dataclass
class ToolResult:
    """Result returned by a tool invocation."""

    success: bool
    data: Any = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {"success": self.success, "metadata": self.metadata}
        if self.data is not None:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass(frozen=True)
class RoutingDecision:
    """
    Final routing decision for one query.

    tier is the component that produced the decision (None when nothing did).
    confidence is always within [0, 1]; arguments are read-only.
    """

    tier: Tier | None
    tool_name: str | None
    arguments: Mapping[str, ArgumentValue] = field(default_factory=dict)
    confidence: float = 0.0
    escalated: bool = False
    answer: str | None = None
    latency_ms: float = 0.0
    status: DecisionStatus = DecisionStatus.ROUTED
    similarity: float | None = None
    escalate_reason: str | None = None
    memory_context_used: bool = False
    code_context_used: bool = False
    tier_latencies: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be between 0.0 and 1.0, got: {self.confidence}")
        object.__setattr__(
            self, "arguments", MappingProxyType(validate_arguments(self.arguments))
        )
        object.__setattr__(self, "tier_latencies", MappingProxyType(dict(self.tier_latencies)))

    @property
    def tier_name(self) -> str:
        """Human-readable tier label."""
        if self.tier is None:
            return "none"
        if self.tier == Tier.LOCAL_MODEL and self.status == DecisionStatus.CODE_ANSWER:
            return "slm_code"
        return {
            Tier.MEMORY: "memory",
            Tier.DETERMINISTIC: "deterministic",
            Tier.LOCAL_MODEL: "slm",
            Tier.REMOTE_MODEL: "llm",
        }[self.tier]

    @property
    def from_memory(self) -> bool:
        """True when the decision was reused from memory."""
        return self.tier == Tier.MEMORY

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        result: dict[str, Any] = {
            "tier": int(self.tier) if self.tier is not None else None,
            "tier_name": self.tier_name,
            "status": self.status.value,
            "tool_name": self.tool_name,
            "parameters": dict(self.arguments),
            "confidence": self.confidence,
            "latency_ms": round(self.latency_ms, 2),
            "escalated": self.escalated,
            "from_memory": self.from_memory,
            "memory_context_used": self.memory_context_used,
            "code_context_used": self.code_context_used,
            "tier_latencies_ms": {k: round(v, 2) for k, v in self.tier_latencies.items()},
        }
        if self.answer is not None:
            result["answer"] = self.answer
        if self.similarity is not None:
            result["similarity"] = self.similarity
        if self.escalate_reason is not None:
            result["escalate_reason"] = self.escalate_reason
        return result


@dataclass(frozen=True)
class MemoryRecord:
    """A persisted past routing decision."""

    query: str
    tool_name: str | None
    arguments: dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0
    tier: int | None = None
    feedback: FeedbackState = FeedbackState.UNSET
    timestamp: str = ""
    user_id: str | None = None

    def to_metadata(self) -> dict[str, Any]:
        """Metadata stored alongside the memory entry."""
        metadata: dict[str, Any] = {
            "original_query": self.query,
            "tool_name": self.tool_name,
            "parameters": dict(self.arguments),
            "confidence": self.confidence,
            "tier": self.tier,
            "timestamp": self.timestamp or utc_timestamp(),
        }
        if self.feedback != FeedbackState.UNSET:
            metadata["feedback"] = self.feedback.value
        return metadata

    @classmethod
    def from_metadata(
        cls, metadata: Mapping[str, Any], user_id: str | None = None
    ) -> MemoryRecord:
        """Rebuild a record from stored metadata, tolerating missing keys."""
        confidence = metadata.get("confidence")
        try:
            confidence = clamp_confidence(confidence) if confidence is not None else 0.0
        except (TypeError, ValueError):
            confidence = 0.0
        parameters = metadata.get("parameters")
        return cls(
            query=str(metadata.get("original_query") or ""),
            tool_name=metadata.get("tool_name") or None,
            arguments=dict(parameters) if isinstance(parameters, Mapping) else {},
            confidence=confidence,
            tier=metadata.get("tier"),
            feedback=FeedbackState.parse(metadata.get("feedback")),
            timestamp=str(metadata.get("timestamp") or ""),
            user_id=user_id,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "query": self.query,
            "tool_name": self.tool_name,
            "parameters": dict(self.arguments),
            "confidence": self.confidence,
            "tier": self.tier,
            "feedback": None if self.feedback == FeedbackState.UNSET else self.feedback.value,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class SimilarityMatch:
    """A memory record scored against the current query."""

    record: MemoryRecord
    similarity: float

    @property
    def tool_name(self) -> str | None:
        return self.record.tool_name

    @property
    def confidence(self) -> float:
        return self.record.confidence


@dataclass(frozen=True)
class ServiceResult(Generic[T]):
    """
    Explicit success/failure return from a best-effort collaborator call.

    Callers decide whether a failure matters; nothing is swallowed implicitly.
    """

    value: T | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None = None) -> ServiceResult[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: str) -> ServiceResult[T]:
        return cls(error=error or "unknown error")


__all__ = [
    "ArgumentValue",
    "DecisionStatus",
    "FeedbackState",
    "MemoryRecord",
    "Query",
    "RoutingDecision",
    "ServiceResult",
    "SimilarityMatch",
    "Tier",
    "ToolCatalogEntry",
    "ToolParameter",
    "ToolResult",
    "clamp_confidence",
    "utc_timestamp",
    "validate_arguments",
]
