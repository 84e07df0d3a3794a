"""
Routing telemetry.

Per-tier latency traces, aggregate router statistics, and an optional JSONL
decision log for offline analysis of routing quality.

Usage:
    from slm_router.telemetry import DecisionLogger

    decision_log = DecisionLogger(TelemetryConfig(log_decisions=True))
    decision_log.log_decision(query, decision)
"""

from __future__ import annotations

import json
import logging
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from .config import TelemetryConfig
from .types import DecisionStatus, RoutingDecision

logger = logging.getLogger(__name__)


@dataclass
class TierTiming:
    """Latency of one tier attempt."""

    tier: str  # memory, deterministic, context, slm, llm, record
    duration_ms: float
    outcome: str  # hit, miss, error, skipped

    def to_dict(self) -> dict[str, Any]:
        return {"tier": self.tier, "duration_ms": self.duration_ms, "outcome": self.outcome}


@dataclass
class CascadeTrace:
    """Timings for one pass through the cascade."""

    timings: list[TierTiming] = field(default_factory=list)
    _start: float = field(default_factory=time.perf_counter, repr=False)

    def add(self, tier: str, started: float, outcome: str) -> None:
        self.timings.append(TierTiming(tier, (time.perf_counter() - started) * 1000, outcome))

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000

    def latencies(self) -> dict[str, float]:
        """Total milliseconds per tier label."""
        totals: dict[str, float] = {}
        for timing in self.timings:
            totals[timing.tier] = totals.get(timing.tier, 0.0) + timing.duration_ms
        return totals

    def to_dict(self) -> dict[str, Any]:
        return {
            "timings": [t.to_dict() for t in self.timings],
            "total_duration_ms": self.elapsed_ms,
        }


@dataclass
class RouterStats:
    """Aggregate counters over all routed queries."""

    total: int = 0
    by_tier: Counter = field(default_factory=Counter)
    by_status: Counter = field(default_factory=Counter)
    escalations: int = 0
    memory_failures: int = 0
    record_failures: int = 0
    total_latency_ms: float = 0.0

    def record(self, decision: RoutingDecision) -> None:
        self.total += 1
        self.by_tier[decision.tier_name] += 1
        self.by_status[decision.status.value] += 1
        if decision.escalated:
            self.escalations += 1
        self.total_latency_ms += decision.latency_ms

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.total if self.total else 0.0

    @property
    def escalation_rate(self) -> float:
        return self.escalations / self.total if self.total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_tier": dict(self.by_tier),
            "by_status": dict(self.by_status),
            "escalations": self.escalations,
            "escalation_rate": round(self.escalation_rate, 3),
            "code_answers": self.by_status.get(DecisionStatus.CODE_ANSWER.value, 0),
            "memory_failures": self.memory_failures,
            "record_failures": self.record_failures,
            "avg_latency_ms": round(self.avg_latency_ms, 2),
        }


@dataclass
class DecisionLogEntry:
    """One logged routing decision."""

    query: str
    tier: int | None
    tier_name: str
    status: str
    tool_name: str | None
    parameters: dict[str, Any]
    confidence: float
    escalated: bool
    latency_ms: float
    timestamp: str
    user_id: str | None = None
    escalate_reason: str | None = None
    tier_latencies_ms: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DecisionLogEntry:
        return cls(**data)


class DecisionLogger:
    """
    Appends routing decisions to a JSONL file with size-based rotation.

    Disabled unless ``TelemetryConfig.log_decisions`` is set.
    """

    def __init__(self, config: TelemetryConfig | None = None):
        self.config = config or TelemetryConfig()
        self._log_path: Path | None = None
        self._decision_count = 0

        if self.config.log_decisions:
            path = Path(self.config.log_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self._log_path = path

    @property
    def enabled(self) -> bool:
        return self._log_path is not None

    def _check_rotation(self) -> None:
        if self._log_path is None or not self._log_path.exists():
            return

        size_mb = self._log_path.stat().st_size / (1024 * 1024)
        if size_mb >= self.config.max_size_mb:
            self._rotate_logs()

    def _rotate_logs(self) -> None:
        if self._log_path is None:
            return

        # Shift rotated files up by one, dropping the oldest
        for i in range(self.config.max_files - 1, 0, -1):
            old_path = self._log_path.with_name(f"{self._log_path.name}.{i}")
            if not old_path.exists():
                continue
            if i + 1 >= self.config.max_files:
                old_path.unlink()
            else:
                old_path.rename(self._log_path.with_name(f"{self._log_path.name}.{i + 1}"))

        self._log_path.rename(self._log_path.with_name(f"{self._log_path.name}.1"))
        logger.info(f"Rotated decision log: {self._log_path}")

    def _write(self, payload: dict[str, Any]) -> None:
        if self._log_path is None:
            return
        self._check_rotation()
        with open(self._log_path, "a") as f:
            f.write(json.dumps(payload) + "\n")

    def log_decision(
        self, query: str, decision: RoutingDecision, user_id: str | None = None
    ) -> None:
        if not self.enabled:
            return

        entry = DecisionLogEntry(
            query=query,
            tier=int(decision.tier) if decision.tier is not None else None,
            tier_name=decision.tier_name,
            status=decision.status.value,
            tool_name=decision.tool_name,
            parameters=dict(decision.arguments),
            confidence=decision.confidence,
            escalated=decision.escalated,
            latency_ms=decision.latency_ms,
            timestamp=datetime.now().isoformat(),
            user_id=user_id,
            escalate_reason=decision.escalate_reason,
            tier_latencies_ms=dict(decision.tier_latencies),
        )
        try:
            self._write(entry.to_dict())
            self._decision_count += 1
        except OSError as e:
            logger.warning(f"Failed to log decision: {e}")

    def log_feedback(self, query: str, correct: bool, corrected_tool: str | None = None) -> None:
        """Write feedback as a separate entry that can be joined on query later."""
        if not self.enabled:
            return
        try:
            self._write(
                {
                    "type": "feedback",
                    "query": query,
                    "correct": correct,
                    "corrected_tool": corrected_tool,
                    "timestamp": datetime.now().isoformat(),
                }
            )
        except OSError as e:
            logger.warning(f"Failed to log feedback: {e}")

    def load_decisions(self) -> list[DecisionLogEntry]:
        """Read back logged decisions from the current file, skipping feedback entries."""
        decisions: list[DecisionLogEntry] = []
        if self._log_path is None or not self._log_path.exists():
            return decisions

        with open(self._log_path) as f:
            for line in f:
                try:
                    data = json.loads(line)
                    if data.get("type") == "feedback":
                        continue
                    decisions.append(DecisionLogEntry.from_dict(data))
                except (json.JSONDecodeError, TypeError) as e:
                    logger.warning(f"Skipping malformed line: {e}")

        return decisions

    def get_statistics(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "enabled": self.enabled,
            "log_path": str(self._log_path) if self._log_path else None,
            "decisions_logged": self._decision_count,
        }
        if self._log_path and self._log_path.exists():
            stats["log_size_mb"] = self._log_path.stat().st_size / (1024 * 1024)
        return stats


__all__ = [
    "CascadeTrace",
    "DecisionLogEntry",
    "DecisionLogger",
    "RouterStats",
    "TierTiming",
]
