"""
Routing benchmark.

Replays a fixed table of (query, expected tool) cases with the memory tier
forced off, so earlier runs cannot answer a case from memory.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .types import Query, RoutingDecision

logger = logging.getLogger(__name__)

RouteFn = Callable[[Query], Awaitable[RoutingDecision]]


@dataclass(frozen=True)
class BenchmarkCase:
    query: str
    expected_tool: str


DEFAULT_CASES: tuple[BenchmarkCase, ...] = (
    BenchmarkCase("Check GST 27AAPFU0939F1ZV", "gst_verify"),
    BenchmarkCase("Mumbai se Delhi truck chahiye", "freight_trucks"),
    BenchmarkCase("Toll from Pune to Bangalore", "toll_estimate"),
    BenchmarkCase("Track vehicle MH12AB1234", "vehicle_track"),
)


@dataclass
class BenchmarkResult:
    """Outcome of one benchmark case."""

    query: str
    expected: str
    actual: str | None
    tier: int  # -1 when routing failed
    latency_ms: float
    passed: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "query": self.query,
            "expected": self.expected,
            "actual": self.actual,
            "tier": self.tier,
            "latency_ms": round(self.latency_ms),
            "passed": self.passed,
        }
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class BenchmarkReport:
    """Aggregate benchmark outcome."""

    results: list[BenchmarkResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.passed)

    @property
    def failed(self) -> int:
        return self.total - self.passed

    @property
    def accuracy(self) -> float:
        return self.passed / self.total if self.total else 0.0

    @property
    def avg_latency_ms(self) -> float:
        if not self.results:
            return 0.0
        return sum(r.latency_ms for r in self.results) / len(self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "accuracy": f"{self.accuracy * 100:.1f}%",
            "avg_latency_ms": round(self.avg_latency_ms),
            "results": [r.to_dict() for r in self.results],
        }


async def run_benchmark(
    route: RouteFn, cases: Sequence[BenchmarkCase] = DEFAULT_CASES
) -> BenchmarkReport:
    """
    Route every case with memory lookups skipped and score the results.

    A case whose routing raises a router error is scored as failed with
    tier -1; the remaining cases still run.
    """
    report = BenchmarkReport()

    for case in cases:
        start = time.perf_counter()
        try:
            decision = await route(Query(case.query, skip_memory=True))
        except Exception as e:
            logger.warning(f"Benchmark case failed: {case.query!r}: {e!r}")
            report.results.append(
                BenchmarkResult(
                    query=case.query,
                    expected=case.expected_tool,
                    actual=None,
                    tier=-1,
                    latency_ms=(time.perf_counter() - start) * 1000,
                    passed=False,
                    error=str(e),
                )
            )
            continue

        report.results.append(
            BenchmarkResult(
                query=case.query,
                expected=case.expected_tool,
                actual=decision.tool_name,
                tier=int(decision.tier) if decision.tier is not None else -1,
                latency_ms=(time.perf_counter() - start) * 1000,
                passed=decision.tool_name == case.expected_tool,
            )
        )

    logger.info(f"Benchmark: {report.passed}/{report.total} passed")
    return report


__all__ = [
    "BenchmarkCase",
    "BenchmarkReport",
    "BenchmarkResult",
    "DEFAULT_CASES",
    "run_benchmark",
]
