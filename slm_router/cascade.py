"""
Cascade controller.

Tries the routing tiers in increasing cost order and stops at the first
acceptable decision:

    0. memory      reuse of a confident past decision for a similar query
    1. patterns    deterministic identifier rules
    2. local model small model with optional memory/code context
    3. remote model free-text answer for anything tier 2 could not settle

Tiers run strictly one after another for a single query. Collaborator
failures and timeouts degrade a tier to "produced nothing"; only caller
input errors propagate. Cancellation always propagates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable

from .config import CascadeConfig
from .context import ContextBuilder
from .local_model import LocalDecision, LocalModelAdapter
from .memory import MemoryAdapter
from .patterns import PatternMatcher
from .remote_model import RemoteModelAdapter
from .telemetry import CascadeTrace, RouterStats
from .types import DecisionStatus, Query, RoutingDecision, Tier

logger = logging.getLogger(__name__)

ESCALATION_KEYWORDS: tuple[str, ...] = (
    "why",
    "explain",
    "help me understand",
    "plan",
    "strategy",
    "optimize",
    "compare",
    "analyze",
)


def should_escalate(
    query: str,
    confidence: float,
    model_requested: bool,
    threshold: float = 0.7,
    keywords: Iterable[str] = ESCALATION_KEYWORDS,
) -> str | None:
    """
    Decide whether a tier-2 decision must go to the remote model.

    Keywords match by plain substring, so "why" also matches "anywhere".

    Returns:
        The escalation reason (low_confidence, model_requested,
        complex_query), or None to accept the tier-2 decision.
    """
    if confidence < threshold:
        return "low_confidence"
    if model_requested:
        return "model_requested"
    lowered = query.lower()
    if any(keyword in lowered for keyword in keywords):
        return "complex_query"
    return None


class CascadeController:
    """Runs one query through the routing tiers."""

    def __init__(
        self,
        matcher: PatternMatcher,
        local: LocalModelAdapter,
        remote: RemoteModelAdapter,
        memory: MemoryAdapter | None = None,
        context: ContextBuilder | None = None,
        config: CascadeConfig | None = None,
        stats: RouterStats | None = None,
    ):
        self.matcher = matcher
        self.local = local
        self.remote = remote
        self.memory = memory
        self.context = context
        self.config = config or CascadeConfig()
        self.stats = stats or RouterStats()
        # Local model instances typically serialize requests
        self._local_slots = asyncio.Semaphore(max(1, self.config.max_concurrency))

    async def route(self, query: Query) -> RoutingDecision:
        trace = CascadeTrace()
        memory = None if query.skip_memory else self.memory
        use_memory = memory is not None

        decision = await self._try_memory(memory, query, trace) if memory is not None else None
        if decision is not None:
            self.stats.record(decision)
            return decision

        decision = self._try_patterns(query, trace)
        if decision is None:
            decision = await self._try_models(query, trace, use_memory)

        if decision.tool_name and self.memory is not None:
            await self._record(self.memory, query, decision, trace)

        self.stats.record(decision)
        return decision

    async def _try_memory(
        self, memory: MemoryAdapter, query: Query, trace: CascadeTrace
    ) -> RoutingDecision | None:
        started = time.perf_counter()
        result = await memory.find_similar(query.text, query.user_id)

        if not result.ok:
            self.stats.memory_failures += 1
            trace.add("memory", started, "error")
            logger.debug(f"Tier 0 unavailable: {result.error}")
            return None

        match = result.value
        if match is None or match.similarity < self.config.memory_short_circuit:
            trace.add("memory", started, "miss")
            return None

        trace.add("memory", started, "hit")
        logger.debug(f"Tier 0 hit: {match.tool_name} (similarity {match.similarity:.2f})")
        return RoutingDecision(
            tier=Tier.MEMORY,
            tool_name=match.tool_name,
            arguments=match.record.arguments,
            confidence=match.confidence,
            similarity=match.similarity,
            latency_ms=trace.elapsed_ms,
            tier_latencies=trace.latencies(),
        )

    def _try_patterns(self, query: Query, trace: CascadeTrace) -> RoutingDecision | None:
        started = time.perf_counter()
        match = self.matcher.match(query.text)
        if match is None:
            trace.add("deterministic", started, "miss")
            return None

        trace.add("deterministic", started, "hit")
        return RoutingDecision(
            tier=Tier.DETERMINISTIC,
            tool_name=match.tool_name,
            arguments=match.arguments,
            confidence=match.confidence,
            latency_ms=trace.elapsed_ms,
            tier_latencies=trace.latencies(),
        )

    async def _try_models(
        self, query: Query, trace: CascadeTrace, use_memory: bool
    ) -> RoutingDecision:
        memory_context, code_context = await self._build_context(query, trace, use_memory)

        started = time.perf_counter()
        async with self._local_slots:
            local = await self.local.route(query.text, memory_context, code_context)

        if local.code_answer and not local.tool_name:
            trace.add("slm", started, "hit")
            return RoutingDecision(
                tier=Tier.LOCAL_MODEL,
                tool_name=None,
                confidence=local.confidence,
                answer=local.code_answer,
                status=DecisionStatus.CODE_ANSWER,
                memory_context_used=memory_context is not None,
                code_context_used=True,
                latency_ms=trace.elapsed_ms,
                tier_latencies=trace.latencies(),
            )

        reason = should_escalate(
            query.text,
            local.confidence,
            local.escalate,
            threshold=self.config.confidence_threshold,
            keywords=self.config.escalation_keywords,
        )
        if reason is None and local.tool_name:
            trace.add("slm", started, "hit")
            return RoutingDecision(
                tier=Tier.LOCAL_MODEL,
                tool_name=local.tool_name,
                arguments=local.arguments,
                confidence=local.confidence,
                memory_context_used=memory_context is not None,
                code_context_used=code_context is not None,
                latency_ms=trace.elapsed_ms,
                tier_latencies=trace.latencies(),
            )

        trace.add("slm", started, "error" if local.error else "miss")
        return await self._escalate(query, local, reason or "no_tool", trace)

    async def _build_context(
        self, query: Query, trace: CascadeTrace, use_memory: bool
    ) -> tuple[str | None, str | None]:
        if self.context is None:
            return None, None

        started = time.perf_counter()

        async def _no_context() -> None:
            return None

        memory_context, code_context = await asyncio.gather(
            self.context.build_memory_context(query.text) if use_memory else _no_context(),
            self.context.build_code_context(query.text),
        )
        outcome = "hit" if (memory_context or code_context) else "miss"
        trace.add("context", started, outcome)
        return memory_context, code_context

    async def _escalate(
        self, query: Query, local: LocalDecision, reason: str, trace: CascadeTrace
    ) -> RoutingDecision:
        logger.debug(f"Escalating to tier 3: {reason}")
        started = time.perf_counter()
        answer = await self.remote.answer(query.text)
        trace.add("llm", started, "hit")

        return RoutingDecision(
            tier=Tier.REMOTE_MODEL,
            tool_name=local.tool_name,
            arguments=local.arguments,
            confidence=self.config.escalated_confidence,
            escalated=True,
            answer=answer,
            status=DecisionStatus.ESCALATED if local.tool_name else DecisionStatus.NO_TOOL_MATCHED,
            escalate_reason=reason,
            latency_ms=trace.elapsed_ms,
            tier_latencies=trace.latencies(),
        )

    async def _record(
        self, memory: MemoryAdapter, query: Query, decision: RoutingDecision, trace: CascadeTrace
    ) -> None:
        started = time.perf_counter()
        result = await memory.record(query.text, decision, query.user_id)
        if not result.ok:
            self.stats.record_failures += 1
            trace.add("record", started, "error")
            logger.debug(f"Decision not recorded: {result.error}")
        else:
            trace.add("record", started, "hit")


__all__ = ["CascadeController", "ESCALATION_KEYWORDS", "should_escalate"]
