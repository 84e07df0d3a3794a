"""
Host-facing router.

SLMRouter wires the tiers together from a RouterConfig and exposes the
operations a host calls: route, dispatch, learn, recall, healthcheck and
benchmark. The same operations are also available as tools
(``slm_route``, ``slm_learn``, ...) so a tool-calling host can reach them.

Usage:
    async with SLMRouter.from_config(RouterConfig.from_env()) as router:
        decision = await router.route("Track vehicle MH12AB1234")
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .benchmark import DEFAULT_CASES, BenchmarkCase, BenchmarkReport, run_benchmark
from .cascade import CascadeController
from .catalog import DEFAULT_CATALOG, FunctionTool, ToolCatalog
from .config import RouterConfig
from .context import ContextBuilder, KnowledgeBase
from .errors import InvalidFeedbackError, InvalidQueryError
from .feedback import FEEDBACK_VALUES, FeedbackRecorder
from .local_model import LocalModelAdapter, LocalModelRunner, OllamaRunner
from .memory import MemoryAdapter, MemoryBackend, SQLiteMemoryBackend
from .patterns import PatternMatcher
from .remote_model import BaseRemoteClient, RemoteModelAdapter
from .telemetry import DecisionLogger, RouterStats
from .types import (
    ArgumentValue,
    MemoryRecord,
    Query,
    RoutingDecision,
    ServiceResult,
    ToolParameter,
    ToolResult,
)

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    """A routing decision and, when a registered tool was selected, its result."""

    decision: RoutingDecision
    tool_result: ToolResult | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"decision": self.decision.to_dict()}
        if self.tool_result is not None:
            result["tool_result"] = self.tool_result.to_dict()
        return result


class SLMRouter:
    """Routes free-text queries to tools through the tiered cascade."""

    def __init__(
        self,
        config: RouterConfig,
        catalog: ToolCatalog,
        cascade: CascadeController,
        memory: MemoryAdapter | None = None,
        decision_log: DecisionLogger | None = None,
    ):
        self.config = config
        self.catalog = catalog
        self.cascade = cascade
        self.memory = memory
        self.feedback = FeedbackRecorder(memory) if memory is not None else None
        self.decision_log = decision_log or DecisionLogger(config.telemetry)

    @classmethod
    def from_config(
        cls,
        config: RouterConfig | None = None,
        catalog: ToolCatalog | None = None,
        memory_backend: MemoryBackend | None = None,
        knowledge_base: KnowledgeBase | None = None,
        local_runner: LocalModelRunner | None = None,
        remote_client: BaseRemoteClient | None = None,
    ) -> SLMRouter:
        """
        Build a router with every collaborator configured from ``config``.

        Explicit collaborators override the configured defaults. Memory is
        absent when disabled in configuration and no backend is given.
        """
        config = config or RouterConfig()
        catalog = catalog or DEFAULT_CATALOG

        if memory_backend is None and config.memory.enabled:
            memory_backend = SQLiteMemoryBackend(config.memory.db_path)
        memory = MemoryAdapter(memory_backend, config.memory) if memory_backend else None

        if not config.knowledge_base.enabled:
            knowledge_base = None

        local = LocalModelAdapter(
            runner=local_runner or OllamaRunner(config.local),
            catalog=catalog,
            config=config.local,
            confidence_threshold=config.cascade.confidence_threshold,
        )
        remote = RemoteModelAdapter(config.remote, client=remote_client)
        context = ContextBuilder(memory, knowledge_base, config.memory, config.knowledge_base)

        cascade = CascadeController(
            matcher=PatternMatcher(),
            local=local,
            remote=remote,
            memory=memory,
            context=context,
            config=config.cascade,
            stats=RouterStats(),
        )
        logger.info(
            f"SLM router ready: local={config.local.model_name} "
            f"remote={config.remote.provider}:{config.remote.model_name} "
            f"memory={'on' if memory else 'off'}"
        )
        return cls(config, catalog, cascade, memory)

    # =========================================================================
    # Routing
    # =========================================================================

    async def route(
        self, query: str, user_id: str | None = None, skip_memory: bool = False
    ) -> RoutingDecision:
        """
        Pick a tool (or produce an answer) for ``query``.

        Raises:
            InvalidQueryError: If the query is blank
        """
        request = Query(query, user_id=user_id, skip_memory=skip_memory)
        decision = await self.cascade.route(request)
        self.decision_log.log_decision(query, decision, user_id)
        return decision

    async def dispatch(
        self, query: str, user_id: str | None = None, skip_memory: bool = False
    ) -> DispatchResult:
        """Route, then invoke the selected tool when it has an executor."""
        decision = await self.route(query, user_id=user_id, skip_memory=skip_memory)
        if decision.tool_name is None or not self.catalog.is_executable(decision.tool_name):
            return DispatchResult(decision)
        tool_result = await self.catalog.invoke(decision.tool_name, decision.arguments)
        return DispatchResult(decision, tool_result)

    async def benchmark(self, cases: Sequence[BenchmarkCase] = DEFAULT_CASES) -> BenchmarkReport:
        return await run_benchmark(self.cascade.route, cases)

    # =========================================================================
    # Memory
    # =========================================================================

    async def learn(
        self,
        query: str,
        feedback: str | bool,
        corrected_tool: str | None = None,
        corrected_args: Mapping[str, Any] | str | None = None,
        user_id: str | None = None,
    ) -> ServiceResult[bool]:
        """
        Record feedback on how ``query`` was routed.

        Args:
            feedback: "correct", "incorrect", or a bool

        Raises:
            InvalidFeedbackError: For unknown feedback values, or incorrect
                feedback without a corrected tool
        """
        if isinstance(feedback, bool):
            correct = feedback
        elif feedback in FEEDBACK_VALUES:
            correct = feedback == "correct"
        else:
            raise InvalidFeedbackError('feedback must be "correct" or "incorrect"')

        if self.feedback is None:
            # Still validate the payload so callers see input errors
            if not correct and not corrected_tool:
                raise InvalidFeedbackError(
                    "a corrected tool is required when feedback is incorrect"
                )
            return ServiceResult.failure("memory not available")

        args = dict(corrected_args) if isinstance(corrected_args, Mapping) else corrected_args
        result = await self.feedback.record_feedback(
            query, correct, corrected_tool, args, user_id=user_id
        )
        self.decision_log.log_feedback(query, correct, corrected_tool)
        return result

    async def recall(
        self, query: str, user_id: str | None = None
    ) -> ServiceResult[list[MemoryRecord]]:
        """Past routing records related to ``query``."""
        if not isinstance(query, str) or not query.strip():
            raise InvalidQueryError("query is required")
        if self.memory is None:
            return ServiceResult.failure("memory not available")
        return await self.memory.recall(query, user_id)

    # =========================================================================
    # Health and statistics
    # =========================================================================

    async def healthcheck(self) -> dict[str, Any]:
        """Reachability of the local model, remote model and memory services."""

        async def _memory_ok() -> bool:
            return await self.memory.ping() if self.memory is not None else False

        local_ok, remote_ok, memory_ok = await asyncio.gather(
            self.cascade.local.health(),
            self.cascade.remote.health(),
            _memory_ok(),
        )
        return {
            "services": {
                "ollama": local_ok,
                "ai_proxy": remote_ok,
                "memory": memory_ok,
                # The local model is the only required service
                "overall": local_ok,
            },
            "config": {
                "ollama_url": self.config.local.base_url,
                "ollama_model": self.config.local.model_name,
                "ai_proxy_url": self.config.remote.base_url,
                "remote_provider": self.config.remote.provider,
                "confidence_threshold": self.config.cascade.confidence_threshold,
                "memory_enabled": self.memory is not None,
                "memory_database": "configured" if self.memory is not None else "not configured",
                "knowledge_base_enabled": self.cascade.context is not None
                and self.cascade.context.knowledge_base is not None,
            },
        }

    def statistics(self) -> dict[str, Any]:
        return {
            "routing": self.cascade.stats.to_dict(),
            "local_model": self.cascade.local.get_statistics(),
            "remote_model": self.cascade.remote.get_statistics(),
            "decision_log": self.decision_log.get_statistics(),
        }

    # =========================================================================
    # Tool surface
    # =========================================================================

    def as_tools(self) -> list[FunctionTool]:
        """Expose the router operations as tools for a tool-calling host."""

        async def _route(args: Mapping[str, ArgumentValue]) -> dict[str, Any]:
            decision = await self.route(
                str(args["query"]),
                user_id=_optional_str(args.get("user_id")),
                skip_memory=args.get("skip_memory") is True,
            )
            return decision.to_dict()

        async def _health(args: Mapping[str, ArgumentValue]) -> dict[str, Any]:
            return await self.healthcheck()

        async def _benchmark(args: Mapping[str, ArgumentValue]) -> dict[str, Any]:
            return (await self.benchmark()).to_dict()

        async def _learn(args: Mapping[str, ArgumentValue]) -> dict[str, Any]:
            feedback = str(args["feedback"])
            result = await self.learn(
                str(args["query"]),
                feedback,
                corrected_tool=_optional_str(args.get("correct_tool")),
                corrected_args=args.get("correct_params"),  # type: ignore[arg-type]
            )
            if not result.ok:
                raise RuntimeError(result.error)
            return {
                "message": "Positive feedback recorded. This routing will be preferred in future."
                if feedback == "correct"
                else "Correction recorded. Future queries will use the correct routing.",
                "query": args["query"],
                "feedback": feedback,
                "correct_tool": args.get("correct_tool"),
            }

        async def _recall(args: Mapping[str, ArgumentValue]) -> dict[str, Any]:
            result = await self.recall(str(args["query"]), _optional_str(args.get("user_id")))
            if not result.ok:
                raise RuntimeError(result.error)
            records = result.value or []
            return {"count": len(records), "results": [r.to_dict() for r in records]}

        query = ToolParameter("query", "string", "The query to route", required=True)
        user_id = ToolParameter("user_id", "string", "User ID for personalized memory")
        return [
            FunctionTool(
                "slm_route",
                "Route a query through the cascade (Memory → Deterministic → Ollama → LLM)",
                _route,
                (query, user_id, ToolParameter("skip_memory", "boolean", "Skip memory lookup")),
            ),
            FunctionTool(
                "slm_health",
                "Check health status of SLM router services (Ollama, AI Proxy, memory)",
                _health,
            ),
            FunctionTool("slm_benchmark", "Run benchmark tests on the SLM router", _benchmark),
            FunctionTool(
                "slm_learn",
                "Provide feedback on routing to improve future results",
                _learn,
                (
                    ToolParameter("query", "string", "The original query", required=True),
                    ToolParameter("feedback", "string", "correct or incorrect", required=True),
                    ToolParameter("correct_tool", "string", "The correct tool if feedback is incorrect"),
                    ToolParameter("correct_params", "string", "Correct parameters as JSON"),
                ),
            ),
            FunctionTool(
                "slm_recall",
                "Search memory for past routing results",
                _recall,
                (
                    ToolParameter("query", "string", "Search query", required=True),
                    ToolParameter("user_id", "string", "Filter by user ID"),
                ),
            ),
        ]

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def aclose(self) -> None:
        await self.cascade.local.aclose()
        await self.cascade.remote.aclose()

    async def __aenter__(self) -> SLMRouter:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


def _optional_str(value: Any) -> str | None:
    return str(value) if value not in (None, "") else None


def create_router(config_path: Path | None = None, **overrides: Any) -> SLMRouter:
    """Build a router from a config file, or from the environment when no file exists."""
    if config_path is not None and config_path.exists():
        config = RouterConfig.load(config_path)
    else:
        config = RouterConfig.from_env()
    return SLMRouter.from_config(config, **overrides)


__all__ = ["DispatchResult", "SLMRouter", "create_router"]
