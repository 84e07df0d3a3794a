"""
SLM-first tool router.

Routes free-text queries to registered tools through a four-tier cascade:
memory reuse, deterministic patterns, a local small model, and a remote
large model, learning from user feedback along the way.
"""

from .benchmark import DEFAULT_CASES, BenchmarkCase, BenchmarkReport, run_benchmark
from .cascade import ESCALATION_KEYWORDS, CascadeController, should_escalate
from .catalog import DEFAULT_CATALOG, FunctionTool, Tool, ToolCatalog
from .config import RouterConfig
from .context import CodeChunk, ContextBuilder, KnowledgeBase
from .errors import (
    InvalidFeedbackError,
    InvalidQueryError,
    MalformedModelOutputError,
    RouterError,
    ServiceUnavailableError,
)
from .feedback import FeedbackRecorder
from .local_model import LocalDecision, LocalModelAdapter, OllamaRunner
from .memory import MemoryAdapter, MemoryBackend, MemoryEntry, SQLiteMemoryBackend
from .patterns import DeterministicRule, PatternMatch, PatternMatcher
from .remote_model import Provider, RemoteModelAdapter
from .router import DispatchResult, SLMRouter, create_router
from .types import (
    DecisionStatus,
    FeedbackState,
    MemoryRecord,
    Query,
    RoutingDecision,
    ServiceResult,
    SimilarityMatch,
    Tier,
    ToolCatalogEntry,
    ToolParameter,
    ToolResult,
)

__version__ = "0.1.0"

__all__ = [
    # Router
    "SLMRouter",
    "DispatchResult",
    "create_router",
    "RouterConfig",
    # Cascade
    "CascadeController",
    "ESCALATION_KEYWORDS",
    "should_escalate",
    # Tiers
    "PatternMatcher",
    "DeterministicRule",
    "PatternMatch",
    "MemoryAdapter",
    "MemoryBackend",
    "MemoryEntry",
    "SQLiteMemoryBackend",
    "ContextBuilder",
    "KnowledgeBase",
    "CodeChunk",
    "LocalModelAdapter",
    "LocalDecision",
    "OllamaRunner",
    "RemoteModelAdapter",
    "Provider",
    "FeedbackRecorder",
    # Benchmark
    "BenchmarkCase",
    "BenchmarkReport",
    "DEFAULT_CASES",
    "run_benchmark",
    # Tools
    "DEFAULT_CATALOG",
    "FunctionTool",
    "Tool",
    "ToolCatalog",
    # Types
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
    # Errors
    "RouterError",
    "InvalidQueryError",
    "InvalidFeedbackError",
    "MalformedModelOutputError",
    "ServiceUnavailableError",
]
