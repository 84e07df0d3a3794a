"""
Context assembly for the local model.

Two optional context blocks can be added to the tier-2 prompt: a short
summary of past routings from memory, and source-code snippets from a
knowledge base for code-related questions. Both are best effort; any
failure yields no context.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from .config import KnowledgeBaseConfig, MemoryConfig
from .memory import MemoryAdapter

logger = logging.getLogger(__name__)

CODE_QUERY_PATTERNS = [
    re.compile(r"how\s+(does|do|to|is)", re.IGNORECASE),
    re.compile(r"where\s+is", re.IGNORECASE),
    re.compile(r"find\s+(the\s+|a\s+)?(function|class|component|service)", re.IGNORECASE),
    re.compile(r"what\s+(is|does)", re.IGNORECASE),
    re.compile(r"show\s+me", re.IGNORECASE),
    re.compile(r"package|module|import|export", re.IGNORECASE),
    re.compile(r"implementation|code|example", re.IGNORECASE),
    re.compile(r"ankr|vibecoder|swayam|tasher|mcp|eon", re.IGNORECASE),
]

_IDENTIFIER_RE = re.compile(
    r"\b([a-z][a-zA-Z0-9]*[A-Z][a-zA-Z0-9]*|[A-Z][a-zA-Z0-9]+|[a-z]+_[a-z_]+)\b"
)
_QUOTED_RE = re.compile(r"\"([^\"]+)\"|'([^']+)'")


@dataclass(frozen=True)
class CodeChunk:
    """A snippet of indexed source code."""

    content: str
    file_path: str
    line_start: int = 1
    name: str | None = None
    file_name: str | None = None
    package: str = ""

    @property
    def title(self) -> str:
        return self.name or self.file_name or self.file_path


@runtime_checkable
class KnowledgeBase(Protocol):
    """Narrow interface to the source-code knowledge base."""

    async def find_by_name(self, name: str, limit: int = 1) -> list[CodeChunk]: ...

    async def query(self, text: str, limit: int = 2) -> list[CodeChunk]: ...


def is_code_query(query: str) -> bool:
    """True when the query looks like a question about source code."""
    return any(pattern.search(query) for pattern in CODE_QUERY_PATTERNS)


def extract_identifiers(query: str) -> list[str]:
    """
    Pull candidate code identifiers out of a query.

    camelCase, PascalCase and snake_case words come first, then quoted
    strings; duplicates are dropped keeping first occurrence.
    """
    identifiers = [m.group(1) for m in _IDENTIFIER_RE.finditer(query)]
    for m in _QUOTED_RE.finditer(query):
        identifiers.append(m.group(1) or m.group(2))
    return list(dict.fromkeys(identifiers))


def format_code_context(chunks: list[CodeChunk], chunk_chars: int = 600, max_chars: int = 1200) -> str:
    """Render code chunks as a prompt section, bounded to ``max_chars``."""
    context = "\n[Relevant ANKR Code]\n"
    for chunk in chunks:
        context += f"### {chunk.title} ({chunk.package})\n"
        context += f"File: {chunk.file_path}:{chunk.line_start}\n"
        context += "```\n"
        context += chunk.content[:chunk_chars]
        context += "\n```\n\n"
    return context[:max_chars]


class ContextBuilder:
    """Builds the optional memory and code context blocks."""

    def __init__(
        self,
        memory: MemoryAdapter | None = None,
        knowledge_base: KnowledgeBase | None = None,
        memory_config: MemoryConfig | None = None,
        kb_config: KnowledgeBaseConfig | None = None,
    ):
        self.memory = memory
        self.knowledge_base = knowledge_base
        self.memory_config = memory_config or (memory.config if memory else MemoryConfig())
        self.kb_config = kb_config or KnowledgeBaseConfig()

    async def build_memory_context(self, query: str) -> str | None:
        """Past-routing summary, only when longer than the minimum length."""
        if self.memory is None:
            return None

        result = await self.memory.build_context(query)
        if not result.ok:
            logger.debug(f"No memory context: {result.error}")
            return None

        context = result.value
        if context and len(context) > self.memory_config.context_min_chars:
            return context[: self.memory_config.context_max_chars]
        return None

    async def build_code_context(self, query: str) -> str | None:
        """Source snippets for code-related queries."""
        knowledge_base = self.knowledge_base
        if knowledge_base is None or not self.kb_config.enabled:
            return None
        if not is_code_query(query):
            return None

        try:
            chunks = await asyncio.wait_for(
                self._lookup(knowledge_base, query), timeout=self.kb_config.timeout_seconds
            )
        except Exception as e:
            logger.warning(f"Knowledge base lookup failed: {e!r}")
            return None

        if not chunks:
            return None

        return format_code_context(
            chunks[: self.kb_config.max_chunks],
            chunk_chars=self.kb_config.chunk_chars,
            max_chars=self.kb_config.max_chars,
        )

    async def _lookup(self, knowledge_base: KnowledgeBase, query: str) -> list[CodeChunk]:
        chunks: list[CodeChunk] = []

        # Exact name matches first, fuzzy query only when none hit
        for identifier in extract_identifiers(query)[: self.kb_config.max_identifiers]:
            chunks.extend(await knowledge_base.find_by_name(identifier, limit=1))

        if not chunks:
            chunks = list(await knowledge_base.query(query, limit=self.kb_config.max_chunks))

        return chunks


__all__ = [
    "CODE_QUERY_PATTERNS",
    "CodeChunk",
    "ContextBuilder",
    "KnowledgeBase",
    "extract_identifiers",
    "format_code_context",
    "is_code_query",
]
