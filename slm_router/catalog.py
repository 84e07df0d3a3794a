"""
Tool catalogue and tool boundary.

The catalogue is the immutable list of tools the router may select. Tools
that are registered with an executor can also be invoked by name.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

from .types import ArgumentValue, ToolCatalogEntry, ToolParameter, ToolResult

logger = logging.getLogger(__name__)


@runtime_checkable
class Tool(Protocol):
    """A tool that can be executed with validated arguments."""

    name: str
    description: str
    parameters: tuple[ToolParameter, ...]

    async def execute(self, arguments: Mapping[str, ArgumentValue]) -> ToolResult: ...


@dataclass
class FunctionTool:
    """Tool backed by an async callable returning the tool's data."""

    name: str
    description: str
    handler: Callable[[Mapping[str, ArgumentValue]], Awaitable[Any]]
    parameters: tuple[ToolParameter, ...] = ()
    cost: float = 0.0

    async def execute(self, arguments: Mapping[str, ArgumentValue]) -> ToolResult:
        missing = [p.name for p in self.parameters if p.required and p.name not in arguments]
        if missing:
            return ToolResult(
                success=False,
                error=f"Missing required parameters: {', '.join(missing)}",
            )
        data = await self.handler(arguments)
        return ToolResult(success=True, data=data, metadata={"cost": self.cost})

    @property
    def entry(self) -> ToolCatalogEntry:
        return ToolCatalogEntry(self.name, self.description, self.parameters)


@dataclass(frozen=True)
class ToolCatalog:
    """
    Immutable catalogue of routable tools.

    Entries keep registration order; that order is the order shown to models.
    """

    entries: tuple[ToolCatalogEntry, ...]
    _tools: Mapping[str, Tool] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        names = [entry.name for entry in self.entries]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(f"Duplicate tool names: {sorted(duplicates)}")
        object.__setattr__(self, "_tools", MappingProxyType(dict(self._tools)))

    @classmethod
    def from_entries(cls, entries: Iterable[ToolCatalogEntry]) -> ToolCatalog:
        """Build a catalogue of descriptions only (no executors)."""
        return cls(entries=tuple(entries))

    @classmethod
    def from_tools(cls, tools: Iterable[Tool]) -> ToolCatalog:
        """Build a catalogue from executable tools."""
        tools = list(tools)
        entries = tuple(ToolCatalogEntry(t.name, t.description, tuple(t.parameters)) for t in tools)
        return cls(entries=entries, _tools={t.name: t for t in tools})

    def with_tools(self, tools: Iterable[Tool]) -> ToolCatalog:
        """Return a new catalogue with executors attached for known or new tools."""
        tools = list(tools)
        by_name = {t.name: t for t in tools}
        entries = list(self.entries)
        known = {entry.name for entry in entries}
        for tool in tools:
            if tool.name not in known:
                entries.append(ToolCatalogEntry(tool.name, tool.description, tuple(tool.parameters)))
        return ToolCatalog(entries=tuple(entries), _tools={**self._tools, **by_name})

    def __contains__(self, name: object) -> bool:
        return any(entry.name == name for entry in self.entries)

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def names(self) -> list[str]:
        return [entry.name for entry in self.entries]

    def get(self, name: str) -> ToolCatalogEntry | None:
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None

    def describe(self) -> list[tuple[str, str]]:
        """(name, description) pairs in registration order."""
        return [(entry.name, entry.description) for entry in self.entries]

    def is_executable(self, name: str) -> bool:
        return name in self._tools

    async def invoke(self, name: str, arguments: Mapping[str, ArgumentValue]) -> ToolResult:
        """
        Invoke a registered tool by name.

        Args:
            name: Tool name
            arguments: Validated arguments

        Returns:
            ToolResult with metadata.tool and metadata.duration_ms filled in
        """
        start = time.perf_counter()
        tool = self._tools.get(name)

        if tool is None:
            result = ToolResult(
                success=False,
                error=f"Unknown tool: {name}. Available: {', '.join(sorted(self._tools))}",
            )
        else:
            try:
                result = await tool.execute(dict(arguments))
            except Exception as e:
                logger.warning(f"Tool {name} failed: {e}")
                result = ToolResult(success=False, error=f"{type(e).__name__}: {e}")

        result.metadata.setdefault("tool", name)
        result.metadata.setdefault("cost", 0.0)
        result.metadata["duration_ms"] = (time.perf_counter() - start) * 1000
        return result


DEFAULT_CATALOG = ToolCatalog.from_entries(
    [
        ToolCatalogEntry("gst_verify", "Verify GST number"),
        ToolCatalogEntry("freight_trucks", "Find trucks for freight"),
        ToolCatalogEntry("eway_generate", "Generate E-Way bill"),
        ToolCatalogEntry("toll_estimate", "Estimate toll charges"),
        ToolCatalogEntry("hsn_lookup", "Look up HSN code"),
        ToolCatalogEntry("vehicle_track", "Track a vehicle"),
        ToolCatalogEntry("emi_calc", "Calculate EMI"),
        ToolCatalogEntry("freight_rates", "Get freight rates"),
    ]
)


__all__ = ["DEFAULT_CATALOG", "FunctionTool", "Tool", "ToolCatalog"]
