"""
Deterministic pattern matching (tier 1).

Queries that carry a strongly typed identifier (a GSTIN, a vehicle
registration number, an HSN code) map to a tool without any model call.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .types import ArgumentValue, validate_arguments

logger = logging.getLogger(__name__)

Extractor = Callable[["re.Match[str]"], dict[str, Any]]


@dataclass(frozen=True)
class DeterministicRule:
    """A compiled pattern, the tool it selects, and its argument extractor."""

    pattern: re.Pattern[str]
    tool: str
    extractor: Extractor

    @classmethod
    def compile(cls, pattern: str, tool: str, extractor: Extractor) -> DeterministicRule:
        return cls(re.compile(pattern, re.IGNORECASE), tool, extractor)


@dataclass(frozen=True)
class PatternMatch:
    """Result of a successful deterministic match."""

    tool_name: str
    arguments: MappingProxyType[str, ArgumentValue] = field(
        default_factory=lambda: MappingProxyType({})
    )
    confidence: float = 1.0


DEFAULT_RULES: tuple[DeterministicRule, ...] = (
    DeterministicRule.compile(
        r"([0-9]{2}[A-Z]{5}[0-9]{4}[A-Z]{1}[0-9A-Z]{1}[Z]{1}[0-9A-Z]{1})",
        "gst_verify",
        lambda m: {"gstin": m.group(1).upper()},
    ),
    DeterministicRule.compile(
        r"([A-Z]{2}[0-9]{1,2}[A-Z]{0,3}[0-9]{4})",
        "vehicle_track",
        lambda m: {"vehicle_number": re.sub(r"\s+", "", m.group(1)).upper()},
    ),
    DeterministicRule.compile(
        r"hsn\s*(?:code)?\s*[:\s]*(\d{4,8})",
        "hsn_lookup",
        lambda m: {"query": m.group(1)},
    ),
)


class PatternMatcher:
    """
    Tries deterministic rules in registration order; first match wins.

    Matching is pure: the same query always yields the same result.
    """

    def __init__(self, rules: Iterable[DeterministicRule] | None = None):
        self.rules: tuple[DeterministicRule, ...] = (
            tuple(rules) if rules is not None else DEFAULT_RULES
        )

    def match(self, query: str) -> PatternMatch | None:
        for rule in self.rules:
            m = rule.pattern.search(query)
            if m is None:
                continue
            arguments = validate_arguments(rule.extractor(m))
            logger.debug(f"Deterministic match: {rule.tool} {arguments}")
            return PatternMatch(tool_name=rule.tool, arguments=MappingProxyType(arguments))
        return None


__all__ = ["DEFAULT_RULES", "DeterministicRule", "PatternMatch", "PatternMatcher"]
