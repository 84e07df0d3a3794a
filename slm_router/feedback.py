"""
Feedback recording.

Turns user correctness signals into additive memory entries. Payload
problems are rejected before memory is touched.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from .errors import InvalidFeedbackError, InvalidQueryError
from .memory import MemoryAdapter
from .types import ServiceResult, validate_arguments

logger = logging.getLogger(__name__)

FEEDBACK_VALUES = ("correct", "incorrect")


def parse_corrected_args(raw: Any) -> dict[str, Any] | None:
    """
    Accept corrected arguments as a mapping or a JSON object string.

    Raises:
        InvalidFeedbackError: If the payload is not a JSON object or holds
            unsupported values.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidFeedbackError(f"corrected arguments are not valid JSON: {e}") from e
    try:
        return validate_arguments(raw)
    except ValueError as e:
        raise InvalidFeedbackError(f"invalid corrected arguments: {e}") from e


class FeedbackRecorder:
    """Applies correct/incorrect feedback to routing memory."""

    def __init__(self, memory: MemoryAdapter):
        self.memory = memory

    async def record_feedback(
        self,
        query: str,
        correct: bool,
        corrected_tool: str | None = None,
        corrected_args: dict[str, Any] | str | None = None,
        user_id: str | None = None,
    ) -> ServiceResult[bool]:
        """
        Record feedback for a past routing of ``query``.

        Raises:
            InvalidQueryError: If the query is blank
            InvalidFeedbackError: If feedback is incorrect and no corrected
                tool is given, or corrected arguments are malformed
        """
        if not isinstance(query, str) or not query.strip():
            raise InvalidQueryError("query is required")
        if not correct and not (corrected_tool and corrected_tool.strip()):
            raise InvalidFeedbackError("a corrected tool is required when feedback is incorrect")

        arguments = parse_corrected_args(corrected_args) if not correct else None

        result = await self.memory.apply_feedback(
            query,
            correct,
            corrected_tool=corrected_tool.strip() if corrected_tool else None,
            corrected_args=arguments,
            user_id=user_id,
        )
        if result.ok:
            logger.info(
                f"Feedback recorded for {query!r}: "
                + ("correct" if correct else f"incorrect -> {corrected_tool}")
            )
        return result


__all__ = ["FEEDBACK_VALUES", "FeedbackRecorder", "parse_corrected_args"]
