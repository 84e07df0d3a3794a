"""
Error taxonomy for the SLM router.

Only caller-input problems are raised to the host. Collaborator failures
(memory, knowledge base, model services) are caught at the adapter boundary
and surface as degraded results instead.
"""

from __future__ import annotations


class RouterError(Exception):
    """Base class for all router errors."""


class InvalidQueryError(RouterError, ValueError):
    """The query is missing or blank."""


class InvalidFeedbackError(RouterError, ValueError):
    """A learn() call carried a malformed feedback payload."""


class ServiceUnavailableError(RouterError):
    """An external collaborator could not be reached."""

    def __init__(self, service: str, reason: str = ""):
        self.service = service
        self.reason = reason
        message = f"{service} unavailable"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class MalformedModelOutputError(RouterError, ValueError):
    """Model output could not be parsed into a routing decision."""


__all__ = [
    "InvalidFeedbackError",
    "InvalidQueryError",
    "MalformedModelOutputError",
    "RouterError",
    "ServiceUnavailableError",
]
