"""Observability helpers.

Structured logging, in-process metrics and request-scoped context used by the
provider client, the booking orchestrator and the conversation service.
"""

__all__ = [
    "metrics",
    "logger",
    "context",
]
