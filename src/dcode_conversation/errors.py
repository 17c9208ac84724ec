"""Exception types raised across the conversation runtime.

Two of these are policy boundaries the caller must enforce itself:
``RateLimitExceededError`` and ``SecurityError`` always propagate out of a
conversational turn unchanged. Everything else that goes wrong inside a turn is
folded into the deterministic fallback response.
"""

from __future__ import annotations


class ConversationError(RuntimeError):
    """Base exception for the conversation runtime."""


class RateLimitExceededError(ConversationError):
    """Raised when the inference quota for the caller is exhausted.

    Callers typically map this onto HTTP 429 and apply backoff.
    """

    def __init__(self, message: str, *, limit: int | None = None, period_seconds: int | None = None) -> None:
        super().__init__(message)
        self.limit = limit
        self.period_seconds = period_seconds


class SecurityError(ConversationError):
    """Raised when a request or completion violates the content/security policy."""


class TurnCancelledError(ConversationError):
    """Raised when a turn is cancelled through its ``CancellationToken``."""


FATAL_TURN_ERRORS: tuple[type[BaseException], ...] = (
    RateLimitExceededError,
    SecurityError,
    TurnCancelledError,
)
