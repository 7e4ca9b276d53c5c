"""Error taxonomy shared by every pipeline component."""

from __future__ import annotations

import asyncio
from datetime import datetime


class RepoLensError(Exception):
    """Base class. `category` is the stable machine-readable kind."""

    category = "error"
    label = "Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(RepoLensError):
    """Repository does not exist, is private, or the id is unknown."""

    category = "not_found"
    label = "Not found"


class RateLimitedError(RepoLensError):
    """Hosting API quota exhausted."""

    category = "rate_limited"
    label = "Rate limited"

    def __init__(self, message: str, reset_at: datetime | None = None, remaining: int = 0):
        super().__init__(message)
        self.reset_at = reset_at
        self.remaining = remaining


class InvalidInputError(RepoLensError):
    """Malformed repository reference or argument."""

    category = "invalid_input"
    label = "Invalid input"


class NetworkError(RepoLensError):
    """Transient connectivity failure or upstream 5xx."""

    category = "network"
    label = "Network error"


class RequestTimeoutError(RepoLensError):
    """A request exceeded its timeout."""

    category = "timeout"
    label = "Timeout"


class PersistenceError(RepoLensError):
    """Document store read/write failure."""

    category = "persistence"
    label = "Storage error"


class GenerationError(RepoLensError):
    """Generative-text service failure. Recoverable: callers degrade."""

    category = "generation"
    label = "Generation failed"


class StateTransitionError(RepoLensError):
    """A status transition the analysis state machine forbids."""

    category = "invalid_transition"
    label = "Invalid transition"


# Failures caused by the request itself; a retry gives the same answer
TERMINAL_ERRORS = (NotFoundError, RateLimitedError, InvalidInputError)

# Transient failures; a later run may succeed
RETRYABLE_ERRORS = (NetworkError, RequestTimeoutError)

CANCELLED_MESSAGE = "Cancelled: analysis was interrupted before completion"


def categorized_message(exc: BaseException) -> str:
    """Human-readable message stored on a failed repository."""
    if isinstance(exc, asyncio.CancelledError):
        return CANCELLED_MESSAGE
    if isinstance(exc, RateLimitedError) and exc.reset_at:
        return f"{exc.label}: {exc.message} (resets at {exc.reset_at.isoformat()})"
    if isinstance(exc, RepoLensError):
        return f"{exc.label}: {exc.message}"
    return f"Unexpected error: {exc}"
