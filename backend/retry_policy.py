"""
Failure classification and backoff policy for queued jobs.

Rules:
  1. Errors whose message matches a rate-limit marker are transient
  2. Everything else (including missing credentials) is fatal
  3. Transient failures wait min(MAX, BASE * 2**attempt) + jitter before retrying
"""
from __future__ import annotations

import random
from typing import Callable, Optional, Union

from config import (
    BACKOFF_JITTER_SECONDS,
    BASE_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    RATE_LIMIT_MARKERS,
)


class MissingCredentialError(RuntimeError):
    """Raised when the provider needed by a job has no API key configured."""


class InvalidJobError(ValueError):
    """Raised when a job's payload cannot be dispatched to any provider."""


_ALWAYS_FATAL = (MissingCredentialError, InvalidJobError)


def error_message(error: Union[BaseException, str, None]) -> str:
    if error is None:
        return ""
    return str(error)


def is_rate_limit_error(error: Union[BaseException, str, None]) -> bool:
    """True when the error looks like throttling or temporary overload."""
    if isinstance(error, _ALWAYS_FATAL):
        return False
    text = error_message(error).lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


def backoff_seconds(
    attempt: int,
    *,
    rng: Optional[Callable[[], float]] = None,
    base: float = BASE_BACKOFF_SECONDS,
    cap: float = MAX_BACKOFF_SECONDS,
    jitter: float = BACKOFF_JITTER_SECONDS,
) -> float:
    """Delay before retry number `attempt` (1-based)."""
    rand = rng or random.random
    return min(cap, base * (2 ** attempt)) + rand() * jitter
