"""
Per-key exponential backoff for calls to an overloaded upstream.

The limiter never makes calls itself. Callers ask should_allow() before a
request and report the outcome with record_success() / record_failure().
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

QUOTA_STATUS_CODES = (429, 403)
QUOTA_MESSAGE_MARKERS = ("quota", "rate limit", "too many requests")


@dataclass
class RateLimiterState:
    attempts: int
    last_attempt_at: float
    backoff: float  # seconds


@dataclass
class RateDecision:
    allowed: bool
    wait: Optional[float] = None


def _status_code(error: Any) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_quota_error(error: Any) -> bool:
    """True if `error` looks like a quota or rate-limit rejection."""
    if error is None:
        return False
    if _status_code(error) in QUOTA_STATUS_CODES:
        return True
    message = str(error).lower()
    return any(marker in message for marker in QUOTA_MESSAGE_MARKERS)


class RateLimiter:
    """
    Backoff doubles with each consecutive failure (base, 2*base, 4*base, ...)
    up to max_backoff. Quota failures wait at least quota_floor. A success
    clears the key entirely.
    """

    def __init__(
        self,
        base_backoff: float = 1.0,
        max_backoff: float = 60.0,
        quota_floor: float = 30.0,
    ) -> None:
        self._base_backoff = base_backoff
        self._max_backoff = max_backoff
        self._quota_floor = quota_floor
        self._states: dict[str, RateLimiterState] = {}
        self._clock = time.monotonic  # overridable for testing

    is_quota_error = staticmethod(is_quota_error)

    def should_allow(self, key: str) -> RateDecision:
        """Allow unless `key` is still inside its backoff window."""
        state = self._states.get(key)
        if state is None:
            return RateDecision(allowed=True)

        elapsed = self._clock() - state.last_attempt_at
        if elapsed < state.backoff:
            wait = state.backoff - elapsed
            logger.warning("Backoff active for %s, wait %.1fs", key, wait)
            return RateDecision(allowed=False, wait=wait)
        return RateDecision(allowed=True)

    def record_success(self, key: str) -> None:
        self._states.pop(key, None)

    def record_failure(self, key: str, is_quota_error: bool = False) -> None:
        state = self._states.get(key)
        if state is None:
            state = RateLimiterState(attempts=0, last_attempt_at=0.0, backoff=self._base_backoff)
            self._states[key] = state

        state.attempts += 1
        state.last_attempt_at = self._clock()
        state.backoff = min(
            self._base_backoff * 2 ** (state.attempts - 1), self._max_backoff
        )
        if is_quota_error:
            state.backoff = max(state.backoff, self._quota_floor)

        logger.warning(
            "Recorded failure for %s: attempts=%d, backoff=%.1fs",
            key,
            state.attempts,
            state.backoff,
        )

    def state(self, key: str) -> Optional[RateLimiterState]:
        """A copy of the backoff state for `key`, or None if unthrottled."""
        state = self._states.get(key)
        return dataclasses.replace(state) if state is not None else None
