"""Circuit breaker around language-model calls.

Only errors that mean the model endpoint is unhealthy (transport failures,
HTTP errors, malformed completions) count towards tripping. A bad label
in an otherwise well-formed reply is the caller's problem and leaves the
breaker alone. While open, every turn goes straight to the keyword
classifier and the heuristic extractor.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

# Failures of the model call itself, as opposed to a usable reply we dislike
MODEL_CALL_ERRORS = (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError)


class CircuitOpenError(Exception):
    """Raised instead of calling the model while the breaker is open."""


@dataclass
class CircuitBreaker:
    """closed -> open (after N failures) -> half-open (after cooldown).

    In half-open state a single call is let through; if it fails the
    cooldown starts again.
    """

    failure_threshold: int = 3
    cooldown_seconds: float = 30.0
    label: str = "LLM"
    trip_on: tuple = MODEL_CALL_ERRORS

    _consecutive_failures: int = field(default=0, init=False, repr=False)
    _opened_at: Optional[float] = field(default=None, init=False, repr=False)

    @property
    def is_open(self) -> bool:
        return not self.should_try()

    @property
    def retry_in(self) -> float:
        """Seconds until the next call is let through (0 when closed)."""
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (time.monotonic() - self._opened_at))

    def should_try(self) -> bool:
        if self._consecutive_failures < self.failure_threshold:
            return True
        return self.retry_in == 0.0

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("%s circuit breaker closed", self.label)
        self._consecutive_failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures < self.failure_threshold:
            return
        reopening = self._opened_at is not None
        self._opened_at = time.monotonic()
        if reopening:
            logger.warning("%s still failing after cooldown, reopening for %.0fs", self.label, self.cooldown_seconds)
        else:
            logger.warning(
                "%s circuit breaker OPENED after %d consecutive failures, "
                "using rule-based fallback for %.0fs",
                self.label,
                self._consecutive_failures,
                self.cooldown_seconds,
            )

    async def call(self, func, *args, **kwargs):
        """Await ``func`` through the breaker.

        Raises CircuitOpenError without calling ``func`` while open. Errors
        listed in ``trip_on`` are counted and re-raised; anything else
        passes through uncounted.
        """
        if not self.should_try():
            raise CircuitOpenError(f"{self.label} circuit breaker open, retry in {self.retry_in:.0f}s")
        try:
            result = await func(*args, **kwargs)
        except self.trip_on:
            self.record_failure()
            raise
        self.record_success()
        return result


def llm_breaker() -> CircuitBreaker:
    """Breaker for one chat-completions endpoint: 3 failures, 30s cooldown."""
    return CircuitBreaker(
        failure_threshold=3,
        cooldown_seconds=30.0,
        label="LLM",
        trip_on=MODEL_CALL_ERRORS,
    )
