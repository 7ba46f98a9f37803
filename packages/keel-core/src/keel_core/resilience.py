"""Retry policy for transient pipeline failures.

Registry pushes and scanner infrastructure errors are transient and retried
with exponential backoff and jitter. Build, scan-gate, signature and deploy
failures are never retried and pass straight through.

Retry Timeline (default config):
    - Attempt 1: Immediate
    - Attempt 2: ~1s delay (with jitter)
    - Attempt 3: ~2s delay (with jitter)

Example:
    >>> from keel_core.resilience import RetryPolicy
    >>> from keel_core.schemas.config import RetryConfig
    >>>
    >>> policy = RetryPolicy(RetryConfig(max_attempts=3))
    >>>
    >>> @policy.wrap
    ... def push():
    ...     return registry.push(image)
"""

from __future__ import annotations

import functools
import random
import time
from collections.abc import Callable
from typing import ParamSpec, TypeVar

import structlog

from keel_core.errors import RegistryError, ScannerUnavailableError
from keel_core.schemas.config import RetryConfig

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

DEFAULT_RETRYABLE: tuple[type[Exception], ...] = (
    RegistryError,
    ScannerUnavailableError,
    ConnectionError,
    TimeoutError,
)


class RetryPolicy:
    """Retry policy with exponential backoff and jitter.

    Attributes:
        config: RetryConfig with max_attempts, delays, and jitter settings.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        retryable_exceptions: tuple[type[Exception], ...] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize RetryPolicy.

        Args:
            config: Retry configuration. Uses defaults if None.
            retryable_exceptions: Exception types to retry on.
                Defaults to (RegistryError, ScannerUnavailableError,
                ConnectionError, TimeoutError).
            sleep: Sleep function, replaceable in tests.
        """
        self._config = config or RetryConfig()
        self._retryable_exceptions = retryable_exceptions or DEFAULT_RETRYABLE
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        """Return the retry configuration."""
        return self._config

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Uses exponential backoff: delay = initial * (multiplier ^ attempt),
        capped at max_delay_ms, with optional ±25% jitter.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in seconds.
        """
        base_delay_ms = min(
            self._config.initial_delay_ms * (self._config.backoff_multiplier**attempt),
            self._config.max_delay_ms,
        )

        if self._config.jitter and base_delay_ms > 0:
            jitter_range = base_delay_ms * 0.25
            base_delay_ms += random.uniform(-jitter_range, jitter_range)

        return max(base_delay_ms, 0.0) / 1000.0

    def should_retry(self, exception: Exception) -> bool:
        """Check if an exception is retryable."""
        return isinstance(exception, self._retryable_exceptions)

    def call(self, func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
        """Call ``func`` with retry on transient failures.

        Raises:
            The last exception once attempts are exhausted, or the first
            non-retryable exception immediately.
        """
        for attempt in range(self._config.max_attempts):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if not self.should_retry(e):
                    raise

                remaining = self._config.max_attempts - attempt - 1
                if remaining <= 0:
                    logger.warning(
                        "retry_exhausted",
                        attempts=self._config.max_attempts,
                        error=str(e),
                    )
                    raise

                delay = self.calculate_delay(attempt)
                logger.debug(
                    "retry_attempt",
                    attempt=attempt + 1,
                    max_attempts=self._config.max_attempts,
                    delay_seconds=delay,
                    error=str(e),
                )
                self._sleep(delay)

        raise RuntimeError("Retry exhausted without exception")

    def wrap(self, func: Callable[P, T]) -> Callable[P, T]:
        """Decorator form of ``call``."""

        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return self.call(func, *args, **kwargs)

        return wrapper


__all__ = ["DEFAULT_RETRYABLE", "RetryPolicy"]
