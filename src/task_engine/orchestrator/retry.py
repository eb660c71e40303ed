"""Bounded exponential backoff with jitter for reasoning-service calls."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

from task_engine.config import RetrySettings
from task_engine.orchestrator.errors import UpstreamServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Retry retryable `UpstreamServiceError`s; everything else propagates untouched."""

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_seconds: float = 0.5,
        max_seconds: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self.max_attempts = max_attempts
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self._sleep = sleep
        self._random = rng or random.Random()  # noqa: S311

    @classmethod
    def from_settings(cls, settings: RetrySettings, **kwargs) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_seconds=settings.base_seconds,
            max_seconds=settings.max_seconds,
            **kwargs,
        )

    def call(self, fn: Callable[[], T], *, operation: str) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except UpstreamServiceError as error:
                if not error.retryable:
                    logger.warning("%s failed without retry: %s", operation, error)
                    raise
                if attempt >= self.max_attempts:
                    logger.warning(
                        "%s failed after %d attempts: %s",
                        operation,
                        attempt,
                        error,
                    )
                    raise UpstreamServiceError(
                        f"{operation} failed after {attempt} attempts: {error}",
                        retryable=False,
                        reason_code=error.reason_code,
                    ) from error
                delay = self.compute_delay(retry_number=attempt)
                logger.info(
                    "%s attempt %d/%d failed (%s); retrying in %.2fs",
                    operation,
                    attempt,
                    self.max_attempts,
                    error,
                    delay,
                )
                self._sleep(delay)

    def compute_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.max_seconds,
            self.base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)
