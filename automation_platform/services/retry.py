"""
Retry with exponential backoff for individual workflow steps.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar

from automation_platform.core.exceptions import WorkflowExecutionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "connect",
    "econnreset",
    "enotfound",
    "rate limit",
    "ratelimited",
    "too many requests",
    "quota exceeded",
    "429",
    "500",
    "502",
    "503",
    "504",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "temporarily unavailable",
    "maintenance",
)


@dataclass
class RetryConfig:
    max_retries: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: float = 60.0
    exponential_base: float = 2.0
    backoff_multiplier: float = 1.5
    jitter: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RetryConfig":
        """Build a config from a node's `retry` block, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class RetryAttempt:
    step_id: str
    attempt_number: int
    last_attempt_at: datetime
    last_error: str | None = None


def is_retryable_error(error: BaseException) -> bool:
    """Classify an error by its message; explicit `recoverable` flags win."""
    if isinstance(error, WorkflowExecutionError):
        return error.recoverable
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return True

    message = f"{type(error).__name__} {error}".lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


class RetryManager:
    def __init__(
        self,
        default_config: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.default_config = default_config or RetryConfig()
        self._sleep = sleep
        self._attempts: dict[str, RetryAttempt] = {}

    def get_retry_delay(self, attempt_number: int, config: RetryConfig | None = None) -> float:
        """Delay in seconds before the retry following `attempt_number` (1-based)."""
        config = config or self.default_config
        exponent = max(attempt_number - 1, 0)
        delay = config.initial_delay * (config.exponential_base ** exponent)
        delay *= config.backoff_multiplier ** exponent
        delay = min(delay, config.max_delay)
        if config.jitter:
            jitter_range = delay * 0.25
            delay += (random.random() - 0.5) * 2 * jitter_range
        return max(delay, 0.0)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        step_id: str,
        config: RetryConfig | None = None,
    ) -> T:
        config = config or self.default_config
        self.reset(step_id)
        attempt = 0
        try:
            while True:
                attempt += 1
                self._attempts[step_id] = RetryAttempt(step_id, attempt, datetime.utcnow())
                try:
                    return await operation()
                except Exception as exc:
                    self._attempts[step_id].last_error = str(exc)
                    if attempt > config.max_retries or not is_retryable_error(exc):
                        raise
                    delay = self.get_retry_delay(attempt, config)
                    logger.warning(
                        "Retrying step %s in %.2fs (attempt %s/%s): %s",
                        step_id,
                        delay,
                        attempt,
                        config.max_retries,
                        exc,
                    )
                    await self._sleep(delay)
        finally:
            self.reset(step_id)

    def get_retry_info(self, step_id: str) -> RetryAttempt | None:
        return self._attempts.get(step_id)

    def reset(self, step_id: str) -> None:
        self._attempts.pop(step_id, None)
