from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


def _parse_retry_after(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class RetryConfig:
    max_attempts: int = 4
    base_delay_s: float = 2.0
    max_delay_s: float = 20.0
    multiplier: float = 1.5
    unprocessable_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("retry delays must be >= 0")


class AsyncRetry:
    """Run an async callable with exponential backoff.

    The first retry waits ``base_delay_s``; each later retry multiplies the
    previous delay by ``multiplier`` (``unprocessable_multiplier`` for HTTP
    422), capped at ``max_delay_s``. A ``Retry-After`` header on the error
    overrides the computed delay. Errors whose ``retryable`` attribute is
    False are raised immediately.
    """

    def __init__(
        self,
        *,
        config: RetryConfig | None = None,
        sleep_fn: SleepFn | None = None,
        logger: Any | None = None,
    ) -> None:
        self._config = config or RetryConfig()
        self._sleep = sleep_fn or asyncio.sleep
        self._log = logger or structlog.get_logger("execution.retry")

    @property
    def config(self) -> RetryConfig:
        return self._config

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        attempts = 0
        delay = 0.0
        while True:
            try:
                return await func()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                attempts += 1
                if not self._should_retry(exc) or attempts >= self._config.max_attempts:
                    raise
                delay = self._compute_delay(attempts, delay, exc)
                self._log.warning(
                    "retry_backoff",
                    attempt=attempts,
                    max_attempts=self._config.max_attempts,
                    delay=round(delay, 3),
                    error=str(exc),
                )
                if delay > 0:
                    await self._sleep(delay)

    def _should_retry(self, exc: Exception) -> bool:
        retryable = getattr(exc, "retryable", True)
        return bool(retryable)

    def _compute_delay(self, attempts: int, previous: float, exc: Exception) -> float:
        headers = self._extract_headers(exc)
        if headers:
            retry_after = _parse_retry_after(headers.get("Retry-After"))
            if retry_after is not None:
                return max(0.0, float(retry_after))
        if attempts <= 1:
            delay = self._config.base_delay_s
        elif self._status(exc) == 422:
            delay = previous * self._config.unprocessable_multiplier
        else:
            delay = previous * self._config.multiplier
        return float(min(self._config.max_delay_s, max(0.0, delay)))

    @staticmethod
    def _status(exc: Exception) -> int | None:
        status = getattr(exc, "http_status", None) or getattr(exc, "status", None)
        if isinstance(status, int):
            return status
        response = getattr(exc, "response", None)
        response_status = getattr(response, "status", None)
        if isinstance(response_status, int):
            return response_status
        return None

    @staticmethod
    def _extract_headers(exc: Exception) -> Mapping[str, Any] | None:
        headers = getattr(exc, "headers", None)
        if isinstance(headers, Mapping):
            return headers
        response = getattr(exc, "response", None)
        if response is not None:
            response_headers = getattr(response, "headers", None)
            if isinstance(response_headers, Mapping):
                return response_headers
        return None
