"""Dual-queue request scheduler for every exchange call.

Two independent FIFO lanes, each drained by its own consumer task so the
exchange sees at most one general call and one order call in flight:

- general lane: sliding-window rate limit plus a fixed delay after each
  dispatch;
- order lane: strict minimum spacing between consecutive dispatches and a
  smaller retry budget, since a stale retried order may no longer match the
  market.

A failing request settles only its own future; the lane moves on.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import structlog

from core.config import SchedulerCfg
from execution.backoff import AsyncRetry, RetryConfig, SleepFn
from execution.errors import NotReadyError

T = TypeVar("T")

__all__ = ["QueuedRequest", "RequestScheduler"]


@dataclass
class QueuedRequest(Generic[T]):
    execute: Callable[[], Awaitable[T]]
    future: asyncio.Future[T]

    def on_success(self, value: T) -> None:
        if not self.future.done():
            self.future.set_result(value)

    def on_failure(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)


@dataclass
class _Lane:
    name: str
    retry: AsyncRetry
    queue: deque[QueuedRequest[Any]] = field(default_factory=deque)
    task: asyncio.Task[None] | None = None
    dispatched: int = 0

    @property
    def busy(self) -> bool:
        return self.task is not None and not self.task.done()


class RequestScheduler:
    def __init__(
        self,
        *,
        max_requests_per_window: int = 20,
        window_s: float = 10.0,
        capacity_ratio: float = 0.8,
        wait_buffer_s: float = 0.5,
        request_delay_s: float = 0.2,
        order_delay_s: float = 0.25,
        general_retry: RetryConfig | None = None,
        order_retry: RetryConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep_fn: SleepFn | None = None,
        logger: Any | None = None,
    ) -> None:
        if max_requests_per_window <= 0:
            raise ValueError(f"max_requests_per_window must be > 0, got {max_requests_per_window}")
        if window_s <= 0:
            raise ValueError(f"window_s must be > 0, got {window_s}")
        self._max_requests = max_requests_per_window
        self._window_s = window_s
        self._capacity_ratio = capacity_ratio
        self._wait_buffer_s = wait_buffer_s
        self._request_delay_s = request_delay_s
        self._order_delay_s = order_delay_s
        self._clock = clock
        self._sleep = sleep_fn or asyncio.sleep
        self._log = logger or structlog.get_logger("execution.scheduler")

        retry_log = structlog.get_logger("execution.retry")
        self._general = _Lane(
            name="general",
            retry=AsyncRetry(
                config=general_retry or RetryConfig(),
                sleep_fn=self._sleep,
                logger=retry_log,
            ),
        )
        self._orders = _Lane(
            name="order",
            retry=AsyncRetry(
                config=order_retry or RetryConfig(max_attempts=2),
                sleep_fn=self._sleep,
                logger=retry_log,
            ),
        )
        self._timestamps: deque[float] = deque()
        self._last_order_at: float | None = None
        self._closed = False

    @classmethod
    def from_config(cls, cfg: SchedulerCfg, **kwargs: Any) -> RequestScheduler:
        def retry(max_attempts: int) -> RetryConfig:
            return RetryConfig(
                max_attempts=max_attempts,
                base_delay_s=cfg.backoff_initial_ms / 1000.0,
                max_delay_s=cfg.backoff_max_ms / 1000.0,
                multiplier=cfg.backoff_multiplier,
            )

        return cls(
            max_requests_per_window=cfg.max_requests_per_window,
            window_s=cfg.window_ms / 1000.0,
            capacity_ratio=cfg.capacity_ratio,
            wait_buffer_s=cfg.wait_buffer_ms / 1000.0,
            request_delay_s=cfg.request_delay_ms / 1000.0,
            order_delay_s=cfg.order_delay_ms / 1000.0,
            general_retry=retry(cfg.general_max_attempts),
            order_retry=retry(cfg.order_max_attempts),
            **kwargs,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_general(self) -> int:
        return len(self._general.queue)

    @property
    def pending_orders(self) -> int:
        return len(self._orders.queue)

    @property
    def dispatched_general(self) -> int:
        return self._general.dispatched

    @property
    def dispatched_orders(self) -> int:
        return self._orders.dispatched

    def enqueue_general(self, fn: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        """Queue a read/general exchange call; await the returned future."""
        return self._enqueue(self._general, fn, self._run_general)

    def enqueue_order(self, fn: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        """Queue an order placement/cancel; await the returned future."""
        return self._enqueue(self._orders, fn, self._run_orders)

    async def join(self) -> None:
        """Wait until both lanes are idle."""
        while True:
            tasks = [lane.task for lane in (self._general, self._orders) if lane.busy]
            if not tasks:
                return
            await asyncio.gather(*[t for t in tasks if t is not None], return_exceptions=True)

    async def close(self, *, cancel_pending: bool = False) -> None:
        """Reject further enqueues; optionally fail everything still queued."""
        self._closed = True
        if not cancel_pending:
            await self.join()
            return
        for lane in (self._general, self._orders):
            while lane.queue:
                lane.queue.popleft().on_failure(NotReadyError("scheduler closed"))
            if lane.task is not None and not lane.task.done():
                lane.task.cancel()
                try:
                    await lane.task
                except asyncio.CancelledError:
                    pass

    def _enqueue(
        self,
        lane: _Lane,
        fn: Callable[[], Awaitable[T]],
        runner: Callable[[], Awaitable[None]],
    ) -> asyncio.Future[T]:
        if self._closed:
            raise NotReadyError("scheduler closed")
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        lane.queue.append(QueuedRequest(execute=fn, future=future))
        if not lane.busy:
            lane.task = loop.create_task(runner(), name=f"scheduler-{lane.name}")
        return future

    async def _run_general(self) -> None:
        lane = self._general
        while lane.queue:
            await self._wait_for_capacity()
            request = lane.queue.popleft()
            if request.future.done():
                continue
            self._timestamps.append(self._clock())
            await self._dispatch(lane, request)
            if self._request_delay_s > 0:
                await self._sleep(self._request_delay_s)

    async def _run_orders(self) -> None:
        lane = self._orders
        while lane.queue:
            if self._last_order_at is not None:
                elapsed = self._clock() - self._last_order_at
                if elapsed < self._order_delay_s:
                    wait = self._order_delay_s - elapsed
                    self._log.debug("scheduler_order_spacing", wait_s=round(wait, 3))
                    await self._sleep(wait)
            request = lane.queue.popleft()
            if request.future.done():
                continue
            self._last_order_at = self._clock()
            await self._dispatch(lane, request)

    async def _wait_for_capacity(self) -> None:
        threshold = self._max_requests * self._capacity_ratio
        while True:
            now = self._clock()
            while self._timestamps and now - self._timestamps[0] >= self._window_s:
                self._timestamps.popleft()
            if len(self._timestamps) < threshold:
                return
            wait = self._window_s - (now - self._timestamps[0]) + self._wait_buffer_s
            self._log.info(
                "scheduler_rate_wait",
                wait_s=round(wait, 3),
                in_window=len(self._timestamps),
                max_requests=self._max_requests,
            )
            await self._sleep(wait)

    async def _dispatch(self, lane: _Lane, request: QueuedRequest[Any]) -> None:
        lane.dispatched += 1
        try:
            result = await lane.retry.call(request.execute)
        except asyncio.CancelledError:
            request.on_failure(NotReadyError("scheduler closed"))
            raise
        except Exception as exc:
            self._log.warning("scheduler_request_failed", queue=lane.name, error=str(exc))
            request.on_failure(exc)
        else:
            request.on_success(result)
