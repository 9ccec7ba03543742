from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

import structlog

__all__ = ["EngineError", "ErrorChannel", "Stage"]

Stage = Literal["start", "analysis", "reconcile", "cancel", "placement", "stop"]

logger = structlog.get_logger("strategies.market_maker.events")


@dataclass(frozen=True)
class EngineError:
    symbol: str | None
    stage: Stage
    message: str
    ts_ns: int = field(default_factory=time.time_ns)


ErrorCallback = Callable[[EngineError], None]


class ErrorChannel:
    """Bounded buffer of engine errors plus synchronous subscribers.

    ``emit`` buffers first, then calls each subscriber in subscription
    order. A subscriber that raises is logged and skipped; the remaining
    subscribers still receive the error. Errors from different symbols may
    interleave in any order.
    """

    def __init__(self, capacity: int = 256) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be > 0, got {capacity}")
        self._buffer: deque[EngineError] = deque(maxlen=capacity)
        self._subscribers: list[ErrorCallback] = []

    def __len__(self) -> int:
        return len(self._buffer)

    def subscribe(self, callback: ErrorCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, error: EngineError) -> None:
        self._buffer.append(error)
        logger.warning("engine_error", symbol=error.symbol, stage=error.stage, error=error.message)
        for callback in list(self._subscribers):
            try:
                callback(error)
            except Exception as exc:
                logger.error("error_subscriber_failed", error=str(exc))

    def recent(self, limit: int | None = None) -> list[EngineError]:
        items = list(self._buffer)
        return items if limit is None else items[-limit:]

    def drain(self) -> list[EngineError]:
        items = list(self._buffer)
        self._buffer.clear()
        return items
