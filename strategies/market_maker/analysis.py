from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from core.contracts import Candle
from strategies import indicators
from strategies.indicators import IndicatorSnapshot, MarketCondition

__all__ = [
    "CachedCondition",
    "DefaultTechnicalAnalyzer",
    "IndicatorHistory",
    "MarketAnalysis",
    "TechnicalAnalyzer",
]


class TechnicalAnalyzer(Protocol):
    """Source of per-symbol market conditions.

    ``MarketCondition.volatility`` is expected in [0, 1]. The ladder clamps
    it to that range before sizing the band and spread.
    """

    def analyze_candles(self, candles: Sequence[Candle]) -> IndicatorSnapshot: ...

    def analyze_market_conditions(
        self,
        candles: Sequence[Candle],
        price: float,
        ema_history: Mapping[str, Sequence[float]],
    ) -> MarketCondition: ...


class DefaultTechnicalAnalyzer:
    """Adapter exposing ``strategies.indicators`` as a ``TechnicalAnalyzer``."""

    def analyze_candles(self, candles: Sequence[Candle]) -> IndicatorSnapshot:
        return indicators.analyze_candles(candles)

    def analyze_market_conditions(
        self,
        candles: Sequence[Candle],
        price: float,
        ema_history: Mapping[str, Sequence[float]],
    ) -> MarketCondition:
        return indicators.analyze_market_conditions(candles, price, ema_history)


@dataclass
class IndicatorHistory:
    cap: int = 20
    short: deque[float] = field(init=False)
    medium: deque[float] = field(init=False)
    long: deque[float] = field(init=False)
    rsi: deque[float] = field(init=False)
    volatility: deque[float] = field(init=False)

    def __post_init__(self) -> None:
        self.short = deque(maxlen=self.cap)
        self.medium = deque(maxlen=self.cap)
        self.long = deque(maxlen=self.cap)
        self.rsi = deque(maxlen=self.cap)
        self.volatility = deque(maxlen=self.cap)

    def push(self, snapshot: IndicatorSnapshot, condition: MarketCondition) -> None:
        if snapshot.ema_very_short is not None and snapshot.ema_short is not None:
            self.short.append(snapshot.ema_short)
            if snapshot.sma_medium is not None:
                self.medium.append(snapshot.sma_medium)
            if snapshot.sma_long is not None:
                self.long.append(snapshot.sma_long)
        if snapshot.rsi is not None:
            self.rsi.append(snapshot.rsi)
        self.volatility.append(condition.volatility)

    def ema_history(self) -> dict[str, list[float]]:
        return {"short": list(self.short), "medium": list(self.medium), "long": list(self.long)}


@dataclass(frozen=True)
class CachedCondition:
    condition: MarketCondition
    snapshot: IndicatorSnapshot
    price: float
    computed_at: float


class MarketAnalysis:
    """Per-symbol rolling histories and the latest market condition."""

    def __init__(
        self,
        analyzer: TechnicalAnalyzer,
        *,
        history_cap: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._analyzer = analyzer
        self._history_cap = history_cap
        self._clock = clock
        self._histories: dict[str, IndicatorHistory] = {}
        self._conditions: dict[str, CachedCondition] = {}

    def history(self, symbol: str) -> IndicatorHistory:
        history = self._histories.get(symbol)
        if history is None:
            history = IndicatorHistory(cap=self._history_cap)
            self._histories[symbol] = history
        return history

    def update(self, symbol: str, candles: Sequence[Candle], price: float) -> CachedCondition:
        history = self.history(symbol)
        snapshot = self._analyzer.analyze_candles(candles)
        condition = self._analyzer.analyze_market_conditions(candles, price, history.ema_history())
        history.push(snapshot, condition)
        cached = CachedCondition(
            condition=condition,
            snapshot=snapshot,
            price=price,
            computed_at=self._clock(),
        )
        self._conditions[symbol] = cached
        return cached

    def latest(self, symbol: str) -> CachedCondition | None:
        return self._conditions.get(symbol)

    def is_stale(self, symbol: str, max_age_s: float) -> bool:
        cached = self._conditions.get(symbol)
        if cached is None:
            return True
        return self._clock() - cached.computed_at > max_age_s
