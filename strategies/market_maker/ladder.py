"""Quote ladder construction.

All spreads here are fractions of mid (0.005 == 0.5%); ``LadderParams``
converts the percentage values from ``StrategyCfg``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from core.config import StrategyCfg
from core.contracts import QuoteLadder
from strategies.indicators import MarketCondition

__all__ = [
    "LadderParams",
    "base_order_size",
    "build_ladder",
    "dynamic_spread",
    "order_sizes",
    "price_band",
    "price_levels",
    "snap_to_tick",
]

SENTIMENT_SPREAD = {"bullish": 0.9, "bearish": 1.1, "neutral": 1.0}
SR_PULL_DISTANCE = 0.03
SR_PULL_WEIGHT = 0.3


@dataclass(frozen=True)
class LadderParams:
    min_spread: float
    max_spread: float
    order_levels: int
    order_spacing: float
    risk_fraction: float
    leverage: float
    max_position_fraction: float

    def __post_init__(self) -> None:
        if self.min_spread <= 0 or self.max_spread < self.min_spread:
            raise ValueError("require 0 < min_spread <= max_spread")
        if self.order_levels < 1:
            raise ValueError(f"order_levels must be >= 1, got {self.order_levels}")

    @classmethod
    def from_config(cls, cfg: StrategyCfg) -> LadderParams:
        return cls(
            min_spread=cfg.min_spread / 100.0,
            max_spread=cfg.max_spread / 100.0,
            order_levels=cfg.order_levels,
            order_spacing=cfg.order_spacing / 100.0,
            risk_fraction=cfg.risk_percentage / 100.0,
            leverage=cfg.leverage,
            max_position_fraction=cfg.max_position_size / 100.0,
        )


def _clamp_volatility(volatility: float) -> float:
    return min(max(volatility, 0.0), 1.0)


def price_band(mid: float, max_spread: float, volatility: float) -> tuple[float, float]:
    """Prices outside this band are cancelled and never quoted."""
    width = max_spread * (1.0 + _clamp_volatility(volatility))
    return mid * (1.0 - width), mid * (1.0 + width)


def dynamic_spread(params: LadderParams, condition: MarketCondition) -> float:
    spread = (params.min_spread + params.max_spread) / 2.0
    spread *= 1.0 + _clamp_volatility(condition.volatility)
    width = condition.technical_signals.bollinger_width
    if width is not None:
        spread *= 1.0 + width / 100.0
    spread *= SENTIMENT_SPREAD.get(condition.sentiment, 1.0)
    return min(params.max_spread, max(params.min_spread, spread))


def _pull(price: float, level: float | None) -> float:
    if level is None or level <= 0:
        return price
    if abs(price - level) / level < SR_PULL_DISTANCE:
        return price * (1.0 - SR_PULL_WEIGHT) + level * SR_PULL_WEIGHT
    return price


def price_levels(
    mid: float,
    spread: float,
    params: LadderParams,
    condition: MarketCondition,
) -> tuple[list[float], list[float]]:
    """Buy prices descending from mid and sell prices ascending from mid.

    Each level is pulled toward the nearest support/resistance when within
    3% of it, then clamped into ``price_band``. A level that clamps onto or
    past the previous one on its side is dropped, so a narrow band can
    yield fewer than ``order_levels`` prices.
    """
    low, high = price_band(mid, params.max_spread, condition.volatility)
    sr = condition.support_resistance
    buys: list[float] = []
    sells: list[float] = []
    for i in range(params.order_levels):
        level_spread = spread + i * params.order_spacing
        buy = max(low, _pull(mid * (1.0 - level_spread), sr.nearest_support))
        sell = min(high, _pull(mid * (1.0 + level_spread), sr.nearest_resistance))
        if buy < mid and (not buys or buy < buys[-1]):
            buys.append(buy)
        if sell > mid and (not sells or sell > sells[-1]):
            sells.append(sell)
    return buys, sells


def snap_to_tick(
    buys: list[float], sells: list[float], mid: float, tick: float
) -> tuple[list[float], list[float]]:
    """Round buys up and sells down onto the tick grid, toward mid.

    Keeps every level inside the band after the executor's own rounding.
    Levels that meet mid or collide with a neighbour are dropped.
    """
    snapped_buys: list[float] = []
    for price in buys:
        snapped = round(math.ceil(price / tick - 1e-9) * tick, 12)
        if snapped < mid and (not snapped_buys or snapped < snapped_buys[-1]):
            snapped_buys.append(snapped)
    snapped_sells: list[float] = []
    for price in sells:
        snapped = round(math.floor(price / tick + 1e-9) * tick, 12)
        if snapped > mid and (not snapped_sells or snapped > snapped_sells[-1]):
            snapped_sells.append(snapped)
    return snapped_buys, snapped_sells


def base_order_size(balance: float, mid: float, params: LadderParams, min_size: float) -> float:
    if balance <= 0 or mid <= 0:
        return min_size
    notional = balance * params.risk_fraction * params.leverage / params.order_levels
    return max(notional / mid, min_size)


def order_sizes(
    base_size: float,
    condition: MarketCondition,
    count: int,
    *,
    max_total: float | None,
    min_size: float,
) -> tuple[list[float], list[float]]:
    volatility_mult = max(0.5, 1.0 - _clamp_volatility(condition.volatility))
    buy_mult = sell_mult = 1.0
    if condition.sentiment == "bullish":
        buy_mult, sell_mult = 1.2, 0.8
    elif condition.sentiment == "bearish":
        buy_mult, sell_mult = 0.8, 1.2

    def side(multiplier: float) -> list[float]:
        sizes = [base_size * volatility_mult * multiplier * max(0.5, 1.0 - 0.1 * i) for i in range(count)]
        total = sum(sizes)
        if max_total is not None and total > max_total > 0:
            sizes = [s * max_total / total for s in sizes]
        return [max(s, min_size) for s in sizes]

    return side(buy_mult), side(sell_mult)


def build_ladder(
    mid: float,
    condition: MarketCondition,
    params: LadderParams,
    *,
    balance: float,
    min_size: float,
    tick: float | None = None,
) -> QuoteLadder:
    spread = dynamic_spread(params, condition)
    buys, sells = price_levels(mid, spread, params, condition)
    if tick:
        buys, sells = snap_to_tick(buys, sells, mid, tick)
    base = base_order_size(balance, mid, params, min_size)
    max_total = None
    if balance > 0:
        max_total = balance * params.max_position_fraction * params.leverage / mid
    buy_sizes, sell_sizes = order_sizes(
        base,
        condition,
        params.order_levels,
        max_total=max_total,
        min_size=min_size,
    )
    return QuoteLadder(
        buy_levels=list(zip(buys, buy_sizes)),
        sell_levels=list(zip(sells, sell_sizes)),
    )
