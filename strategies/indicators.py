"""Default technical-analysis collaborator for the market maker.

Pure functions over candle lists, computed with pandas. Nothing here keeps
state; rolling histories live in ``strategies.market_maker.analysis``.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal

import numpy as np
import pandas as pd

from core.contracts import Candle, Sentiment

__all__ = [
    "BollingerBands",
    "IndicatorSnapshot",
    "MarketCondition",
    "PriceAction",
    "SupportResistance",
    "TechnicalSignals",
    "analyze_candles",
    "analyze_market_conditions",
    "calculate_volatility",
    "detect_ema_crossover",
    "identify_support_resistance",
]

RsiSignal = Literal["overbought", "oversold", "neutral"]
BandPosition = Literal["upper", "lower", "middle", "unknown"]
Crossover = Literal["golden", "death", "none"]
Trend = Literal["up", "down", "sideways"]


@dataclass(frozen=True)
class BollingerBands:
    upper: float | None = None
    middle: float | None = None
    lower: float | None = None


@dataclass(frozen=True)
class PriceAction:
    recent_high: float | None = None
    recent_low: float | None = None
    is_breakout: bool = False
    is_breakdown: bool = False


@dataclass(frozen=True)
class IndicatorSnapshot:
    rsi: float | None = None
    bollinger: BollingerBands = field(default_factory=BollingerBands)
    macd: float | None = None
    macd_signal: float | None = None
    macd_histogram: float | None = None
    sma_short: float | None = None
    sma_medium: float | None = None
    sma_long: float | None = None
    ema_very_short: float | None = None
    ema_short: float | None = None
    momentum: float | None = None
    price_action: PriceAction = field(default_factory=PriceAction)


@dataclass(frozen=True)
class TechnicalSignals:
    rsi: float | None = None
    rsi_signal: RsiSignal = "neutral"
    macd_histogram: float | None = None
    macd_signal: Sentiment = "neutral"
    bollinger_width: float | None = None
    bollinger_position: BandPosition = "unknown"
    ema_crossover: Crossover = "none"
    ema_trend: Trend = "sideways"


@dataclass(frozen=True)
class SupportResistance:
    supports: tuple[float, ...] = ()
    resistances: tuple[float, ...] = ()
    nearest_support: float | None = None
    nearest_resistance: float | None = None


@dataclass(frozen=True)
class MarketCondition:
    sentiment: Sentiment = "neutral"
    volatility: float = 0.5
    momentum: float = 0.0
    technical_signals: TechnicalSignals = field(default_factory=TechnicalSignals)
    support_resistance: SupportResistance = field(default_factory=SupportResistance)


def _closes(candles: Sequence[Candle]) -> pd.Series:
    return pd.Series([c.close for c in candles], dtype="float64")


def _last(series: pd.Series, digits: int | None = 2) -> float | None:
    if series.empty:
        return None
    value = series.iloc[-1]
    if pd.isna(value):
        return None
    return round(float(value), digits) if digits is not None else float(value)


def _ema(series: pd.Series, period: int) -> pd.Series:
    # seeded with the SMA of the first ``period`` values
    if len(series) < period:
        return pd.Series(dtype="float64")
    seeded = series.copy()
    seeded.iloc[: period - 1] = np.nan
    seeded.iloc[period - 1] = series.iloc[:period].mean()
    return seeded.ewm(span=period, adjust=False, ignore_na=True).mean()


def calculate_rsi(prices: pd.Series, period: int = 14) -> float | None:
    if len(prices) <= period:
        return None
    delta = prices.diff().dropna()
    gains = delta.clip(lower=0.0)
    losses = -delta.clip(upper=0.0)
    avg_gain = gains.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean().iloc[-1]
    avg_loss = losses.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean().iloc[-1]
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return round(100.0 - 100.0 / (1.0 + rs), 2)


def calculate_bollinger(prices: pd.Series, period: int = 20, num_std: float = 2.0) -> BollingerBands:
    if len(prices) < period:
        return BollingerBands()
    window = prices.iloc[-period:]
    middle = float(window.mean())
    std = float(window.std(ddof=0))
    return BollingerBands(
        upper=round(middle + num_std * std, 2),
        middle=round(middle, 2),
        lower=round(middle - num_std * std, 2),
    )


def calculate_macd(
    prices: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9
) -> tuple[float | None, float | None, float | None]:
    if len(prices) < slow + signal - 1:
        return None, None, None
    macd_line = (_ema(prices, fast) - _ema(prices, slow)).dropna()
    signal_line = _ema(macd_line.reset_index(drop=True), signal)
    macd_value = _last(macd_line)
    signal_value = _last(signal_line)
    if macd_value is None or signal_value is None:
        return None, None, None
    histogram = round(float(macd_line.iloc[-1]) - float(signal_line.iloc[-1]), 2)
    return macd_value, signal_value, histogram


def calculate_momentum(prices: pd.Series, period: int = 10) -> float | None:
    """Rate of change over ``period`` bars, in percent."""
    if len(prices) < period + 1:
        return None
    previous = float(prices.iloc[-period - 1])
    if previous == 0:
        return None
    return (float(prices.iloc[-1]) - previous) / previous * 100.0


def analyze_price_action(candles: Sequence[Candle], lookback: int = 14) -> PriceAction:
    if len(candles) < lookback + 1:
        return PriceAction()
    prior = candles[-lookback - 1 : -1]
    current = candles[-1]
    recent_high = max(c.high for c in prior)
    recent_low = min(c.low for c in prior)
    return PriceAction(
        recent_high=recent_high,
        recent_low=recent_low,
        is_breakout=current.close > recent_high,
        is_breakdown=current.close < recent_low,
    )


def analyze_candles(candles: Sequence[Candle]) -> IndicatorSnapshot:
    prices = _closes(candles)

    def sma(period: int) -> float | None:
        if len(prices) < period:
            return None
        return round(float(prices.iloc[-period:].mean()), 2)

    macd, macd_signal, histogram = calculate_macd(prices)
    return IndicatorSnapshot(
        rsi=calculate_rsi(prices),
        bollinger=calculate_bollinger(prices),
        macd=macd,
        macd_signal=macd_signal,
        macd_histogram=histogram,
        sma_short=sma(10),
        sma_medium=sma(50),
        sma_long=sma(200),
        ema_very_short=_last(_ema(prices, 5), None),
        ema_short=_last(_ema(prices, 9), None),
        momentum=calculate_momentum(prices),
        price_action=analyze_price_action(candles),
    )


def calculate_volatility(prices: Sequence[float], window: int = 20) -> float:
    """Return-volatility scaled onto [0.1, 1.0]; 0.5 without enough data."""
    if len(prices) < window + 1:
        return 0.5
    returns = pd.Series(prices, dtype="float64").pct_change().dropna()
    std = float(returns.std(ddof=0))
    if not math.isfinite(std):
        return 0.5
    annualized = std * math.sqrt(365 * 24)
    return min(1.0, max(0.1, annualized * 10))


def detect_ema_crossover(short: Sequence[float], long: Sequence[float]) -> tuple[Crossover, Trend]:
    if len(short) < 2 or len(long) < 2:
        return "none", "sideways"
    prev_short, curr_short = short[-2], short[-1]
    prev_long, curr_long = long[-2], long[-1]

    crossover: Crossover = "none"
    if prev_short < prev_long and curr_short > curr_long:
        crossover = "golden"
    elif prev_short > prev_long and curr_short < curr_long:
        crossover = "death"

    short_dir: Trend = "up" if curr_short > prev_short else "down"
    long_dir: Trend = "up" if curr_long > prev_long else "down"
    if short_dir == long_dir:
        return crossover, short_dir

    short_change = abs((curr_short - prev_short) / prev_short) if prev_short else 0.0
    long_change = abs((curr_long - prev_long) / prev_long) if prev_long else 0.0
    if short_change > long_change * 2:
        return crossover, short_dir
    if long_change > short_change * 2:
        return crossover, long_dir
    return crossover, "sideways"


def _cluster(levels: list[float], threshold: float) -> list[tuple[float, int]]:
    clusters: list[list[float]] = []
    for level in sorted(levels):
        for cluster in clusters:
            avg = sum(cluster) / len(cluster)
            if abs(level - avg) / avg < threshold:
                cluster.append(level)
                break
        else:
            clusters.append([level])
    return [(sum(c) / len(c), len(c)) for c in clusters]


def identify_support_resistance(
    candles: Sequence[Candle], levels: int = 3, cluster_threshold: float = 0.005
) -> tuple[list[float], list[float]]:
    """Strongest clustered local lows (supports) and highs (resistances)."""
    if len(candles) < 30:
        return [], []
    frame = pd.DataFrame({"high": [c.high for c in candles], "low": [c.low for c in candles]})
    window = min(5, len(candles) // 10)
    span = 2 * window + 1
    rolling_max = frame["high"].rolling(span, center=True).max()
    rolling_min = frame["low"].rolling(span, center=True).min()
    maxima = frame["high"][frame["high"] == rolling_max].tolist()
    minima = frame["low"][frame["low"] == rolling_min].tolist()

    def strongest(values: list[float]) -> list[float]:
        ranked = sorted(_cluster(values, cluster_threshold), key=lambda item: item[1], reverse=True)
        return [price for price, _ in ranked[:levels]]

    return strongest(minima), strongest(maxima)


def _band_position(price: float, bands: BollingerBands) -> BandPosition:
    if bands.upper is None or bands.lower is None or bands.middle is None:
        return "unknown"
    if price >= bands.upper:
        return "upper"
    if price <= bands.lower:
        return "lower"
    relative = (price - bands.lower) / (bands.upper - bands.lower)
    if 0.4 <= relative <= 0.6:
        return "middle"
    return "lower" if relative < 0.4 else "upper"


def analyze_market_conditions(
    candles: Sequence[Candle],
    price: float,
    ema_history: Mapping[str, Sequence[float]] | None = None,
) -> MarketCondition:
    """Score indicator votes into a sentiment plus volatility and S/R levels.

    ``ema_history`` holds rolling ``short`` and ``medium`` moving-average
    samples; the crossover between them feeds the trend vote. A side wins
    only when it leads by more than two votes.
    """
    history = ema_history or {}
    snapshot = analyze_candles(candles)
    prices = [c.close for c in candles]
    volatility = calculate_volatility(prices)
    supports, resistances = identify_support_resistance(candles)
    below = [s for s in supports if s < price]
    above = [r for r in resistances if r > price]

    rsi_signal: RsiSignal = "neutral"
    if snapshot.rsi is not None:
        if snapshot.rsi > 70:
            rsi_signal = "overbought"
        elif snapshot.rsi < 30:
            rsi_signal = "oversold"

    macd_signal: Sentiment = "neutral"
    if (
        snapshot.macd_histogram is not None
        and snapshot.macd is not None
        and snapshot.macd_signal is not None
    ):
        if snapshot.macd_histogram > 0 and snapshot.macd > snapshot.macd_signal:
            macd_signal = "bullish"
        elif snapshot.macd_histogram < 0 and snapshot.macd < snapshot.macd_signal:
            macd_signal = "bearish"

    bands = snapshot.bollinger
    width = None
    if bands.upper is not None and bands.lower is not None and price:
        width = (bands.upper - bands.lower) / price * 100.0
    position = _band_position(price, bands)
    crossover, trend = detect_ema_crossover(history.get("short", ()), history.get("medium", ()))

    bull = bear = 0
    bull += rsi_signal == "oversold"
    bear += rsi_signal == "overbought"
    bull += macd_signal == "bullish"
    bear += macd_signal == "bearish"
    bull += position == "lower"
    bear += position == "upper"
    bull += 2 * (crossover == "golden")
    bear += 2 * (crossover == "death")
    bull += trend == "up"
    bear += trend == "down"
    bull += 2 * snapshot.price_action.is_breakout
    bear += 2 * snapshot.price_action.is_breakdown
    if snapshot.momentum is not None:
        bull += snapshot.momentum > 2
        bear += snapshot.momentum < -2

    sentiment: Sentiment = "neutral"
    if bull > bear + 2:
        sentiment = "bullish"
    elif bear > bull + 2:
        sentiment = "bearish"

    return MarketCondition(
        sentiment=sentiment,
        volatility=volatility,
        momentum=snapshot.momentum or 0.0,
        technical_signals=TechnicalSignals(
            rsi=snapshot.rsi,
            rsi_signal=rsi_signal,
            macd_histogram=snapshot.macd_histogram,
            macd_signal=macd_signal,
            bollinger_width=width,
            bollinger_position=position,
            ema_crossover=crossover,
            ema_trend=trend,
        ),
        support_resistance=SupportResistance(
            supports=tuple(supports),
            resistances=tuple(resistances),
            nearest_support=max(below) if below else None,
            nearest_resistance=min(above) if above else None,
        ),
    )
