"""Per-asset quantization metadata.

The cache is a total map: every symbol resolves to a tick size, step size
and decimal precision, falling back to well-known defaults and finally to
0.01 / 0.01 for symbols the exchange did not report.

Price ticks derived from ``size_decimals`` are deliberately coarser than the
exchange minimum (see ``tick_size_for_decimals``); rounding to a wider tick
never produces an off-grid price.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

import structlog

from core.contracts import AssetMetadata
from execution.errors import QuantizationError

__all__ = [
    "AssetMetadataCache",
    "decimals_of",
    "price_decimals_for",
    "tick_size_for_decimals",
]

DEFAULT_TICK_SIZE = 0.01
DEFAULT_STEP_SIZE = 0.01
DEFAULT_DECIMAL_PLACES = 2

# size decimals for symbols the exchange has not reported yet
FALLBACK_SIZE_DECIMALS: dict[str, int] = {
    "BTC": 5,
    "ETH": 4,
}

WELL_KNOWN_ASSET_IDS: dict[str, int] = {
    "BTC": 0,
    "ETH": 1,
    "SOL": 2,
    "AVAX": 3,
    "ARB": 4,
    "OP": 5,
    "DOGE": 6,
    "MATIC": 7,
    "LINK": 8,
    "DOT": 9,
    "ADA": 10,
    "ATOM": 11,
    "UNI": 12,
    "AAVE": 13,
    "XRP": 14,
    "LTC": 15,
    "BCH": 16,
    "ETC": 17,
    "FIL": 18,
    "NEAR": 19,
}

MIN_ORDER_SIZES: dict[str, float] = {
    "BTC": 0.0001,
    "ETH": 0.01,
    "SOL": 0.1,
    "AVAX": 0.1,
    "ARB": 1.0,
    "OP": 1.0,
    "DOGE": 10.0,
    "MATIC": 1.0,
    "LINK": 0.1,
    "DOT": 0.1,
    "UNI": 0.1,
    "AAVE": 0.1,
    "ATOM": 0.1,
    "LTC": 0.01,
    "XRP": 1.0,
}

UniverseLoader = Callable[[], Awaitable[Sequence[AssetMetadata]]]


def tick_size_for_decimals(size_decimals: int) -> float:
    if size_decimals == 5:
        return 0.1
    if size_decimals == 4:
        return 0.01
    if size_decimals == 0:
        return 1.0
    return DEFAULT_TICK_SIZE


def price_decimals_for(size_decimals: int) -> int:
    if size_decimals == 5:
        return 1
    if size_decimals == 4:
        return 2
    if size_decimals == 0:
        return 0
    return DEFAULT_DECIMAL_PLACES


def decimals_of(increment: float) -> int:
    """Number of fractional digits needed to render ``increment`` exactly."""
    exponent = Decimal(str(increment)).normalize().as_tuple().exponent
    if not isinstance(exponent, int):
        raise QuantizationError(f"Invalid increment: {increment}")
    return max(0, -exponent)


def _to_decimal(value: float, what: str, symbol: str) -> Decimal:
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        raise QuantizationError(f"Invalid {what} for {symbol}: {value!r}")
    return Decimal(str(value))


def round_to_increment(value: float, increment: float) -> Decimal:
    """``round(value / increment) * increment`` in exact decimal arithmetic."""
    step = Decimal(str(increment))
    if step <= 0:
        raise QuantizationError(f"Increment must be positive, got {increment}")
    try:
        count = (Decimal(str(value)) / step).to_integral_value(rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise QuantizationError(f"Cannot round {value!r} to {increment}") from exc
    return count * step


def render(value: Decimal, places: int) -> str:
    quantum = Decimal(1).scaleb(-places)
    return format(value.quantize(quantum, rounding=ROUND_HALF_UP), "f")


class AssetMetadataCache:
    def __init__(
        self,
        loader: UniverseLoader,
        *,
        ttl_s: float = 300.0,
        keep_decimal_symbols: Iterable[str] = ("BTC",),
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._loader = loader
        self._ttl_s = ttl_s
        self._keep_decimal = frozenset(s.upper() for s in keep_decimal_symbols)
        self._clock = clock
        self._log = logger or structlog.get_logger("execution.metadata")
        self._assets: dict[str, AssetMetadata] = {}
        self._last_refresh: float | None = None
        self._lock = asyncio.Lock()

    @property
    def last_refresh(self) -> float | None:
        return self._last_refresh

    def is_fresh(self) -> bool:
        if self._last_refresh is None:
            return False
        return self._clock() - self._last_refresh < self._ttl_s

    async def refresh(self, *, force: bool = False) -> bool:
        """Reload the instrument universe unless the cache is still fresh.

        Returns True when a reload happened. A failed fetch keeps the
        previous map and is logged, never raised.
        """
        if not force and self.is_fresh():
            return False
        async with self._lock:
            if not force and self.is_fresh():
                return False
            try:
                universe = await self._loader()
            except Exception as exc:
                self._log.warning("metadata_refresh_failed", error=str(exc))
                return False
            assets: dict[str, AssetMetadata] = {}
            for index, asset in enumerate(universe):
                if not asset.symbol:
                    continue
                symbol = asset.symbol.upper()
                if asset.asset_id is None or asset.symbol != symbol:
                    asset = AssetMetadata(
                        symbol=symbol,
                        size_decimals=asset.size_decimals,
                        max_leverage=asset.max_leverage,
                        tick_size=asset.tick_size,
                        step_size=asset.step_size,
                        asset_id=asset.asset_id if asset.asset_id is not None else index,
                    )
                assets[symbol] = asset
            self._assets = assets
            self._last_refresh = self._clock()
            self._log.info("metadata_refreshed", assets=len(assets))
            return True

    def symbols(self) -> list[str]:
        return sorted(self._assets)

    def get(self, symbol: str) -> AssetMetadata | None:
        return self._assets.get(symbol.upper())

    def _size_decimals(self, symbol: str) -> int | None:
        meta = self.get(symbol)
        if meta is not None:
            return meta.size_decimals
        return FALLBACK_SIZE_DECIMALS.get(symbol.upper())

    def get_tick_size(self, symbol: str) -> float:
        meta = self.get(symbol)
        if meta is not None and meta.tick_size:
            return meta.tick_size
        size_decimals = self._size_decimals(symbol)
        if size_decimals is None:
            return DEFAULT_TICK_SIZE
        return tick_size_for_decimals(size_decimals)

    def get_step_size(self, symbol: str) -> float:
        meta = self.get(symbol)
        if meta is not None and meta.step_size:
            return meta.step_size
        size_decimals = self._size_decimals(symbol)
        if size_decimals is None:
            return DEFAULT_STEP_SIZE
        return float(Decimal(1).scaleb(-size_decimals))

    def get_decimal_places(self, symbol: str, is_size: bool = False) -> int:
        meta = self.get(symbol)
        if is_size:
            if meta is not None and meta.step_size:
                return decimals_of(meta.step_size)
            size_decimals = self._size_decimals(symbol)
            return DEFAULT_DECIMAL_PLACES if size_decimals is None else size_decimals
        if meta is not None and meta.tick_size:
            return decimals_of(meta.tick_size)
        size_decimals = self._size_decimals(symbol)
        if size_decimals is None:
            return DEFAULT_DECIMAL_PLACES
        return price_decimals_for(size_decimals)

    def asset_id(self, symbol: str) -> int | None:
        meta = self.get(symbol)
        if meta is not None and meta.asset_id is not None:
            return meta.asset_id
        return WELL_KNOWN_ASSET_IDS.get(symbol.upper())

    def min_order_size(self, symbol: str) -> float:
        return max(MIN_ORDER_SIZES.get(symbol.upper(), 0.0), self.get_step_size(symbol))

    def format_price(self, symbol: str, price: float) -> str:
        """Round to the nearest tick and render at the asset's precision.

        Trailing fractional zeros are dropped, except that symbols in
        ``keep_decimal_symbols`` always keep at least one decimal.
        """
        _to_decimal(price, "price", symbol)
        value = round_to_increment(price, self.get_tick_size(symbol))
        text = render(value, self.get_decimal_places(symbol, is_size=False))
        if "." in text:
            text = text.rstrip("0").rstrip(".")
        if symbol.upper() in self._keep_decimal and "." not in text:
            text = f"{text}.0"
        if Decimal(text) <= 0:
            raise QuantizationError(f"Invalid price for {symbol}: {text}")
        return text

    def format_size(self, symbol: str, size: float) -> str:
        _to_decimal(size, "size", symbol)
        value = round_to_increment(size, self.get_step_size(symbol))
        text = render(value, self.get_decimal_places(symbol, is_size=True))
        if Decimal(text) <= 0:
            raise QuantizationError(f"Invalid size for {symbol}: {text}")
        return text

    def strict_price(self, symbol: str, price: float) -> str:
        """Tick-aligned price rendered at full precision, no zero stripping."""
        _to_decimal(price, "price", symbol)
        value = round_to_increment(price, self.get_tick_size(symbol))
        return render(value, self.get_decimal_places(symbol, is_size=False))

    def strict_size(self, symbol: str, size: float) -> str:
        _to_decimal(size, "size", symbol)
        value = round_to_increment(size, self.get_step_size(symbol))
        return render(value, self.get_decimal_places(symbol, is_size=True))
