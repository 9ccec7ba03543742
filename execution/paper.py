"""In-memory exchange for dry runs.

Quotes a synthetic book around a per-symbol reference price, keeps resting
orders in a dict and never fills them. Rejections mimic the wording of a
live venue so the executor's correction path is exercised end to end.
"""

from __future__ import annotations

import itertools
import time
from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

import numpy as np
import structlog

from core.contracts import AssetMetadata, BookLevel, Candle, OpenOrder, OrderBook, QuantizedOrder
from core.exchange import IExchange
from execution.errors import ExchangeError
from execution.metadata import tick_size_for_decimals

__all__ = ["DEFAULT_UNIVERSE", "PaperExchange"]

NOTHING_TO_CANCEL = "Order was never placed, already canceled, or filled."

DEFAULT_UNIVERSE: tuple[AssetMetadata, ...] = (
    AssetMetadata(symbol="BTC", size_decimals=5, max_leverage=50.0),
    AssetMetadata(symbol="ETH", size_decimals=4, max_leverage=50.0),
    AssetMetadata(symbol="SOL", size_decimals=2, max_leverage=20.0),
    AssetMetadata(symbol="AVAX", size_decimals=2, max_leverage=20.0),
    AssetMetadata(symbol="ARB", size_decimals=1, max_leverage=20.0),
    AssetMetadata(symbol="DOGE", size_decimals=0, max_leverage=20.0),
)

DEFAULT_PRICES: dict[str, float] = {
    "BTC": 94_000.0,
    "ETH": 3_300.0,
    "SOL": 180.0,
    "AVAX": 35.0,
    "ARB": 0.8,
    "DOGE": 0.35,
}


class PaperExchange(IExchange):
    def __init__(
        self,
        *,
        universe: Iterable[AssetMetadata] = DEFAULT_UNIVERSE,
        prices: Mapping[str, float] | None = None,
        balance: float = 10_000.0,
        half_spread_bps: float = 5.0,
        depth: int = 5,
        seed: int = 7,
    ) -> None:
        self._universe = list(universe)
        self._prices = dict(DEFAULT_PRICES if prices is None else prices)
        self._balance = balance
        self._half_spread = half_spread_bps / 10_000.0
        self._depth = depth
        self._rng = np.random.default_rng(seed)
        self._orders: dict[str, OpenOrder] = {}
        self._ids = itertools.count(1)
        self._log = structlog.get_logger("execution.paper")
        self.submitted: list[QuantizedOrder] = []
        self.cancel_calls: list[int] = []

    def set_price(self, symbol: str, price: float) -> None:
        self._prices[symbol.upper()] = price

    def _asset(self, symbol: str) -> tuple[int, AssetMetadata]:
        for index, asset in enumerate(self._universe):
            if asset.symbol.upper() == symbol.upper():
                return index, asset
        raise ExchangeError(f"Unknown asset {symbol}")

    def _symbol_for(self, asset_id: int) -> str:
        for index, asset in enumerate(self._universe):
            resolved = asset.asset_id if asset.asset_id is not None else index
            if resolved == asset_id:
                return asset.symbol.upper()
        raise ExchangeError(f"Unknown asset id {asset_id}")

    def _reference(self, symbol: str) -> float:
        price = self._prices.get(symbol.upper())
        if price is None:
            raise ExchangeError(f"No market for {symbol}")
        return price

    async def submit_order(self, order: QuantizedOrder) -> dict[str, Any]:
        self.submitted.append(order)
        _, asset = self._asset(order.symbol)
        tick = Decimal(str(asset.tick_size or tick_size_for_decimals(asset.size_decimals)))
        price = Decimal(order.price)
        if price % tick != 0:
            raise ExchangeError(f"Order has invalid price: tick size must be divisible by {tick}")
        size = Decimal(order.size)
        if size <= 0 or -size.as_tuple().exponent > asset.size_decimals:  # type: ignore[operator]
            raise ExchangeError(f"Order has invalid size: {order.size}")

        order_id = str(next(self._ids))
        self._orders[order_id] = OpenOrder(
            symbol=order.symbol,
            side=order.intent.side,
            price=float(price),
            size=float(size),
            order_id=order_id,
            timestamp_ms=int(time.time() * 1000),
        )
        self._log.debug("paper_order_resting", order_id=order_id, **order.to_dict())
        return {
            "status": "ok",
            "response": {"type": "order", "data": {"statuses": [{"resting": {"oid": order_id}}]}},
        }

    async def cancel_all(self, asset_id: int) -> dict[str, Any]:
        self.cancel_calls.append(asset_id)
        symbol = self._symbol_for(asset_id)
        doomed = [oid for oid, order in self._orders.items() if order.symbol == symbol]
        if not doomed:
            raise ExchangeError(NOTHING_TO_CANCEL)
        for oid in doomed:
            del self._orders[oid]
        return {"status": "ok", "response": {"type": "cancel", "cancelled": doomed}}

    async def fetch_order_book(self, symbol: str) -> OrderBook:
        ref = self._reference(symbol)
        step = ref * self._half_spread
        bids = tuple(BookLevel(price=ref - step * (i + 1), size=1.0 + i) for i in range(self._depth))
        asks = tuple(BookLevel(price=ref + step * (i + 1), size=1.0 + i) for i in range(self._depth))
        return OrderBook(symbol=symbol.upper(), bids=bids, asks=asks)

    async def fetch_candles(self, symbol: str, limit: int) -> list[Candle]:
        ref = self._reference(symbol)
        returns = self._rng.normal(0.0, 0.001, size=limit)
        closes = ref * np.exp(np.cumsum(returns[::-1]))[::-1]
        now_ms = int(time.time() // 60 * 60_000)
        candles: list[Candle] = []
        prev = float(closes[0])
        for i, close in enumerate(closes):
            close = float(close)
            wiggle = abs(close - prev) + close * 0.0005
            candles.append(
                Candle(
                    ts_open_ms=now_ms - (limit - i) * 60_000,
                    open=prev,
                    high=max(prev, close) + wiggle,
                    low=min(prev, close) - wiggle,
                    close=close,
                    volume=float(self._rng.uniform(1.0, 10.0)),
                )
            )
            prev = close
        return candles

    async def fetch_instrument_universe(self) -> list[AssetMetadata]:
        return list(self._universe)

    async def fetch_open_orders(self) -> list[OpenOrder]:
        return list(self._orders.values())

    async def fetch_account_balance(self) -> float:
        return self._balance
