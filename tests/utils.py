from __future__ import annotations

import asyncio
import itertools
from collections import deque
from pathlib import Path
from typing import Any, cast

from core.config import Config
from core.contracts import (
    AssetMetadata,
    BookLevel,
    Candle,
    OpenOrder,
    OrderBook,
    QuantizedOrder,
)
from core.exchange import IExchange, StaticWallet
from execution.errors import ExchangeError
from execution.executor import OrderExecutor
from execution.market_data import MarketDataService
from execution.metadata import AssetMetadataCache
from execution.scheduler import RequestScheduler

NEVER_PLACED = "Order was never placed, already canceled, or filled."


class FakeClock:
    """Virtual monotonic clock; ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        if delay > 0:
            self.now += delay
        await asyncio.sleep(0)


def book(symbol: str, bid: float, ask: float, depth: int = 3) -> OrderBook:
    bids = tuple(BookLevel(price=bid - i, size=1.0) for i in range(depth))
    asks = tuple(BookLevel(price=ask + i, size=1.0) for i in range(depth))
    return OrderBook(symbol=symbol, bids=bids, asks=asks)


def make_candles(closes: list[float], start_ms: int = 1_700_000_000_000) -> list[Candle]:
    candles: list[Candle] = []
    prev = closes[0]
    for i, close in enumerate(closes):
        candles.append(
            Candle(
                ts_open_ms=start_ms + i * 60_000,
                open=prev,
                high=max(prev, close) * 1.001,
                low=min(prev, close) * 0.999,
                close=close,
                volume=1.0,
            )
        )
        prev = close
    return candles


DEFAULT_UNIVERSE = [
    AssetMetadata(symbol="BTC", size_decimals=5, asset_id=0),
    AssetMetadata(symbol="ETH", size_decimals=4, asset_id=1),
]


class FakeExchange(IExchange):
    """Scriptable exchange double.

    ``submit_outcomes`` / ``cancel_outcomes`` are consumed first-in first-out;
    an ``Exception`` entry is raised, anything else is returned. With no
    scripted outcome, submits rest an order and cancels clear the symbol.
    """

    def __init__(
        self,
        *,
        universe: list[AssetMetadata] | None = None,
        books: dict[str, OrderBook] | None = None,
        candles: dict[str, list[Candle]] | None = None,
        balance: float = 10_000.0,
    ) -> None:
        self.universe = list(DEFAULT_UNIVERSE if universe is None else universe)
        self.books = dict(books or {})
        self.candles = dict(candles or {})
        self.balance = balance
        self.open_orders: list[OpenOrder] = []
        self.submit_outcomes: deque[Any] = deque()
        self.cancel_outcomes: deque[Any] = deque()
        self.submitted: list[QuantizedOrder] = []
        self.cancelled: list[int] = []
        self.calls: list[str] = []
        self._ids = itertools.count(100)

    def orders_for(self, symbol: str) -> list[OpenOrder]:
        return [o for o in self.open_orders if o.symbol == symbol]

    async def submit_order(self, order: QuantizedOrder) -> dict[str, Any]:
        self.calls.append("submit_order")
        self.submitted.append(order)
        if self.submit_outcomes:
            outcome = self.submit_outcomes.popleft()
            if isinstance(outcome, Exception):
                raise outcome
            return cast(dict[str, Any], outcome)
        oid = str(next(self._ids))
        self.open_orders.append(
            OpenOrder(
                symbol=order.symbol,
                side=order.intent.side,
                price=float(order.price),
                size=float(order.size),
                order_id=oid,
            )
        )
        return {"status": "ok", "response": {"data": {"statuses": [{"resting": {"oid": oid}}]}}}

    async def cancel_all(self, asset_id: int) -> dict[str, Any]:
        self.calls.append("cancel_all")
        self.cancelled.append(asset_id)
        if self.cancel_outcomes:
            outcome = self.cancel_outcomes.popleft()
            if isinstance(outcome, Exception):
                raise outcome
            return cast(dict[str, Any], outcome)
        symbol = next(a.symbol for a in self.universe if a.asset_id == asset_id)
        if not self.orders_for(symbol):
            raise RuntimeError(NEVER_PLACED)
        self.open_orders = [o for o in self.open_orders if o.symbol != symbol]
        return {"status": "ok"}

    async def fetch_order_book(self, symbol: str) -> OrderBook:
        self.calls.append("fetch_order_book")
        if symbol not in self.books:
            raise ExchangeError(f"no book for {symbol}")
        return self.books[symbol]

    async def fetch_candles(self, symbol: str, limit: int) -> list[Candle]:
        self.calls.append("fetch_candles")
        return list(self.candles.get(symbol, []))[-limit:]

    async def fetch_instrument_universe(self) -> list[AssetMetadata]:
        self.calls.append("fetch_instrument_universe")
        return list(self.universe)

    async def fetch_open_orders(self) -> list[OpenOrder]:
        self.calls.append("fetch_open_orders")
        return list(self.open_orders)

    async def fetch_account_balance(self) -> float:
        self.calls.append("fetch_account_balance")
        return self.balance


def build_test_config(tmp_path: Path, symbols: list[str]) -> Config:
    cfg_dict = {
        "app": {"name": "test", "env": "test", "timezone": "UTC"},
        "logging": {"level": "INFO", "json_output": False, "log_dir": str(tmp_path / "logs")},
        "strategy": {"trading_pairs": symbols},
        "risk": {
            "kill_switch_file": str(tmp_path / "halt"),
            "kill_switch_key": "test:halt",
        },
    }
    return cast(Config, Config.model_validate(cfg_dict))


def build_execution_stack(
    exchange: FakeExchange,
    clock: FakeClock,
    *,
    wallet: StaticWallet | None = None,
) -> tuple[RequestScheduler, AssetMetadataCache, MarketDataService, OrderExecutor]:
    scheduler = RequestScheduler(clock=clock, sleep_fn=clock.sleep)
    market_data = MarketDataService(exchange, scheduler, clock=clock)
    metadata = AssetMetadataCache(market_data.get_instrument_universe, clock=clock)
    executor = OrderExecutor(
        exchange,
        scheduler,
        metadata,
        market_data,
        wallet or StaticWallet(ready=True),
    )
    return scheduler, metadata, market_data, executor
