"""Read path to the exchange, routed through the scheduler's general queue.

Order books and candles are cached for a short TTL so the executor's
deviation check and the engine's reconcile loop do not each cost a request.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import structlog

from core.config import Config
from core.contracts import AssetMetadata, Candle, OpenOrder, OrderBook
from core.exchange import IExchange
from execution.scheduler import RequestScheduler

__all__ = ["MarketDataService"]


class MarketDataService:
    def __init__(
        self,
        exchange: IExchange,
        scheduler: RequestScheduler,
        *,
        order_book_ttl_s: float = 1.0,
        candle_ttl_s: float = 5.0,
        symbols_ttl_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._exchange = exchange
        self._scheduler = scheduler
        self._order_book_ttl_s = order_book_ttl_s
        self._candle_ttl_s = candle_ttl_s
        self._symbols_ttl_s = symbols_ttl_s
        self._clock = clock
        self._log = logger or structlog.get_logger("execution.market_data")
        self._books: dict[str, tuple[float, OrderBook]] = {}
        self._candles: dict[tuple[str, int], tuple[float, list[Candle]]] = {}
        self._symbols: tuple[float, list[str]] | None = None

    @classmethod
    def from_config(
        cls,
        exchange: IExchange,
        scheduler: RequestScheduler,
        cfg: Config,
        **kwargs: Any,
    ) -> MarketDataService:
        return cls(
            exchange,
            scheduler,
            order_book_ttl_s=cfg.execution.order_book_ttl_s,
            candle_ttl_s=cfg.execution.candle_ttl_s,
            symbols_ttl_s=cfg.metadata.ttl_s,
            **kwargs,
        )

    def _fresh(self, stamped_at: float, ttl_s: float) -> bool:
        return self._clock() - stamped_at < ttl_s

    async def get_order_book(self, symbol: str, *, use_cache: bool = True) -> OrderBook:
        key = symbol.upper()
        cached = self._books.get(key)
        if use_cache and cached is not None and self._fresh(cached[0], self._order_book_ttl_s):
            return cached[1]
        book = await self._scheduler.enqueue_general(lambda: self._exchange.fetch_order_book(key))
        self._books[key] = (self._clock(), book)
        return book

    async def get_candles(self, symbol: str, limit: int, *, use_cache: bool = True) -> list[Candle]:
        key = (symbol.upper(), limit)
        cached = self._candles.get(key)
        if use_cache and cached is not None and self._fresh(cached[0], self._candle_ttl_s):
            return list(cached[1])
        candles = await self._scheduler.enqueue_general(
            lambda: self._exchange.fetch_candles(key[0], limit)
        )
        candles = sorted(candles, key=lambda c: c.ts_open_ms)
        self._candles[key] = (self._clock(), candles)
        return list(candles)

    async def get_open_orders(self, symbol: str | None = None) -> list[OpenOrder]:
        orders = await self._scheduler.enqueue_general(self._exchange.fetch_open_orders)
        if symbol is None:
            return list(orders)
        wanted = symbol.upper()
        return [order for order in orders if order.symbol.upper() == wanted]

    async def get_account_balance(self) -> float:
        balance = await self._scheduler.enqueue_general(self._exchange.fetch_account_balance)
        return float(balance)

    async def get_instrument_universe(self) -> list[AssetMetadata]:
        universe = await self._scheduler.enqueue_general(self._exchange.fetch_instrument_universe)
        return list(universe)

    async def get_available_symbols(self) -> list[str]:
        if self._symbols is not None and self._fresh(self._symbols[0], self._symbols_ttl_s):
            return list(self._symbols[1])
        universe = await self.get_instrument_universe()
        symbols = sorted({asset.symbol.upper() for asset in universe if asset.symbol})
        self._symbols = (self._clock(), symbols)
        self._log.debug("available_symbols_refreshed", count=len(symbols))
        return list(symbols)

    def invalidate(self, symbol: str | None = None) -> None:
        """Drop cached books and candles, for one symbol or all of them."""
        if symbol is None:
            self._books.clear()
            self._candles.clear()
            return
        key = symbol.upper()
        self._books.pop(key, None)
        for candle_key in [k for k in self._candles if k[0] == key]:
            del self._candles[candle_key]
