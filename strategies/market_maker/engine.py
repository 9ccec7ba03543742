"""Market-making decision loop.

Two timers drive every tracked symbol through ``idle -> analyzing ->
reconciling -> idle``: the analysis timer refreshes indicator state, the
reconcile timer turns it into a quote ladder and gap-fills resting orders.
Per-symbol failures are emitted on the ``ErrorChannel`` and never raised
out of a cycle.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog

from core.config import Config, StrategyCfg
from core.contracts import OpenOrder, QuoteLadder, Sentiment
from core.exchange import IExchange, IWallet
from core.kill_switch import KillSwitch
from execution.backoff import SleepFn
from execution.errors import NotReadyError, error_message
from execution.executor import OrderExecutor
from execution.market_data import MarketDataService
from execution.metadata import AssetMetadataCache
from execution.scheduler import RequestScheduler
from strategies.market_maker.analysis import (
    CachedCondition,
    DefaultTechnicalAnalyzer,
    MarketAnalysis,
    TechnicalAnalyzer,
)
from strategies.market_maker.events import EngineError, ErrorChannel, Stage
from strategies.market_maker.ladder import LadderParams, build_ladder, price_band

__all__ = ["EngineStatus", "MarketMakingEngine", "build_engine"]

Phase = Literal["idle", "analyzing", "reconciling"]


@dataclass(frozen=True)
class EngineStatus:
    running: bool
    active_pairs: list[str]
    last_prices: dict[str, float]
    order_count: int
    phases: dict[str, Phase] = field(default_factory=dict)


class MarketMakingEngine:
    def __init__(
        self,
        cfg: StrategyCfg,
        *,
        exchange: IExchange,
        scheduler: RequestScheduler,
        metadata: AssetMetadataCache,
        market_data: MarketDataService,
        executor: OrderExecutor,
        analyzer: TechnicalAnalyzer | None = None,
        kill_switch: KillSwitch | None = None,
        errors: ErrorChannel | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep_fn: SleepFn | None = None,
        logger: Any | None = None,
    ) -> None:
        self._cfg = cfg
        self._params = LadderParams.from_config(cfg)
        self._exchange = exchange
        self._scheduler = scheduler
        self._metadata = metadata
        self._market_data = market_data
        self._executor = executor
        self._kill_switch = kill_switch
        self._errors = errors or ErrorChannel()
        self._clock = clock
        self._sleep = sleep_fn or asyncio.sleep
        self._log = logger or structlog.get_logger("strategies.market_maker")
        self._analysis = MarketAnalysis(
            analyzer or DefaultTechnicalAnalyzer(),
            history_cap=cfg.history_cap,
            clock=clock,
        )

        self._running = False
        self._active_pairs: list[str] = []
        self._tasks: list[asyncio.Task[None]] = []
        self._locks: dict[str, asyncio.Lock] = {}
        self._phases: dict[str, Phase] = {}
        self._last_prices: dict[str, float] = {}
        self._last_sentiment: dict[str, Sentiment] = {}
        self._order_ids: dict[str, list[str]] = {}

    @property
    def running(self) -> bool:
        return self._running

    @property
    def errors(self) -> ErrorChannel:
        return self._errors

    @property
    def scheduler(self) -> RequestScheduler:
        return self._scheduler

    @property
    def analysis(self) -> MarketAnalysis:
        return self._analysis

    @property
    def active_pairs(self) -> list[str]:
        return list(self._active_pairs)

    @property
    def analysis_interval_s(self) -> float:
        return self._cfg.update_interval_ms * self._cfg.analysis_interval_factor / 1000.0

    @property
    def reconcile_interval_s(self) -> float:
        return self._cfg.order_refresh_ms / 1000.0

    @property
    def stale_after_s(self) -> float:
        return self._cfg.update_interval_ms * self._cfg.stale_analysis_factor / 1000.0

    def tracked_order_ids(self, symbol: str) -> list[str]:
        return list(self._order_ids.get(symbol.upper(), []))

    def status(self) -> EngineStatus:
        return EngineStatus(
            running=self._running,
            active_pairs=list(self._active_pairs),
            last_prices=dict(self._last_prices),
            order_count=sum(len(ids) for ids in self._order_ids.values()),
            phases=dict(self._phases),
        )

    async def activate_pairs(self) -> list[str]:
        """Resolve configured pairs against the venue's tradable symbols."""
        await self._metadata.refresh(force=True)
        available = set(await self._market_data.get_available_symbols())
        wanted = [pair.upper() for pair in self._cfg.trading_pairs]
        self._active_pairs = [pair for pair in wanted if pair in available]
        missing = [pair for pair in wanted if pair not in available]
        if missing:
            self._log.warning("pairs_unavailable", pairs=missing)
        if not self._active_pairs:
            raise NotReadyError(f"No tradable pairs among {wanted}")
        for symbol in self._active_pairs:
            self._phases[symbol] = "idle"
            self._order_ids.setdefault(symbol, [])
        return list(self._active_pairs)

    async def start(self) -> None:
        """Activate pairs, run one analysis and reconcile pass, start timers."""
        if self._running:
            return
        try:
            await self.activate_pairs()
            if self._exchange.supports_streaming:
                await self._exchange.start_streams(self._active_pairs)
        except Exception:
            await self._scheduler.close(cancel_pending=True)
            raise

        self._running = True
        self._log.info(
            "engine_started",
            pairs=self._active_pairs,
            analysis_interval_s=self.analysis_interval_s,
            reconcile_interval_s=self.reconcile_interval_s,
        )

        await self.run_analysis_cycle()
        await self.run_reconcile_cycle()
        self._tasks = [
            asyncio.create_task(
                self._every(self.analysis_interval_s, self.run_analysis_cycle),
                name="mm-analysis",
            ),
            asyncio.create_task(
                self._every(self.reconcile_interval_s, self.run_reconcile_cycle),
                name="mm-reconcile",
            ),
        ]

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self._scheduler.join()

        for symbol in sorted(set(self._active_pairs) | set(self._order_ids)):
            result = await self._executor.cancel_all(symbol)
            if not result.success:
                self._emit(symbol, "stop", f"cancel on shutdown failed: {result.message}")
        self._order_ids = {}

        if self._exchange.supports_streaming:
            try:
                await self._exchange.close_streams()
            except Exception as exc:
                self._emit(None, "stop", f"closing streams failed: {error_message(exc)}")
        await self._scheduler.close()
        self._log.info("engine_stopped")

    async def run_analysis_cycle(self) -> None:
        await self._for_each_symbol("analysis", self.analyze_symbol)

    async def run_reconcile_cycle(self) -> None:
        await self._for_each_symbol("reconcile", self.reconcile_symbol)

    async def analyze_symbol(self, symbol: str) -> CachedCondition | None:
        symbol = symbol.upper()
        lock = self._locks.setdefault(symbol, asyncio.Lock())
        async with lock:
            self._phases[symbol] = "analyzing"
            try:
                candles = await self._market_data.get_candles(symbol, self._cfg.candle_count)
                if not candles:
                    self._log.warning("analysis_no_candles", symbol=symbol)
                    return None
                book = await self._market_data.get_order_book(symbol)
                price = book.mid if book.mid is not None else candles[-1].close
                cached = self._analysis.update(symbol, candles, price)
                self._last_prices[symbol] = price
                self._log.debug(
                    "analysis_done",
                    symbol=symbol,
                    sentiment=cached.condition.sentiment,
                    volatility=round(cached.condition.volatility, 4),
                )
                return cached
            finally:
                self._phases[symbol] = "idle"

    async def reconcile_symbol(self, symbol: str) -> None:
        symbol = symbol.upper()
        self._phases[symbol] = "reconciling"
        try:
            await self._reconcile(symbol)
        finally:
            self._phases[symbol] = "idle"

    async def _reconcile(self, symbol: str) -> None:
        book = await self._market_data.get_order_book(symbol, use_cache=False)
        mid = book.mid
        if mid is None:
            self._log.info("reconcile_skipped", symbol=symbol, reason="no_mid")
            return
        self._last_prices[symbol] = mid

        if self._analysis.is_stale(symbol, self.stale_after_s):
            await self.analyze_symbol(symbol)
            self._phases[symbol] = "reconciling"
        cached = self._analysis.latest(symbol)
        if cached is None:
            self._log.info("reconcile_skipped", symbol=symbol, reason="no_analysis")
            return
        condition = cached.condition

        open_orders = await self._market_data.get_open_orders(symbol)
        previous = self._last_sentiment.get(symbol)
        flipped = bool(open_orders) and {previous, condition.sentiment} == {"bullish", "bearish"}
        low, high = price_band(mid, self._params.max_spread, condition.volatility)
        outside = [o for o in open_orders if not low <= o.price <= high]

        if flipped or outside:
            reason = "sentiment_flip" if flipped else "out_of_band"
            # a failed cancel leaves the flip pending
            if not await self._cancel_all(symbol, reason, len(open_orders)):
                return
            self._last_sentiment[symbol] = condition.sentiment
            if flipped:
                return
            open_orders = await self._market_data.get_open_orders(symbol)
        self._last_sentiment[symbol] = condition.sentiment

        if self._kill_switch is not None:
            tripped, source = await self._kill_switch.check()
            if tripped:
                self._log.warning("kill_switch_tripped", symbol=symbol, source=source)
                return

        balance = await self._market_data.get_account_balance()
        ladder = build_ladder(
            mid,
            condition,
            self._params,
            balance=balance,
            min_size=self._metadata.min_order_size(symbol),
            tick=self._metadata.get_tick_size(symbol),
        )
        await self._fill_gaps(symbol, mid, ladder, open_orders)

    async def _cancel_all(self, symbol: str, reason: str, resting: int) -> bool:
        self._log.info("cancel_all", symbol=symbol, reason=reason, resting=resting)
        result = await self._executor.cancel_all(symbol)
        if not result.success:
            self._emit(symbol, "cancel", f"cancel_all ({reason}) failed: {result.message}")
            return False
        self._order_ids[symbol] = []
        self._market_data.invalidate(symbol)
        return True

    async def _fill_gaps(
        self,
        symbol: str,
        mid: float,
        ladder: QuoteLadder,
        open_orders: list[OpenOrder],
    ) -> None:
        tolerance = self._cfg.duplicate_tolerance
        for side in ("buy", "sell"):
            resting = [o.price for o in open_orders if o.side == side]
            count = len(resting)
            for price, size in ladder.levels(side):
                if count >= self._params.order_levels:
                    break
                deviation = abs(price - mid) / mid
                if deviation > self._cfg.ladder_max_deviation:
                    self._log.warning(
                        "level_skipped",
                        symbol=symbol,
                        side=side,
                        price=price,
                        deviation=round(deviation, 4),
                    )
                    continue
                # duplicates are judged against orders resting before this pass
                if any(abs(existing - price) / price < tolerance for existing in resting):
                    continue
                result = await self._executor.place_limit_order(symbol, side, price, size)
                if not result.success:
                    self._emit(symbol, "placement", f"{side} {size}@{price}: {result.message}")
                    continue
                count += 1
                if result.order_id is not None:
                    self._order_ids.setdefault(symbol, []).append(result.order_id)

    async def _for_each_symbol(
        self, stage: Stage, action: Callable[[str], Awaitable[Any]]
    ) -> None:
        symbols = list(self._active_pairs)
        if self._cfg.simultaneous_pairs:
            await asyncio.gather(*(self._guarded(stage, symbol, action) for symbol in symbols))
            return
        for symbol in symbols:
            await self._guarded(stage, symbol, action)

    async def _guarded(
        self, stage: Stage, symbol: str, action: Callable[[str], Awaitable[Any]]
    ) -> None:
        try:
            await action(symbol)
        except Exception as exc:
            self._emit(symbol, stage, error_message(exc))

    async def _every(self, interval_s: float, cycle: Callable[[], Awaitable[None]]) -> None:
        while self._running:
            await self._sleep(interval_s)
            if not self._running:
                return
            await cycle()

    def _emit(self, symbol: str | None, stage: Stage, message: str) -> None:
        self._errors.emit(EngineError(symbol=symbol, stage=stage, message=message))


def build_engine(
    config: Config,
    exchange: IExchange,
    wallet: IWallet,
    *,
    analyzer: TechnicalAnalyzer | None = None,
    errors: ErrorChannel | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep_fn: SleepFn | None = None,
) -> MarketMakingEngine:
    """Wire scheduler, caches and executor for one engine instance."""
    scheduler = RequestScheduler.from_config(config.scheduler, clock=clock, sleep_fn=sleep_fn)
    market_data = MarketDataService.from_config(exchange, scheduler, config, clock=clock)
    metadata = AssetMetadataCache(
        market_data.get_instrument_universe,
        ttl_s=config.metadata.ttl_s,
        keep_decimal_symbols=config.metadata.keep_decimal_symbols,
        clock=clock,
    )
    executor = OrderExecutor.from_config(exchange, scheduler, metadata, market_data, wallet, config)
    kill_switch = KillSwitch(
        file_path=config.risk.kill_switch_file,
        redis_url=config.risk.redis_url,
        redis_key=config.risk.kill_switch_key,
    )
    return MarketMakingEngine(
        config.strategy,
        exchange=exchange,
        scheduler=scheduler,
        metadata=metadata,
        market_data=market_data,
        executor=executor,
        analyzer=analyzer,
        kill_switch=kill_switch,
        errors=errors,
        clock=clock,
        sleep_fn=sleep_fn,
    )
