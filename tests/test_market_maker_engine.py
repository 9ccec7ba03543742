from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from core.config import SchedulerCfg, StrategyCfg
from core.contracts import Candle, OrderBook, Sentiment
from core.exchange import StaticWallet
from core.kill_switch import trip_file
from execution.errors import NotReadyError
from strategies.indicators import IndicatorSnapshot, MarketCondition
from strategies.market_maker.engine import MarketMakingEngine, build_engine
from strategies.market_maker.events import EngineError
from tests.utils import FakeClock, FakeExchange, book, build_test_config, make_candles


class FakeAnalyzer:
    def __init__(self, sentiment: Sentiment = "neutral", volatility: float = 1.0) -> None:
        self.sentiment: Sentiment = sentiment
        self.volatility = volatility
        self.calls = 0

    def analyze_candles(self, candles: Sequence[Candle]) -> IndicatorSnapshot:
        return IndicatorSnapshot()

    def analyze_market_conditions(
        self,
        candles: Sequence[Candle],
        price: float,
        ema_history: Mapping[str, Sequence[float]],
    ) -> MarketCondition:
        self.calls += 1
        return MarketCondition(sentiment=self.sentiment, volatility=self.volatility)


def _engine(
    tmp_path: Path,
    exchange: FakeExchange,
    analyzer: FakeAnalyzer,
    *,
    pairs: list[str] | None = None,
    simultaneous: bool = True,
) -> tuple[MarketMakingEngine, FakeClock]:
    cfg = build_test_config(tmp_path, pairs or ["BTC"])
    cfg = cfg.model_copy(
        update={
            "scheduler": SchedulerCfg(
                max_requests_per_window=1_000, request_delay_ms=0, order_delay_ms=0
            ),
            "strategy": StrategyCfg(
                trading_pairs=pairs or ["BTC"],
                simultaneous_pairs=simultaneous,
                order_spacing=0.12,
            ),
        }
    )
    clock = FakeClock()
    engine = build_engine(
        cfg,
        exchange,
        StaticWallet(ready=True),
        analyzer=analyzer,
        clock=clock,
        sleep_fn=clock.sleep,
    )
    return engine, clock


def _exchange(books: dict[str, OrderBook] | None = None) -> FakeExchange:
    return FakeExchange(
        books=books if books is not None else {"BTC": book("BTC", 94_000.0, 94_002.0)},
        candles={
            "BTC": make_candles([94_000.0 + i for i in range(30)]),
            "ETH": make_candles([3_000.0 + i for i in range(30)]),
        },
    )


async def _prime(engine: MarketMakingEngine) -> None:
    await engine.activate_pairs()
    await engine.run_analysis_cycle()


@pytest.mark.asyncio
async def test_activate_pairs_filters_unavailable(tmp_path: Path) -> None:
    engine, _ = _engine(tmp_path, _exchange(), FakeAnalyzer(), pairs=["btc", "ETH", "XYZ"])

    assert await engine.activate_pairs() == ["BTC", "ETH"]
    assert engine.status().phases == {"BTC": "idle", "ETH": "idle"}


@pytest.mark.asyncio
async def test_activate_pairs_requires_a_tradable_pair(tmp_path: Path) -> None:
    engine, _ = _engine(tmp_path, _exchange(), FakeAnalyzer(), pairs=["XYZ"])

    with pytest.raises(NotReadyError):
        await engine.activate_pairs()


@pytest.mark.asyncio
async def test_reconcile_places_full_ladder_inside_band(tmp_path: Path) -> None:
    exchange = _exchange()
    engine, _ = _engine(tmp_path, exchange, FakeAnalyzer())
    await _prime(engine)

    await engine.run_reconcile_cycle()

    buys = [o for o in exchange.submitted if o.intent.side == "buy"]
    sells = [o for o in exchange.submitted if o.intent.side == "sell"]
    assert len(buys) == 5
    assert len(sells) == 5
    mid = 94_001.0
    assert all(float(o.price) < mid for o in buys)
    assert all(float(o.price) > mid for o in sells)
    assert all(abs(float(o.price) - mid) / mid < 0.01 for o in exchange.submitted)
    assert len(engine.tracked_order_ids("BTC")) == 10
    status = engine.status()
    assert status.order_count == 10
    assert status.last_prices["BTC"] == pytest.approx(mid)
    assert status.phases["BTC"] == "idle"
    assert len(engine.errors) == 0


@pytest.mark.asyncio
async def test_second_cycle_does_not_duplicate_orders(tmp_path: Path) -> None:
    exchange = _exchange()
    engine, _ = _engine(tmp_path, exchange, FakeAnalyzer())
    await _prime(engine)

    await engine.run_reconcile_cycle()
    await engine.run_reconcile_cycle()

    assert len(exchange.submitted) == 10
    assert "cancel_all" not in exchange.calls


@pytest.mark.asyncio
async def test_gap_fill_replaces_only_missing_levels(tmp_path: Path) -> None:
    exchange = _exchange()
    engine, _ = _engine(tmp_path, exchange, FakeAnalyzer())
    await _prime(engine)
    await engine.run_reconcile_cycle()

    filled = [o for o in exchange.open_orders if o.side == "buy"][:2]
    exchange.open_orders = [o for o in exchange.open_orders if o not in filled]
    await engine.run_reconcile_cycle()

    refills = exchange.submitted[10:]
    assert len(refills) == 2
    assert all(o.intent.side == "buy" for o in refills)
    assert sorted(float(o.price) for o in refills) == sorted(o.price for o in filled)


@pytest.mark.asyncio
async def test_sentiment_flip_cancels_without_replacing(tmp_path: Path) -> None:
    exchange = _exchange()
    analyzer = FakeAnalyzer(sentiment="bullish")
    engine, _ = _engine(tmp_path, exchange, analyzer)
    await _prime(engine)
    await engine.run_reconcile_cycle()
    assert len(exchange.submitted) == 10

    analyzer.sentiment = "bearish"
    await engine.run_analysis_cycle()
    await engine.run_reconcile_cycle()

    assert exchange.cancelled == [0]
    assert exchange.orders_for("BTC") == []
    assert len(exchange.submitted) == 10
    assert engine.tracked_order_ids("BTC") == []

    await engine.run_reconcile_cycle()
    assert len(exchange.submitted) == 20
    assert exchange.cancelled == [0]


@pytest.mark.asyncio
async def test_neutral_transition_is_not_a_flip(tmp_path: Path) -> None:
    exchange = _exchange()
    analyzer = FakeAnalyzer(sentiment="bullish")
    engine, _ = _engine(tmp_path, exchange, analyzer)
    await _prime(engine)
    await engine.run_reconcile_cycle()

    analyzer.sentiment = "neutral"
    await engine.run_analysis_cycle()
    await engine.run_reconcile_cycle()

    assert exchange.cancelled == []


@pytest.mark.asyncio
async def test_out_of_band_orders_cancelled_and_requoted(tmp_path: Path) -> None:
    exchange = _exchange()
    engine, _ = _engine(tmp_path, exchange, FakeAnalyzer())
    await _prime(engine)
    await engine.run_reconcile_cycle()
    old_ids = set(engine.tracked_order_ids("BTC"))

    exchange.books["BTC"] = book("BTC", 96_000.0, 96_002.0)
    await engine.run_reconcile_cycle()

    assert exchange.cancelled == [0]
    requoted = exchange.submitted[10:]
    assert len(requoted) == 10
    assert all(abs(float(o.price) - 96_001.0) / 96_001.0 < 0.01 for o in requoted)
    new_ids = set(engine.tracked_order_ids("BTC"))
    assert len(new_ids) == 10
    assert not new_ids & old_ids


@pytest.mark.asyncio
async def test_kill_switch_blocks_new_quotes(tmp_path: Path) -> None:
    exchange = _exchange()
    engine, _ = _engine(tmp_path, exchange, FakeAnalyzer())
    await _prime(engine)
    trip_file(str(tmp_path / "halt"))

    await engine.run_reconcile_cycle()

    assert exchange.submitted == []
    assert len(engine.errors) == 0


@pytest.mark.asyncio
async def test_empty_book_skips_reconcile(tmp_path: Path) -> None:
    exchange = _exchange({"BTC": OrderBook(symbol="BTC")})
    engine, _ = _engine(tmp_path, exchange, FakeAnalyzer())
    await _prime(engine)

    await engine.run_reconcile_cycle()

    assert exchange.submitted == []
    assert "fetch_open_orders" not in exchange.calls
    assert len(engine.errors) == 0


@pytest.mark.asyncio
async def test_stale_analysis_refreshed_inline(tmp_path: Path) -> None:
    exchange = _exchange()
    analyzer = FakeAnalyzer()
    engine, clock = _engine(tmp_path, exchange, analyzer)
    await engine.activate_pairs()

    await engine.run_reconcile_cycle()
    assert analyzer.calls == 1
    assert len(exchange.submitted) == 10

    await engine.run_reconcile_cycle()
    assert analyzer.calls == 1

    clock.advance(engine.stale_after_s + 0.1)
    await engine.run_reconcile_cycle()
    assert analyzer.calls == 2


@pytest.mark.asyncio
async def test_no_candles_means_no_quotes(tmp_path: Path) -> None:
    exchange = _exchange()
    exchange.candles = {}
    analyzer = FakeAnalyzer()
    engine, _ = _engine(tmp_path, exchange, analyzer)
    await _prime(engine)

    await engine.run_reconcile_cycle()

    assert analyzer.calls == 0
    assert exchange.submitted == []
    assert len(engine.errors) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("simultaneous", [True, False])
async def test_symbol_failure_is_isolated(tmp_path: Path, simultaneous: bool) -> None:
    exchange = _exchange()
    engine, _ = _engine(
        tmp_path, exchange, FakeAnalyzer(), pairs=["ETH", "BTC"], simultaneous=simultaneous
    )
    received: list[EngineError] = []
    engine.errors.subscribe(received.append)
    await _prime(engine)

    await engine.run_reconcile_cycle()

    assert {o.symbol for o in exchange.submitted} == {"BTC"}
    assert len(exchange.submitted) == 10
    stages = {(e.symbol, e.stage) for e in received}
    assert ("ETH", "analysis") in stages
    assert ("ETH", "reconcile") in stages
    assert all(e.symbol == "ETH" for e in received)
    assert engine.status().phases == {"ETH": "idle", "BTC": "idle"}


@pytest.mark.asyncio
async def test_rejected_placement_emits_error_and_continues(tmp_path: Path) -> None:
    exchange = _exchange()
    exchange.submit_outcomes.append({"status": "err", "response": "Insufficient margin"})
    engine, _ = _engine(tmp_path, exchange, FakeAnalyzer())
    await _prime(engine)

    await engine.run_reconcile_cycle()

    errors = engine.errors.recent()
    assert len(errors) == 1
    assert errors[0].stage == "placement"
    assert "Insufficient margin" in errors[0].message
    assert len(exchange.submitted) == 10
    assert len(engine.tracked_order_ids("BTC")) == 9


@pytest.mark.asyncio
async def test_start_and_stop(tmp_path: Path) -> None:
    exchange = _exchange()
    engine, _ = _engine(tmp_path, exchange, FakeAnalyzer())

    await engine.start()
    assert engine.running is True
    assert len(exchange.submitted) == 10

    await engine.stop()

    status = engine.status()
    assert status.running is False
    assert status.order_count == 0
    assert exchange.orders_for("BTC") == []
    assert 0 in exchange.cancelled

    calls = len(exchange.calls)
    await engine.stop()
    assert len(exchange.calls) == calls


@pytest.mark.asyncio
async def test_failed_flip_cancel_is_retried_next_cycle(tmp_path: Path) -> None:
    exchange = _exchange()
    analyzer = FakeAnalyzer(sentiment="bullish")
    engine, _ = _engine(tmp_path, exchange, analyzer)
    await _prime(engine)
    await engine.run_reconcile_cycle()

    analyzer.sentiment = "bearish"
    await engine.run_analysis_cycle()
    exchange.cancel_outcomes.extend([ConnectionError("reset"), ConnectionError("reset")])
    await engine.run_reconcile_cycle()

    assert exchange.cancelled == [0, 0]
    assert len(exchange.orders_for("BTC")) == 10
    assert len(engine.tracked_order_ids("BTC")) == 10
    assert [e.stage for e in engine.errors.recent()] == ["cancel"]

    await engine.run_reconcile_cycle()
    assert exchange.cancelled == [0, 0, 0]
    assert exchange.orders_for("BTC") == []
    assert engine.tracked_order_ids("BTC") == []
    assert len(exchange.submitted) == 10

    await engine.run_reconcile_cycle()
    assert len(exchange.submitted) == 20
    assert exchange.cancelled == [0, 0, 0]


@pytest.mark.asyncio
async def test_flip_without_resting_orders_keeps_quoting(tmp_path: Path) -> None:
    exchange = _exchange()
    analyzer = FakeAnalyzer(sentiment="bullish")
    engine, _ = _engine(tmp_path, exchange, analyzer)
    await _prime(engine)
    await engine.run_reconcile_cycle()
    exchange.open_orders = []

    analyzer.sentiment = "bearish"
    await engine.run_analysis_cycle()
    await engine.run_reconcile_cycle()

    assert exchange.cancelled == []
    assert len(exchange.submitted) == 20


class StreamingExchange(FakeExchange):
    supports_streaming = True

    def __init__(self, *, fail_start: bool = False, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.fail_start = fail_start
        self.streamed: list[str] = []
        self.streams_closed = False

    async def start_streams(self, symbols: Sequence[str]) -> None:
        if self.fail_start:
            raise RuntimeError("websocket refused")
        self.streamed = list(symbols)

    async def close_streams(self) -> None:
        self.streams_closed = True


def _streaming_exchange(*, fail_start: bool = False) -> StreamingExchange:
    return StreamingExchange(
        fail_start=fail_start,
        books={"BTC": book("BTC", 94_000.0, 94_002.0)},
        candles={"BTC": make_candles([94_000.0 + i for i in range(30)])},
    )


@pytest.mark.asyncio
async def test_streams_follow_engine_lifecycle(tmp_path: Path) -> None:
    exchange = _streaming_exchange()
    engine, _ = _engine(tmp_path, exchange, FakeAnalyzer())

    await engine.start()
    assert exchange.streamed == ["BTC"]
    assert exchange.streams_closed is False

    await engine.stop()
    assert exchange.streams_closed is True
    assert engine.scheduler.closed is True


@pytest.mark.asyncio
async def test_failed_stream_start_closes_scheduler(tmp_path: Path) -> None:
    exchange = _streaming_exchange(fail_start=True)
    engine, _ = _engine(tmp_path, exchange, FakeAnalyzer())

    with pytest.raises(RuntimeError, match="websocket refused"):
        await engine.start()

    assert engine.running is False
    assert engine.scheduler.closed is True
    assert exchange.submitted == []


@pytest.mark.asyncio
async def test_failed_activation_closes_scheduler(tmp_path: Path) -> None:
    engine, _ = _engine(tmp_path, _exchange(), FakeAnalyzer(), pairs=["XYZ"])

    with pytest.raises(NotReadyError):
        await engine.start()

    assert engine.scheduler.closed is True
