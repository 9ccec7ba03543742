from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from execution.errors import ValidationError

Side = Literal["buy", "sell"]
Sentiment = Literal["bullish", "bearish", "neutral"]

SIDES: frozenset[str] = frozenset({"buy", "sell"})


@dataclass(frozen=True)
class AssetMetadata:
    symbol: str
    size_decimals: int
    max_leverage: float = 50.0
    tick_size: float | None = None
    step_size: float | None = None
    asset_id: int | None = None


@dataclass(frozen=True)
class BookLevel:
    price: float
    size: float


@dataclass(frozen=True)
class OrderBook:
    symbol: str
    bids: tuple[BookLevel, ...] = ()
    asks: tuple[BookLevel, ...] = ()

    @property
    def best_bid(self) -> float | None:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> float | None:
        return self.asks[0].price if self.asks else None

    @property
    def mid(self) -> float | None:
        """Mid price, or None when a side is empty or the book is crossed."""
        bid = self.best_bid
        ask = self.best_ask
        if bid is None or ask is None or bid <= 0 or ask <= 0:
            return None
        if bid >= ask:
            return None
        return (bid + ask) / 2.0


@dataclass(frozen=True)
class Candle:
    ts_open_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class OrderIntent:
    symbol: str
    side: Side
    price: float
    size: float
    reduce_only: bool = False

    def __post_init__(self) -> None:
        if not self.symbol:
            raise ValidationError("symbol is required")
        if self.side not in SIDES:
            raise ValidationError(f"side must be one of {sorted(SIDES)}, got {self.side!r}")
        if not self.price > 0:
            raise ValidationError(f"Invalid price: {self.price} (must be positive)")
        if not self.size > 0:
            raise ValidationError(f"Invalid size: {self.size} (must be positive)")

    @property
    def is_buy(self) -> bool:
        return self.side == "buy"


@dataclass(frozen=True)
class QuantizedOrder:
    intent: OrderIntent
    asset_id: int
    price: str
    size: str

    @property
    def symbol(self) -> str:
        return self.intent.symbol

    def with_price(self, price: str) -> QuantizedOrder:
        return QuantizedOrder(intent=self.intent, asset_id=self.asset_id, price=price, size=self.size)

    def with_size(self, size: str) -> QuantizedOrder:
        return QuantizedOrder(intent=self.intent, asset_id=self.asset_id, price=self.price, size=size)

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.intent.symbol,
            "asset_id": self.asset_id,
            "side": self.intent.side,
            "price": self.price,
            "size": self.size,
            "reduce_only": self.intent.reduce_only,
        }


@dataclass(frozen=True)
class OpenOrder:
    """Exchange-reported resting order. Never mutated locally."""

    symbol: str
    side: Side
    price: float
    size: float
    order_id: str
    timestamp_ms: int = 0


@dataclass(frozen=True)
class OrderResult:
    success: bool
    message: str = ""
    error: str | None = None
    data: Any = None
    order_id: str | None = None


CancelResult = OrderResult


@dataclass(frozen=True)
class QuoteLadder:
    buy_levels: list[tuple[float, float]] = field(default_factory=list)
    sell_levels: list[tuple[float, float]] = field(default_factory=list)

    def levels(self, side: Side) -> list[tuple[float, float]]:
        return self.buy_levels if side == "buy" else self.sell_levels


@dataclass(frozen=True)
class WalletStatus:
    ready: bool
    message: str = ""
