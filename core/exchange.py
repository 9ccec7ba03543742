from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from core.contracts import AssetMetadata, Candle, OpenOrder, OrderBook, QuantizedOrder, WalletStatus


class IExchange(ABC):
    """Exchange transport consumed by the execution layer.

    Implementations own the wire format, signing and subscriptions. Every
    method may raise; the scheduler retries and the executor classifies
    rejections by message.
    """

    supports_streaming: bool = False

    @abstractmethod
    async def submit_order(self, order: QuantizedOrder) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    async def cancel_all(self, asset_id: int) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    async def fetch_order_book(self, symbol: str) -> OrderBook:
        raise NotImplementedError

    @abstractmethod
    async def fetch_candles(self, symbol: str, limit: int) -> list[Candle]:
        raise NotImplementedError

    @abstractmethod
    async def fetch_instrument_universe(self) -> list[AssetMetadata]:
        raise NotImplementedError

    @abstractmethod
    async def fetch_open_orders(self) -> list[OpenOrder]:
        raise NotImplementedError

    @abstractmethod
    async def fetch_account_balance(self) -> float:
        raise NotImplementedError

    async def start_streams(self, symbols: Sequence[str]) -> None:
        """Only called when ``supports_streaming`` is True."""
        raise NotImplementedError

    async def close_streams(self) -> None:
        """Only called when ``supports_streaming`` is True."""
        raise NotImplementedError


class IWallet(ABC):
    @abstractmethod
    def status(self) -> WalletStatus:
        raise NotImplementedError


class StaticWallet(IWallet):
    """Wallet collaborator with a fixed readiness state."""

    def __init__(self, ready: bool = True, message: str = "") -> None:
        self._status = WalletStatus(ready=ready, message=message or ("ready" if ready else "not ready"))

    def status(self) -> WalletStatus:
        return self._status
