"""Validate, quantize and submit limit orders; idempotent cancel-all.

``OrderExecutor`` never raises across its public methods. Every outcome is
an ``OrderResult`` whose ``error`` field carries the code of the
``ExecutionError`` subclass that ended the attempt.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from core.config import Config
from core.contracts import OrderIntent, OrderResult, QuantizedOrder
from core.exchange import IExchange, IWallet
from execution.errors import (
    AssetNotFoundError,
    ExchangeError,
    ExecutionError,
    NotReadyError,
    RateLimitError,
    StepSizeError,
    TickSizeError,
    ValidationError,
    error_message,
)
from execution.market_data import MarketDataService
from execution.metadata import AssetMetadataCache
from execution.scheduler import RequestScheduler

__all__ = ["OrderExecutor", "is_nothing_to_cancel", "rejection_message"]

_NOTHING_TO_CANCEL = ("already canceled", "already cancelled", "never placed")
_CORRECTABLE = ("price", "tick", "size")


def is_nothing_to_cancel(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _NOTHING_TO_CANCEL)


def rejection_message(response: Any) -> str | None:
    """Extract an exchange-side rejection from a response payload.

    Recognizes ``{"status": "err", "response": "..."}``, a top-level
    ``error`` key, and per-order ``statuses`` entries carrying ``error``.
    Returns None for an accepted order.
    """
    if not isinstance(response, Mapping):
        return None
    if response.get("status") == "err":
        return str(response.get("response") or response.get("error") or "order rejected")
    error = response.get("error")
    if error:
        return str(error)
    for status in _statuses(response):
        if isinstance(status, Mapping) and status.get("error"):
            return str(status["error"])
    return None


def _statuses(response: Mapping[str, Any]) -> list[Any]:
    inner = response.get("response")
    if not isinstance(inner, Mapping):
        return []
    data = inner.get("data")
    if not isinstance(data, Mapping):
        return []
    statuses = data.get("statuses")
    return list(statuses) if isinstance(statuses, list) else []


def extract_order_id(response: Any) -> str | None:
    if not isinstance(response, Mapping):
        return None
    for key in ("order_id", "oid"):
        if response.get(key) is not None:
            return str(response[key])
    for status in _statuses(response):
        if not isinstance(status, Mapping):
            continue
        for state in ("resting", "filled"):
            entry = status.get(state)
            if isinstance(entry, Mapping) and entry.get("oid") is not None:
                return str(entry["oid"])
    return None


class OrderExecutor:
    def __init__(
        self,
        exchange: IExchange,
        scheduler: RequestScheduler,
        metadata: AssetMetadataCache,
        market_data: MarketDataService,
        wallet: IWallet,
        *,
        max_price_deviation: float = 0.95,
        logger: Any | None = None,
    ) -> None:
        self._exchange = exchange
        self._scheduler = scheduler
        self._metadata = metadata
        self._market_data = market_data
        self._wallet = wallet
        self._max_price_deviation = max_price_deviation
        self._log = logger or structlog.get_logger("execution.executor")

    @classmethod
    def from_config(
        cls,
        exchange: IExchange,
        scheduler: RequestScheduler,
        metadata: AssetMetadataCache,
        market_data: MarketDataService,
        wallet: IWallet,
        cfg: Config,
        **kwargs: Any,
    ) -> OrderExecutor:
        return cls(
            exchange,
            scheduler,
            metadata,
            market_data,
            wallet,
            max_price_deviation=cfg.execution.max_price_deviation,
            **kwargs,
        )

    async def place_limit_order(
        self,
        symbol: str,
        side: str,
        price: float,
        size: float,
        reduce_only: bool = False,
    ) -> OrderResult:
        try:
            intent = OrderIntent(
                symbol=symbol.upper(),
                side=side.lower() if isinstance(side, str) else side,  # type: ignore[arg-type]
                price=float(price),
                size=float(size),
                reduce_only=reduce_only,
            )
        except (ValidationError, TypeError, ValueError) as exc:
            return self._failure(symbol, ValidationError(str(exc)))

        try:
            await self._check_price_deviation(intent)
            self._ensure_ready()
            order = await self._quantize(intent)
        except ExecutionError as exc:
            return self._failure(intent.symbol, exc)
        except Exception as exc:
            self._log.exception("order_prepare_failed", symbol=intent.symbol)
            return self._failure(intent.symbol, ExchangeError(error_message(exc)))

        self._log.info(
            "order_submit",
            symbol=order.symbol,
            side=intent.side,
            price=order.price,
            size=order.size,
            reduce_only=reduce_only,
        )
        try:
            response = await self._submit(order)
        except Exception as exc:
            return await self._handle_rejection(order, exc)
        return self._success(order, response)

    async def cancel_all(self, symbol: str) -> OrderResult:
        symbol = symbol.upper()
        asset_id = self._metadata.asset_id(symbol)
        if asset_id is None or asset_id < 0:
            return self._failure(symbol, AssetNotFoundError(f"Asset {symbol} not found"))
        try:
            self._ensure_ready()
        except NotReadyError as exc:
            return self._failure(symbol, exc)

        async def cancel() -> dict[str, Any]:
            try:
                response = await self._exchange.cancel_all(asset_id)
            except ExecutionError:
                raise
            except Exception as exc:
                message = error_message(exc)
                if is_nothing_to_cancel(message):
                    raise ExchangeError(message) from exc
                raise
            return response

        try:
            response = await self._scheduler.enqueue_order(cancel)
        except Exception as exc:
            message = error_message(exc)
            if is_nothing_to_cancel(message):
                self._log.info("cancel_all_noop", symbol=symbol, reason=message)
                return OrderResult(success=True, message="no open orders", data=None)
            if isinstance(exc, ExecutionError) and not isinstance(exc, ExchangeError):
                return self._failure(symbol, exc)
            return self._failure(symbol, ExchangeError(message))

        rejected = rejection_message(response)
        if rejected is not None:
            if is_nothing_to_cancel(rejected):
                self._log.info("cancel_all_noop", symbol=symbol, reason=rejected)
                return OrderResult(success=True, message="no open orders", data=response)
            return self._failure(symbol, ExchangeError(rejected))

        self._log.info("cancel_all_done", symbol=symbol, asset_id=asset_id)
        return OrderResult(success=True, message="orders cancelled", data=response)

    async def _check_price_deviation(self, intent: OrderIntent) -> None:
        try:
            book = await self._market_data.get_order_book(intent.symbol)
        except Exception as exc:
            self._log.warning("order_book_unavailable", symbol=intent.symbol, error=str(exc))
            return
        mid = book.mid
        if mid is None:
            return
        deviation = abs(intent.price - mid) / mid
        if deviation > self._max_price_deviation:
            raise ValidationError(
                f"Price {intent.price} deviates {deviation:.2%} from mid {mid} "
                f"(max {self._max_price_deviation:.0%})"
            )

    def _ensure_ready(self) -> None:
        status = self._wallet.status()
        if not status.ready:
            raise NotReadyError(status.message or "wallet not ready")

    async def _quantize(self, intent: OrderIntent) -> QuantizedOrder:
        await self._metadata.refresh()
        asset_id = self._metadata.asset_id(intent.symbol)
        if asset_id is None or asset_id < 0:
            raise AssetNotFoundError(f"Asset {intent.symbol} not found")
        return QuantizedOrder(
            intent=intent,
            asset_id=asset_id,
            price=self._metadata.format_price(intent.symbol, intent.price),
            size=self._metadata.format_size(intent.symbol, intent.size),
        )

    async def _submit(self, order: QuantizedOrder) -> dict[str, Any]:
        async def submit() -> dict[str, Any]:
            try:
                response = await self._exchange.submit_order(order)
            except ExecutionError:
                raise
            except Exception as exc:
                message = error_message(exc)
                # rounding rejections are corrected here, not retried as-is
                if any(word in message.lower() for word in _CORRECTABLE):
                    raise ExchangeError(message) from exc
                raise
            rejected = rejection_message(response)
            if rejected is not None:
                raise ExchangeError(rejected)
            return response

        return await self._scheduler.enqueue_order(submit)

    async def _handle_rejection(self, order: QuantizedOrder, exc: Exception) -> OrderResult:
        if isinstance(exc, ExecutionError) and not isinstance(exc, ExchangeError):
            return self._failure(order.symbol, exc)

        message = error_message(exc)
        lowered = message.lower()
        self._log.warning("order_rejected", symbol=order.symbol, error=message)

        if "price" in lowered or "tick" in lowered:
            corrected = order.with_price(self._metadata.strict_price(order.symbol, order.intent.price))
            self._log.info(
                "order_price_corrected",
                symbol=order.symbol,
                original=order.price,
                corrected=corrected.price,
                tick=self._metadata.get_tick_size(order.symbol),
            )
            try:
                response = await self._submit(corrected)
            except Exception as retry_exc:
                return self._failure(
                    order.symbol, TickSizeError(f"Tick size error: {error_message(retry_exc)}")
                )
            return self._success(corrected, response)

        if "size" in lowered:
            corrected = order.with_size(self._metadata.strict_size(order.symbol, order.intent.size))
            self._log.info(
                "order_size_corrected",
                symbol=order.symbol,
                original=order.size,
                corrected=corrected.size,
                step=self._metadata.get_step_size(order.symbol),
            )
            try:
                response = await self._submit(corrected)
            except Exception as retry_exc:
                return self._failure(
                    order.symbol, StepSizeError(f"Step size error: {error_message(retry_exc)}")
                )
            return self._success(corrected, response)

        if "rate limit" in lowered or isinstance(exc, RateLimitError):
            return self._failure(order.symbol, RateLimitError(message))

        return self._failure(order.symbol, ExchangeError(message))

    def _success(self, order: QuantizedOrder, response: dict[str, Any]) -> OrderResult:
        order_id = extract_order_id(response)
        self._log.info("order_accepted", symbol=order.symbol, order_id=order_id, price=order.price)
        return OrderResult(
            success=True,
            message="order placed",
            data=response,
            order_id=order_id,
        )

    def _failure(self, symbol: str, exc: ExecutionError) -> OrderResult:
        message = error_message(exc)
        self._log.warning("order_failed", symbol=symbol, code=exc.code, error=message)
        return OrderResult(success=False, message=message, error=exc.code)
