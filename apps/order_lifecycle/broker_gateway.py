"""
Broker gateway over the Alpaca Trading and Market Data APIs.

Provides a typed async interface with:
- Order submission (market, limit, stop, native OCO exit pair)
- Order status lookup and idempotent cancellation
- Latest trade price and market clock
- Error classification (rejected vs unavailable)

The gateway performs no retries of its own; callers (FillWaiter,
OcoSupervisor) own the retry policy. alpaca-py is synchronous, so every SDK
call is dispatched with ``asyncio.to_thread`` and concurrent instructions
never block each other on the event loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from decimal import Decimal
from typing import Any, Protocol, TypeVar

import requests
from alpaca.common.exceptions import APIError as AlpacaAPIError
from alpaca.common.exceptions import RetryException as AlpacaRetryException
from alpaca.data.enums import DataFeed
from alpaca.data.historical import StockHistoricalDataClient
from alpaca.data.requests import StockLatestTradeRequest
from alpaca.trading.client import TradingClient
from alpaca.trading.enums import OrderClass, OrderSide, TimeInForce
from alpaca.trading.requests import (
    LimitOrderRequest,
    MarketOrderRequest,
    StopLossRequest,
    StopOrderRequest,
    TakeProfitRequest,
)

from apps.order_lifecycle import metrics
from apps.order_lifecycle.exceptions import (
    BrokerRejectedError,
    BrokerUnavailableError,
    InvalidInputError,
)
from apps.order_lifecycle.models import MarketClock, OrderStatus
from apps.order_lifecycle.schemas import BrokerOrder, OrderRequest

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BrokerGateway(Protocol):
    """Operations the order lifecycle needs from a broker."""

    async def submit_order(self, order: OrderRequest) -> BrokerOrder:
        """Submit an order. Raises BrokerRejectedError or BrokerUnavailableError."""
        ...

    async def get_order(self, order_id: str) -> BrokerOrder:
        """Fetch the current state of an order."""
        ...

    async def cancel_order(self, order_id: str) -> bool:
        """Cancel an order. False if it was already terminal."""
        ...

    async def get_latest_trade_price(self, symbol: str) -> Decimal:
        """Latest trade price for a symbol."""
        ...

    async def get_market_clock(self) -> MarketClock:
        """Current market clock."""
        ...

    async def check_connection(self) -> bool:
        """True if the broker is reachable with the configured credentials."""
        ...

    def close(self) -> None:
        """Release client resources."""
        ...


def _enum_value(value: Any) -> str | None:
    if value is None:
        return None
    return str(getattr(value, "value", value))


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _error_payload(error: AlpacaAPIError) -> Any:
    """Broker error body, parsed as JSON when possible."""
    raw = str(error)
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def order_from_alpaca(alpaca_order: Any) -> BrokerOrder:
    """Convert an alpaca-py Order into a BrokerOrder (legs included)."""
    raw_status = _enum_value(alpaca_order.status)
    order_type = _enum_value(getattr(alpaca_order, "order_type", None)) or _enum_value(
        getattr(alpaca_order, "type", None)
    )
    return BrokerOrder(
        id=str(alpaca_order.id),
        symbol=alpaca_order.symbol,
        side=_enum_value(alpaca_order.side),
        order_type=order_type or "unknown",
        qty=_to_decimal(alpaca_order.qty) or Decimal("0"),
        status=OrderStatus.from_broker(raw_status),
        broker_status=raw_status,
        limit_price=_to_decimal(alpaca_order.limit_price),
        stop_price=_to_decimal(alpaca_order.stop_price),
        filled_avg_price=_to_decimal(alpaca_order.filled_avg_price),
        legs=[order_from_alpaca(leg) for leg in (alpaca_order.legs or [])],
    )


class AlpacaBrokerGateway:
    """
    BrokerGateway implementation backed by alpaca-py.

    Attributes:
        trading_client: alpaca-py TradingClient
        data_client: alpaca-py StockHistoricalDataClient
        data_feed: Market data feed for latest trades (None = account default)

    Examples:
        >>> gateway = AlpacaBrokerGateway(
        ...     api_key="your_key",
        ...     secret_key="your_secret",
        ...     base_url="https://paper-api.alpaca.markets",
        ... )
        >>> price = await gateway.get_latest_trade_price("AAPL")
        >>> order = await gateway.submit_order(
        ...     OrderRequest(symbol="AAPL", side="buy", qty=10, order_type="market")
        ... )
    """

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        base_url: str | None = None,
        data_url: str | None = None,
        paper: bool = True,
        data_feed: str | None = None,
        trading_client: TradingClient | None = None,
        data_client: StockHistoricalDataClient | None = None,
    ):
        """
        Initialize Alpaca clients.

        Args:
            api_key: Alpaca API key ID
            secret_key: Alpaca API secret key
            base_url: Trading API base URL override
            data_url: Market data API base URL override
            paper: Whether using paper trading (default: True)
            data_feed: Market data feed ("iex", "sip")
            trading_client: Pre-built client (tests)
            data_client: Pre-built data client (tests)
        """
        self.base_url = base_url
        self.paper = paper
        self.data_feed = DataFeed(data_feed) if data_feed else None

        self.trading_client = trading_client or TradingClient(
            api_key=api_key,
            secret_key=secret_key,
            paper=paper,
            url_override=base_url,
        )
        self.data_client = data_client or StockHistoricalDataClient(
            api_key=api_key,
            secret_key=secret_key,
            url_override=data_url,
        )

        logger.info(
            "Initialized Alpaca broker gateway",
            extra={"paper": paper, "base_url": base_url, "data_feed": data_feed},
        )

    async def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking SDK call in a worker thread, translating transport failures."""
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except (requests.RequestException, AlpacaRetryException) as e:
            metrics.broker_errors_total.labels(operation=operation, kind="unavailable").inc()
            logger.warning(
                "Broker transport failure",
                extra={"operation": operation, "error": str(e)},
            )
            raise BrokerUnavailableError(f"Broker unreachable during {operation}: {e}") from e

    def _classify(self, operation: str, error: AlpacaAPIError) -> Exception:
        """Map an Alpaca APIError to BrokerRejectedError or BrokerUnavailableError."""
        status_code = getattr(error, "status_code", None)
        payload = _error_payload(error)

        if status_code is not None and 400 <= status_code < 500 and status_code != 429:
            metrics.broker_errors_total.labels(operation=operation, kind="rejected").inc()
            logger.error(
                "Broker rejected request",
                extra={"operation": operation, "status_code": status_code, "payload": payload},
            )
            return BrokerRejectedError(
                f"Broker rejected {operation}: {error}",
                status_code=status_code,
                payload=payload,
            )

        metrics.broker_errors_total.labels(operation=operation, kind="unavailable").inc()
        logger.warning(
            "Broker unavailable",
            extra={"operation": operation, "status_code": status_code, "payload": payload},
        )
        return BrokerUnavailableError(
            f"Broker error during {operation}: {error}",
            status_code=status_code,
            details={"payload": payload},
        )

    def _build_alpaca_request(self, order: OrderRequest) -> Any:
        """
        Build the alpaca-py request object for an OrderRequest.

        Raises:
            InvalidInputError: If a price required by the order type is missing
        """
        side = OrderSide.BUY if order.side == "buy" else OrderSide.SELL
        time_in_force = TimeInForce.GTC if order.time_in_force == "gtc" else TimeInForce.DAY

        if order.order_class == "oco":
            if order.take_profit_price is None or order.stop_loss_price is None:
                raise InvalidInputError(
                    "take_profit_price and stop_loss_price are required for oco orders"
                )
            return LimitOrderRequest(
                symbol=order.symbol,
                qty=order.qty,
                side=side,
                time_in_force=time_in_force,
                order_class=OrderClass.OCO,
                take_profit=TakeProfitRequest(limit_price=float(order.take_profit_price)),
                stop_loss=StopLossRequest(stop_price=float(order.stop_loss_price)),
            )

        if order.order_type == "market":
            return MarketOrderRequest(
                symbol=order.symbol,
                qty=order.qty,
                side=side,
                time_in_force=time_in_force,
            )

        if order.order_type == "limit":
            if order.limit_price is None:
                raise InvalidInputError("limit_price is required for limit orders")
            return LimitOrderRequest(
                symbol=order.symbol,
                qty=order.qty,
                side=side,
                time_in_force=time_in_force,
                limit_price=float(order.limit_price),
            )

        if order.order_type == "stop":
            if order.stop_price is None:
                raise InvalidInputError("stop_price is required for stop orders")
            return StopOrderRequest(
                symbol=order.symbol,
                qty=order.qty,
                side=side,
                time_in_force=time_in_force,
                stop_price=float(order.stop_price),
            )

        raise InvalidInputError(f"Unsupported order type: {order.order_type}")

    async def submit_order(self, order: OrderRequest) -> BrokerOrder:
        """
        Submit an order.

        Raises:
            BrokerRejectedError: Broker answered 4xx (payload preserved)
            BrokerUnavailableError: Transport failure, 429 or 5xx
        """
        alpaca_request = self._build_alpaca_request(order)
        logger.info(
            "Submitting order",
            extra={
                "symbol": order.symbol,
                "side": order.side,
                "qty": order.qty,
                "order_type": order.order_type,
                "order_class": order.order_class,
                "limit_price": order.limit_price or order.take_profit_price,
                "stop_price": order.stop_price or order.stop_loss_price,
            },
        )
        try:
            alpaca_order = await self._call(
                "submit_order", self.trading_client.submit_order, order_data=alpaca_request
            )
        except AlpacaAPIError as e:
            raise self._classify("submit_order", e) from e

        broker_order = order_from_alpaca(alpaca_order)
        logger.info(
            "Order submitted",
            extra={"order_id": broker_order.id, "status": broker_order.broker_status},
        )
        return broker_order

    async def get_order(self, order_id: str) -> BrokerOrder:
        try:
            alpaca_order = await self._call(
                "get_order", self.trading_client.get_order_by_id, order_id
            )
        except AlpacaAPIError as e:
            raise self._classify("get_order", e) from e
        return order_from_alpaca(alpaca_order)

    async def cancel_order(self, order_id: str) -> bool:
        """
        Cancel an order.

        Returns:
            True if the cancel was accepted, False if the order was already
            filled, cancelled or otherwise not cancelable (HTTP 422)

        Raises:
            BrokerRejectedError: Unknown order id (404) or other 4xx
            BrokerUnavailableError: Transport failure, 429 or 5xx
        """
        try:
            await self._call("cancel_order", self.trading_client.cancel_order_by_id, order_id)
        except AlpacaAPIError as e:
            if getattr(e, "status_code", None) == 422:
                logger.info(
                    "Order no longer cancelable",
                    extra={"order_id": order_id, "payload": _error_payload(e)},
                )
                return False
            raise self._classify("cancel_order", e) from e

        logger.info("Order cancelled", extra={"order_id": order_id})
        return True

    async def get_latest_trade_price(self, symbol: str) -> Decimal:
        request = StockLatestTradeRequest(symbol_or_symbols=symbol, feed=self.data_feed)
        try:
            trades = await self._call(
                "get_latest_trade", self.data_client.get_stock_latest_trade, request
            )
        except AlpacaAPIError as e:
            raise self._classify("get_latest_trade", e) from e

        trade = trades.get(symbol) if isinstance(trades, dict) else None
        if trade is None or trade.price is None:
            raise BrokerRejectedError(
                f"No latest trade for {symbol}", payload={"symbol": symbol}
            )
        return Decimal(str(trade.price))

    async def get_market_clock(self) -> MarketClock:
        try:
            clock = await self._call("get_clock", self.trading_client.get_clock)
        except AlpacaAPIError as e:
            raise self._classify("get_clock", e) from e
        return MarketClock(
            is_open=bool(clock.is_open),
            next_open=clock.next_open,
            next_close=clock.next_close,
        )

    async def check_connection(self) -> bool:
        """
        Check if the broker is reachable.

        Returns:
            True if the account endpoint answers, False otherwise
        """
        try:
            account = await asyncio.to_thread(self.trading_client.get_account)
            return account is not None
        except (AlpacaAPIError, requests.RequestException) as e:
            logger.error("Alpaca connection check failed", extra={"error": str(e)})
            return False

    def close(self) -> None:
        """Close the underlying HTTP sessions."""
        for client in (self.trading_client, self.data_client):
            session = getattr(client, "_session", None)
            if session is not None:
                session.close()
