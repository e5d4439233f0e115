"""
Shared fixtures for order lifecycle tests.

FakeBrokerGateway is an in-memory broker: submitted orders get sequential ids
("order-1", "order-2", ...) and their status is driven by per-order scripts
of broker status strings or exceptions consumed one per get_order call.
Order ids in ``unresponsive`` make get_order and cancel_order hang until
cancelled.
"""

import asyncio
from collections.abc import Callable
from decimal import Decimal

import pytest

from apps.order_lifecycle.config import OrderLifecycleConfig
from apps.order_lifecycle.models import (
    ExitStrategy,
    MarketClock,
    OrderStatus,
    ReferencePriceSource,
)
from apps.order_lifecycle.schemas import BrokerOrder, OrderRequest


def make_broker_order(
    order_id: str = "order-1",
    status: str = "new",
    symbol: str = "AAPL",
    side: str = "buy",
    order_type: str = "market",
    qty: int = 10,
    filled_avg_price: Decimal | None = None,
    legs: list[BrokerOrder] | None = None,
) -> BrokerOrder:
    return BrokerOrder(
        id=order_id,
        symbol=symbol,
        side=side,
        order_type=order_type,
        qty=Decimal(qty),
        status=OrderStatus.from_broker(status),
        broker_status=status,
        filled_avg_price=filled_avg_price,
        legs=legs or [],
    )


class FakeBrokerGateway:
    """Scripted in-memory BrokerGateway."""

    def __init__(self) -> None:
        self.latest_price = Decimal("150.00")
        self.clock_open = True
        self.connected = True
        self.closed = False

        self.orders: dict[str, BrokerOrder] = {}
        self.submitted: list[OrderRequest] = []
        self.get_order_calls: list[str] = []
        self.cancel_calls: list[str] = []

        # call index (0-based) -> exception raised by submit_order
        self.submit_errors: dict[int, Exception] = {}
        # order id -> statuses/exceptions returned by successive get_order calls
        self.status_scripts: dict[str, list[str | Exception]] = {}
        # order id -> results/exceptions of successive cancel_order calls
        self.cancel_scripts: dict[str, list[bool | Exception]] = {}
        # order id -> fill price (defaults to latest_price)
        self.fill_prices: dict[str, Decimal] = {}
        self.oco_without_stop_leg = False
        # order ids whose get_order and cancel_order never answer
        self.unresponsive: set[str] = set()

        self._next_id = 1

    def script(self, order_id: str, *steps: str | Exception) -> None:
        self.status_scripts.setdefault(order_id, []).extend(steps)

    def _new_id(self) -> str:
        order_id = f"order-{self._next_id}"
        self._next_id += 1
        return order_id

    async def submit_order(self, order: OrderRequest) -> BrokerOrder:
        index = len(self.submitted)
        self.submitted.append(order)
        if index in self.submit_errors:
            raise self.submit_errors[index]

        order_id = self._new_id()
        legs: list[BrokerOrder] = []
        if order.order_class == "oco" and not self.oco_without_stop_leg:
            stop_leg = make_broker_order(
                order_id=f"{order_id}-stop",
                status="held",
                symbol=order.symbol,
                side=order.side,
                order_type="stop",
                qty=order.qty,
            )
            self.orders[stop_leg.id] = stop_leg
            legs.append(stop_leg)

        broker_order = make_broker_order(
            order_id=order_id,
            status="new",
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type,
            qty=order.qty,
            legs=legs,
        )
        self.orders[order_id] = broker_order
        return broker_order

    async def get_order(self, order_id: str) -> BrokerOrder:
        self.get_order_calls.append(order_id)
        if order_id in self.unresponsive:
            await asyncio.Event().wait()
        script = self.status_scripts.get(order_id)
        if script:
            step = script.pop(0)
            if isinstance(step, Exception):
                raise step
            self._set_status(order_id, step)
        return self.orders[order_id]

    async def cancel_order(self, order_id: str) -> bool:
        self.cancel_calls.append(order_id)
        if order_id in self.unresponsive:
            await asyncio.Event().wait()
        script = self.cancel_scripts.get(order_id)
        if script:
            step = script.pop(0)
            if isinstance(step, Exception):
                raise step
            if step:
                self._set_status(order_id, "canceled")
            return step

        order = self.orders[order_id]
        if order.status in (OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.REJECTED):
            return False
        self._set_status(order_id, "canceled")
        return True

    async def get_latest_trade_price(self, symbol: str) -> Decimal:
        return self.latest_price

    async def get_market_clock(self) -> MarketClock:
        return MarketClock(is_open=self.clock_open)

    async def check_connection(self) -> bool:
        return self.connected

    def close(self) -> None:
        self.closed = True

    def _set_status(self, order_id: str, status: str) -> None:
        current = self.orders[order_id]
        filled_price = None
        if status == "filled":
            filled_price = self.fill_prices.get(order_id, self.latest_price)
        self.orders[order_id] = current.model_copy(
            update={
                "status": OrderStatus.from_broker(status),
                "broker_status": status,
                "filled_avg_price": filled_price,
            }
        )


@pytest.fixture()
def fake_gateway() -> FakeBrokerGateway:
    return FakeBrokerGateway()


@pytest.fixture()
def order_factory() -> Callable[..., BrokerOrder]:
    return make_broker_order


@pytest.fixture()
def lifecycle_config() -> OrderLifecycleConfig:
    """Config with zero poll intervals and small budgets."""
    return OrderLifecycleConfig(
        log_level="INFO",
        environment="test",
        alpaca_api_key_id="test-key",
        alpaca_api_secret_key="test-secret",
        alpaca_base_url="https://paper-api.alpaca.markets",
        alpaca_data_url="https://data.alpaca.markets",
        alpaca_paper=True,
        alpaca_data_feed=None,
        market_clock_check_enabled=True,
        reference_price_source=ReferencePriceSource.FILL,
        price_increment=Decimal("0.01"),
        fill_max_attempts=10,
        fill_poll_interval_seconds=0.0,
        cancel_entry_on_fill_timeout=False,
        exit_strategy=ExitStrategy.DISCRETE_LEGS,
        rollback_partial_exits=True,
        oco_poll_interval_seconds=0.0,
        oco_max_polls=50,
        oco_max_duration_seconds=60.0,
        oco_max_consecutive_failures=3,
        broker_call_timeout_seconds=5.0,
        supervision_history_limit=100,
    )
