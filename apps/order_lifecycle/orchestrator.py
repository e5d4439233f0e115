"""
Order Lifecycle Orchestrator - Core orchestration logic.

Coordinates the complete flow for one instruction:
1. Check the market clock (optional)
2. Read the latest trade price and check that it yields valid exit levels
3. Submit the market entry order
4. Wait for the entry fill
5. Compute exit price levels from the reference price
6. Place the exit pair
7. Hand the pair to background OCO supervision and return

Everything up to step 6 fails the request synchronously: a caller never gets
a success response while the position is unprotected. What happens after
step 7 is reported by the SupervisionManager.
"""

import logging
from decimal import Decimal

from apps.order_lifecycle import metrics
from apps.order_lifecycle.broker_gateway import BrokerGateway
from apps.order_lifecycle.config import OrderLifecycleConfig
from apps.order_lifecycle.exceptions import (
    BrokerError,
    BrokerRejectedError,
    BrokerUnavailableError,
    ExitLevelsError,
    FillTimeoutError,
    InvalidInputError,
    MarketClosedError,
    OrderLifecycleError,
    PartialExitPlacementError,
)
from apps.order_lifecycle.exit_placer import ExitOrderPlacer, create_exit_placer
from apps.order_lifecycle.fill_waiter import FillWaiter
from apps.order_lifecycle.models import Instruction, ReferencePriceSource
from apps.order_lifecycle.oco_supervisor import SupervisionManager
from apps.order_lifecycle.price_calculator import compute_price_levels
from apps.order_lifecycle.schemas import BrokerOrder, OrderRequest, OrderResult

logger = logging.getLogger(__name__)

_OUTCOME_LABELS: list[tuple[type[OrderLifecycleError], str]] = [
    (InvalidInputError, "invalid_input"),
    (MarketClosedError, "market_closed"),
    (PartialExitPlacementError, "partial_exit"),
    (ExitLevelsError, "exit_levels"),
    (FillTimeoutError, "fill_timeout"),
    (BrokerRejectedError, "broker_rejected"),
    (BrokerUnavailableError, "broker_unavailable"),
]


def _outcome_label(error: OrderLifecycleError) -> str:
    for error_type, label in _OUTCOME_LABELS:
        if isinstance(error, error_type):
            return label
    return "error"


class OrderLifecycleOrchestrator:
    """
    Drives one instruction from entry to supervised exit pair.

    Example:
        >>> orchestrator = OrderLifecycleOrchestrator(gateway, config, supervision)
        >>> result = await orchestrator.place_order(
        ...     Instruction("AAPL", "buy", 10, Decimal("5"), Decimal("2"))
        ... )
        >>> result.target_price, result.stop_price
        (Decimal('157.50'), Decimal('147.00'))
    """

    def __init__(
        self,
        gateway: BrokerGateway,
        config: OrderLifecycleConfig,
        supervision: SupervisionManager,
        fill_waiter: FillWaiter | None = None,
        exit_placer: ExitOrderPlacer | None = None,
    ):
        self.gateway = gateway
        self.config = config
        self.supervision = supervision
        self.fill_waiter = fill_waiter or FillWaiter(
            gateway,
            max_attempts=config.fill_max_attempts,
            interval=config.fill_poll_interval_seconds,
            call_timeout=config.broker_call_timeout_seconds,
        )
        self.exit_placer = exit_placer or create_exit_placer(
            config.exit_strategy, gateway, rollback_partial_exits=config.rollback_partial_exits
        )

    async def place_order(self, instruction: Instruction) -> OrderResult:
        """
        Execute an instruction and start supervising its exits.

        Returns:
            OrderResult with the entry fill and both exit order ids

        Raises:
            InvalidInputError: Exit levels at the latest trade price are not positive
            MarketClosedError: Clock check enabled and market closed
            BrokerRejectedError: Entry or exit rejected by the broker
            BrokerUnavailableError: Broker unreachable
            FillTimeoutError: Entry not filled within the poll budget
            PartialExitPlacementError: Only one exit leg could be placed
            ExitLevelsError: Entry filled but no valid exit levels at the fill price
        """
        logger.info(
            "Instruction received",
            extra={
                "symbol": instruction.symbol,
                "direction": instruction.direction,
                "quantity": instruction.quantity,
                "target_percentage": instruction.target_percentage,
                "stop_percentage": instruction.stop_percentage,
            },
        )
        try:
            result = await self._execute(instruction)
        except OrderLifecycleError as e:
            outcome = _outcome_label(e)
            metrics.instructions_total.labels(outcome=outcome).inc()
            logger.error(
                "Instruction failed",
                extra={"symbol": instruction.symbol, "outcome": outcome, "error": e.message},
            )
            raise

        metrics.instructions_total.labels(outcome="success").inc()
        return result

    async def _execute(self, instruction: Instruction) -> OrderResult:
        if self.config.market_clock_check_enabled:
            clock = await self.gateway.get_market_clock()
            if not clock.is_open:
                raise MarketClosedError(
                    "Market is closed",
                    {
                        "next_open": clock.next_open.isoformat() if clock.next_open else None,
                    },
                )

        last_trade_price = await self.gateway.get_latest_trade_price(instruction.symbol)
        logger.info(
            "Latest trade price",
            extra={"symbol": instruction.symbol, "price": last_trade_price},
        )
        # Refuse before submitting if the exits would not be positive
        compute_price_levels(
            last_trade_price,
            instruction.direction,
            instruction.target_percentage,
            instruction.stop_percentage,
            increment=self.config.price_increment,
        )

        entry = await self.gateway.submit_order(
            OrderRequest(
                symbol=instruction.symbol,
                side=instruction.direction,
                qty=instruction.quantity,
                order_type="market",
                time_in_force="gtc",
            )
        )

        filled = await self._await_entry_fill(entry)

        reference_price = self._reference_price(filled, last_trade_price)
        try:
            levels = compute_price_levels(
                reference_price,
                instruction.direction,
                instruction.target_percentage,
                instruction.stop_percentage,
                increment=self.config.price_increment,
            )
        except InvalidInputError as e:
            raise ExitLevelsError(filled.id, reference_price, cause=e.message) from e
        logger.info(
            "Exit levels computed",
            extra={
                "entry_order_id": filled.id,
                "reference_price": reference_price,
                "target_price": levels.target_price,
                "stop_price": levels.stop_price,
            },
        )

        pair = await self.exit_placer.place_exits(instruction, filled, levels)
        status = self.supervision.start(pair)

        return OrderResult(
            entry_order_id=filled.id,
            symbol=instruction.symbol,
            side=instruction.direction,
            quantity=instruction.quantity,
            filled_avg_price=filled.filled_avg_price or reference_price,
            reference_price=reference_price,
            target_price=levels.target_price,
            stop_price=levels.stop_price,
            target_order_id=pair.target_order_id,
            stop_order_id=pair.stop_order_id,
            exit_strategy=pair.strategy.value,
            supervision_state=status.state.value,
        )

    async def _await_entry_fill(self, entry: BrokerOrder) -> BrokerOrder:
        try:
            return await self.fill_waiter.await_fill(entry.id)
        except FillTimeoutError as e:
            if not self.config.cancel_entry_on_fill_timeout:
                raise
            try:
                cancelled = await self.gateway.cancel_order(entry.id)
            except BrokerError as cancel_error:
                logger.error(
                    "Failed to cancel unfilled entry order",
                    extra={"order_id": entry.id, "error": str(cancel_error)},
                )
                cancelled = False
            logger.warning(
                "Unfilled entry order cancel requested",
                extra={"order_id": entry.id, "cancelled": cancelled},
            )
            raise e.with_entry_cancelled(cancelled) from e

    def _reference_price(self, filled: BrokerOrder, last_trade_price: Decimal) -> Decimal:
        if self.config.reference_price_source is ReferencePriceSource.LAST_TRADE:
            return last_trade_price
        if filled.filled_avg_price is None:
            logger.warning(
                "Filled order has no average price; using latest trade",
                extra={"order_id": filled.id},
            )
            return last_trade_price
        return filled.filled_avg_price
