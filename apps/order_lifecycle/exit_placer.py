"""
Exit pair placement.

Two placement strategies are supported, selected by ``EXIT_STRATEGY``:

- ``discrete_legs``: a limit order at the target and a stop order at the
  stop, submitted one after the other (target first). The OCO invariant is
  then enforced by OcoSupervisor.
- ``native_bracket``: a single Alpaca ``oco`` submission carrying both legs.
  The broker links the legs; OcoSupervisor still watches both ids so the
  outcome is reported the same way.

Both legs use the side opposite to the entry, the instruction quantity and
good-until-cancelled time in force.
"""

import logging
from typing import Protocol

from apps.order_lifecycle import metrics
from apps.order_lifecycle.broker_gateway import BrokerGateway
from apps.order_lifecycle.exceptions import (
    BrokerError,
    BrokerRejectedError,
    PartialExitPlacementError,
)
from apps.order_lifecycle.models import ExitPair, ExitStrategy, Instruction, PriceLevels
from apps.order_lifecycle.schemas import BrokerOrder, OrderRequest

logger = logging.getLogger(__name__)


class ExitOrderPlacer(Protocol):
    """Submits the exit pair for a filled entry."""

    strategy: ExitStrategy

    async def place_exits(
        self, instruction: Instruction, entry_order: BrokerOrder, levels: PriceLevels
    ) -> ExitPair:
        ...


class DiscreteLegsPlacer:
    """
    Places the target and stop as two independent orders.

    If the stop submission fails after the target was accepted, the target is
    cancelled when ``rollback_partial_exits`` is set, and
    PartialExitPlacementError is raised either way so the caller knows the
    position is not fully protected.
    """

    strategy = ExitStrategy.DISCRETE_LEGS

    def __init__(self, gateway: BrokerGateway, rollback_partial_exits: bool = True):
        self.gateway = gateway
        self.rollback_partial_exits = rollback_partial_exits

    async def place_exits(
        self, instruction: Instruction, entry_order: BrokerOrder, levels: PriceLevels
    ) -> ExitPair:
        exit_side = instruction.exit_side

        try:
            target = await self.gateway.submit_order(
                OrderRequest(
                    symbol=instruction.symbol,
                    side=exit_side,
                    qty=instruction.quantity,
                    order_type="limit",
                    limit_price=levels.target_price,
                    time_in_force="gtc",
                )
            )
        except BrokerError:
            metrics.exit_placements_total.labels(strategy=self.strategy.value, outcome="failed").inc()
            raise

        try:
            stop = await self.gateway.submit_order(
                OrderRequest(
                    symbol=instruction.symbol,
                    side=exit_side,
                    qty=instruction.quantity,
                    order_type="stop",
                    stop_price=levels.stop_price,
                    time_in_force="gtc",
                )
            )
        except BrokerError as e:
            rolled_back = False
            if self.rollback_partial_exits:
                rolled_back = await self._rollback(target.id)
            metrics.exit_placements_total.labels(strategy=self.strategy.value, outcome="partial").inc()
            logger.error(
                "Stop leg failed after target was placed",
                extra={
                    "entry_order_id": entry_order.id,
                    "target_order_id": target.id,
                    "rolled_back": rolled_back,
                    "error": str(e),
                },
            )
            raise PartialExitPlacementError(
                entry_order_id=entry_order.id,
                placed_order_id=target.id,
                failed_leg="stop",
                rolled_back=rolled_back,
                cause=str(e),
            ) from e

        metrics.exit_placements_total.labels(strategy=self.strategy.value, outcome="placed").inc()
        logger.info(
            "Exit pair placed",
            extra={
                "entry_order_id": entry_order.id,
                "target_order_id": target.id,
                "stop_order_id": stop.id,
                "target_price": levels.target_price,
                "stop_price": levels.stop_price,
            },
        )
        return ExitPair(
            entry_order_id=entry_order.id,
            symbol=instruction.symbol,
            target_order_id=target.id,
            stop_order_id=stop.id,
            strategy=self.strategy,
        )

    async def _rollback(self, order_id: str) -> bool:
        """Cancel the lone target leg. True only if the cancel was accepted."""
        try:
            return await self.gateway.cancel_order(order_id)
        except BrokerError as e:
            logger.error(
                "Rollback of lone exit leg failed",
                extra={"order_id": order_id, "error": str(e)},
            )
            return False


class NativeBracketPlacer:
    """Places both legs in one Alpaca ``oco`` order."""

    strategy = ExitStrategy.NATIVE_BRACKET

    def __init__(self, gateway: BrokerGateway):
        self.gateway = gateway

    async def place_exits(
        self, instruction: Instruction, entry_order: BrokerOrder, levels: PriceLevels
    ) -> ExitPair:
        try:
            parent = await self.gateway.submit_order(
                OrderRequest(
                    symbol=instruction.symbol,
                    side=instruction.exit_side,
                    qty=instruction.quantity,
                    order_type="limit",
                    order_class="oco",
                    take_profit_price=levels.target_price,
                    stop_loss_price=levels.stop_price,
                    time_in_force="gtc",
                )
            )
        except BrokerError:
            metrics.exit_placements_total.labels(strategy=self.strategy.value, outcome="failed").inc()
            raise

        stop_leg = next((leg for leg in parent.legs if leg.order_type in ("stop", "stop_limit")), None)
        if stop_leg is None and parent.legs:
            stop_leg = parent.legs[0]
        if stop_leg is None:
            metrics.exit_placements_total.labels(strategy=self.strategy.value, outcome="failed").inc()
            raise BrokerRejectedError(
                "OCO order accepted without a stop-loss leg",
                payload={"order_id": parent.id},
                details={"entry_order_id": entry_order.id},
            )

        metrics.exit_placements_total.labels(strategy=self.strategy.value, outcome="placed").inc()
        logger.info(
            "Native OCO exit placed",
            extra={
                "entry_order_id": entry_order.id,
                "target_order_id": parent.id,
                "stop_order_id": stop_leg.id,
            },
        )
        return ExitPair(
            entry_order_id=entry_order.id,
            symbol=instruction.symbol,
            target_order_id=parent.id,
            stop_order_id=stop_leg.id,
            strategy=self.strategy,
        )


def create_exit_placer(
    strategy: ExitStrategy, gateway: BrokerGateway, rollback_partial_exits: bool = True
) -> ExitOrderPlacer:
    """Return the placer for an exit strategy."""
    if strategy is ExitStrategy.NATIVE_BRACKET:
        return NativeBracketPlacer(gateway)
    return DiscreteLegsPlacer(gateway, rollback_partial_exits=rollback_partial_exits)
