"""
Internal domain models for the order lifecycle.

These are plain slotted dataclasses and enums used between components.
Pydantic models for the HTTP API and the broker wire format live in
``apps.order_lifecycle.schemas``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Literal, TypeAlias

from apps.order_lifecycle.exceptions import InvalidInputError

Side: TypeAlias = Literal["buy", "sell"]

VALID_SIDES: frozenset[str] = frozenset({"buy", "sell"})


def opposite_side(side: str) -> Side:
    """Return the side that closes a position opened with ``side``."""
    if side == "buy":
        return "sell"
    if side == "sell":
        return "buy"
    raise InvalidInputError(f"Unknown direction: {side!r}", {"direction": side})


class OrderStatus(str, Enum):
    """Normalized order status."""

    NEW = "new"
    ACCEPTED = "accepted"
    FILLED = "filled"
    CANCELED = "canceled"
    REJECTED = "rejected"
    UNKNOWN = "unknown"

    @classmethod
    def from_broker(cls, raw: str | None) -> OrderStatus:
        """Map an Alpaca order status string to a normalized status.

        Example:
            >>> OrderStatus.from_broker("partially_filled")
            <OrderStatus.ACCEPTED: 'accepted'>
        """
        if raw is None:
            return cls.UNKNOWN
        return _BROKER_STATUS_MAP.get(raw.lower(), cls.UNKNOWN)

    @property
    def is_dead(self) -> bool:
        """True for statuses from which an order can never fill."""
        return self in (OrderStatus.CANCELED, OrderStatus.REJECTED)


_BROKER_STATUS_MAP: dict[str, OrderStatus] = {
    "new": OrderStatus.NEW,
    "pending_new": OrderStatus.NEW,
    "accepted": OrderStatus.ACCEPTED,
    "partially_filled": OrderStatus.ACCEPTED,
    "held": OrderStatus.ACCEPTED,
    "pending_cancel": OrderStatus.ACCEPTED,
    "pending_replace": OrderStatus.ACCEPTED,
    "replaced": OrderStatus.ACCEPTED,
    "calculated": OrderStatus.ACCEPTED,
    "done_for_day": OrderStatus.ACCEPTED,
    "accepted_for_bidding": OrderStatus.ACCEPTED,
    "stopped": OrderStatus.ACCEPTED,
    "suspended": OrderStatus.ACCEPTED,
    "filled": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELED,
    "expired": OrderStatus.CANCELED,
    "rejected": OrderStatus.REJECTED,
}


class ExitStrategy(str, Enum):
    """How the exit pair is submitted to the broker."""

    DISCRETE_LEGS = "discrete_legs"
    NATIVE_BRACKET = "native_bracket"


class ReferencePriceSource(str, Enum):
    """Which price the exit levels are derived from."""

    FILL = "fill"
    LAST_TRADE = "last_trade"


class SupervisionState(str, Enum):
    """OCO supervision state machine states."""

    MONITORING = "monitoring"
    TARGET_WON = "target_won"
    STOP_WON = "stop_won"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self is not SupervisionState.MONITORING


def _to_decimal(name: str, value: object) -> Decimal:
    if isinstance(value, bool):
        raise InvalidInputError(f"{name} must be a number", {name: value})
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidInputError(f"{name} must be a number", {name: value}) from e
    if not result.is_finite():
        raise InvalidInputError(f"{name} must be finite", {name: value})
    return result


@dataclass(frozen=True, slots=True)
class Instruction:
    """
    A caller's trading instruction.

    The symbol is upper-cased and percentages are converted to Decimal on
    construction. Any invalid field raises InvalidInputError, so a constructed
    Instruction is always safe to send to the broker.
    The percentage that moves an exit below the entry price (the stop of a buy,
    the target of a sell) must be under 100.

    Example:
        >>> Instruction("aapl", "buy", 10, 5, 2)
        Instruction(symbol='AAPL', direction='buy', quantity=10, ...)
    """

    symbol: str
    direction: Side
    quantity: int
    target_percentage: Decimal
    stop_percentage: Decimal

    def __post_init__(self) -> None:
        if not isinstance(self.symbol, str) or not self.symbol.strip():
            raise InvalidInputError("symbol must be a non-empty string", {"symbol": self.symbol})
        object.__setattr__(self, "symbol", self.symbol.strip().upper())

        direction = self.direction.lower() if isinstance(self.direction, str) else self.direction
        if direction not in VALID_SIDES:
            raise InvalidInputError(
                f"direction must be 'buy' or 'sell', got {self.direction!r}",
                {"direction": self.direction},
            )
        object.__setattr__(self, "direction", direction)

        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int) or self.quantity <= 0:
            raise InvalidInputError(
                "quantity must be a positive integer", {"quantity": self.quantity}
            )

        for name in ("target_percentage", "stop_percentage"):
            pct = _to_decimal(name, getattr(self, name))
            if pct < 0:
                raise InvalidInputError(f"{name} must be >= 0", {name: str(pct)})
            object.__setattr__(self, name, pct)

        # The level below the reference price must stay above zero
        below = "stop_percentage" if direction == "buy" else "target_percentage"
        if getattr(self, below) >= 100:
            raise InvalidInputError(
                f"{below} must be < 100 for a {direction} instruction",
                {below: str(getattr(self, below)), "direction": direction},
            )

    @property
    def exit_side(self) -> Side:
        return opposite_side(self.direction)


@dataclass(frozen=True, slots=True)
class PriceLevels:
    """Exit price levels derived from a reference price."""

    target_price: Decimal
    stop_price: Decimal


@dataclass(frozen=True, slots=True)
class MarketClock:
    """Market clock snapshot."""

    is_open: bool
    next_open: datetime | None = None
    next_close: datetime | None = None


@dataclass(slots=True)
class ExitPair:
    """
    The two sibling exit orders protecting one filled entry.

    ``terminal`` is set by the supervisor once either leg fills.
    """

    entry_order_id: str
    symbol: str
    target_order_id: str
    stop_order_id: str
    strategy: ExitStrategy = ExitStrategy.DISCRETE_LEGS
    terminal: bool = False


@dataclass(slots=True)
class SupervisionOutcome:
    """
    Latest state of the supervision of one exit pair.

    While ``state`` is MONITORING this is a progress snapshot; once terminal
    it is the final outcome delivered to listeners.

    Attributes:
        filled_order_id: The winning leg (TARGET_WON/STOP_WON only)
        cancelled_order_id: The sibling leg that was cancelled
        sibling_cancel_confirmed: False if the sibling cancel could not be
            confirmed after retries (the sibling may still be live)
        reason: Why supervision was abandoned, or a note on the outcome
    """

    entry_order_id: str
    symbol: str
    target_order_id: str
    stop_order_id: str
    state: SupervisionState = SupervisionState.MONITORING
    polls: int = 0
    filled_order_id: str | None = None
    cancelled_order_id: str | None = None
    sibling_cancel_confirmed: bool | None = None
    reason: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @classmethod
    def for_pair(cls, pair: ExitPair) -> SupervisionOutcome:
        return cls(
            entry_order_id=pair.entry_order_id,
            symbol=pair.symbol,
            target_order_id=pair.target_order_id,
            stop_order_id=pair.stop_order_id,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal
