"""
Error taxonomy for the order lifecycle service.

Every error carries a ``details`` dict that the HTTP layer returns verbatim in
the error body, so a failed instruction can be diagnosed without reading logs
(which order ids are live at the broker, how many polls were made, ...).

Hierarchy:
    TradingPlatformError
    └── OrderLifecycleError
        ├── InvalidInputError
        ├── MarketClosedError
        ├── BrokerError
        │   ├── BrokerRejectedError
        │   └── BrokerUnavailableError
        ├── FillTimeoutError
        ├── ExitLevelsError
        └── PartialExitPlacementError
"""

from decimal import Decimal
from typing import Any

from libs.common.exceptions import TradingPlatformError


class OrderLifecycleError(TradingPlatformError):
    """Base exception for order lifecycle failures."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}


class InvalidInputError(OrderLifecycleError):
    """
    Instruction or price inputs are invalid.

    Raised before any broker call is made.

    Example:
        >>> Instruction(symbol="AAPL", direction="buy", quantity=0, ...)
        InvalidInputError: quantity must be a positive integer
    """

    pass


class MarketClosedError(OrderLifecycleError):
    """Market clock reports the market closed; nothing was submitted."""

    pass


class BrokerError(OrderLifecycleError):
    """Base class for failures talking to the broker."""

    pass


class BrokerRejectedError(BrokerError):
    """
    Broker rejected the request (HTTP 4xx other than 429).

    Attributes:
        status_code: HTTP status returned by the broker (None if not HTTP)
        payload: Broker error payload or message
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        payload: Any = None,
        details: dict[str, Any] | None = None,
    ):
        merged = {"status_code": status_code, "payload": payload}
        merged.update(details or {})
        super().__init__(message, merged)
        self.status_code = status_code
        self.payload = payload


class BrokerUnavailableError(BrokerError):
    """
    Broker could not be reached or failed transiently (transport, 429, 5xx).

    Attributes:
        status_code: HTTP status if the broker answered, None on transport failure
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        merged: dict[str, Any] = {"status_code": status_code}
        merged.update(details or {})
        super().__init__(message, merged)
        self.status_code = status_code


class FillTimeoutError(OrderLifecycleError):
    """
    Entry order did not reach ``filled`` within the poll budget.

    No exit orders were placed. The entry order is still live at the broker
    unless ``entry_cancelled`` is True.

    Attributes:
        order_id: Entry order id
        attempts: Number of polls made
        last_status: Last status observed
        entry_cancelled: Whether the entry order was cancelled after the timeout
    """

    def __init__(
        self,
        order_id: str,
        attempts: int,
        last_status: str | None = None,
        entry_cancelled: bool = False,
    ):
        super().__init__(
            f"Order {order_id} not filled after {attempts} polls (last status: {last_status})",
            {
                "order_id": order_id,
                "attempts": attempts,
                "last_status": last_status,
                "entry_cancelled": entry_cancelled,
            },
        )
        self.order_id = order_id
        self.attempts = attempts
        self.last_status = last_status
        self.entry_cancelled = entry_cancelled

    def with_entry_cancelled(self, entry_cancelled: bool) -> "FillTimeoutError":
        """Return a copy recording whether the entry was cancelled."""
        return FillTimeoutError(
            order_id=self.order_id,
            attempts=self.attempts,
            last_status=self.last_status,
            entry_cancelled=entry_cancelled,
        )


class ExitLevelsError(OrderLifecycleError):
    """
    Exit prices derived from the entry fill are unusable.

    The entry order is filled and no exit order was placed, so the position
    is open and unprotected.

    Attributes:
        entry_order_id: Filled entry order id
        reference_price: Price the exit levels were derived from
    """

    def __init__(self, entry_order_id: str, reference_price: Decimal, cause: str | None = None):
        super().__init__(
            f"No valid exit levels for filled entry {entry_order_id} "
            f"at reference price {reference_price}: {cause}",
            {
                "entry_order_id": entry_order_id,
                "reference_price": str(reference_price),
                "cause": cause,
            },
        )
        self.entry_order_id = entry_order_id
        self.reference_price = reference_price


class PartialExitPlacementError(OrderLifecycleError):
    """
    Only one exit leg could be placed.

    The position is open and at most one protective order exists. Callers
    must inspect ``placed_order_id`` and ``rolled_back`` to know what is live.

    Attributes:
        entry_order_id: Filled entry order id
        placed_order_id: Id of the leg that was placed
        failed_leg: Which leg failed ("stop" or "target")
        rolled_back: Whether the placed leg was cancelled afterwards
    """

    def __init__(
        self,
        entry_order_id: str,
        placed_order_id: str,
        failed_leg: str,
        rolled_back: bool,
        cause: str | None = None,
    ):
        super().__init__(
            f"Exit placement incomplete for entry {entry_order_id}: "
            f"{failed_leg} leg failed (placed={placed_order_id}, rolled_back={rolled_back})",
            {
                "entry_order_id": entry_order_id,
                "placed_order_id": placed_order_id,
                "failed_leg": failed_leg,
                "rolled_back": rolled_back,
                "cause": cause,
            },
        )
        self.entry_order_id = entry_order_id
        self.placed_order_id = placed_order_id
        self.failed_leg = failed_leg
        self.rolled_back = rolled_back
