"""
Pydantic schemas for the Order Lifecycle Service.

Defines:
- Broker wire models (OrderRequest, BrokerOrder)
- HTTP request/response models (order intake, supervision status, health)
- Error response body
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from apps.order_lifecycle.models import OrderStatus, SupervisionOutcome

# ==============================================================================
# Broker Models
# ==============================================================================


class OrderRequest(BaseModel):
    """
    Order submission sent to the broker.

    ``order_class="oco"`` submits a native one-cancels-other exit pair: the
    order itself is the take-profit limit and ``stop_loss_price`` the linked
    stop leg.
    """

    symbol: str
    side: Literal["buy", "sell"]
    qty: int = Field(..., gt=0)
    order_type: Literal["market", "limit", "stop"] = "market"
    limit_price: Decimal | None = None
    stop_price: Decimal | None = None
    time_in_force: Literal["day", "gtc"] = "gtc"
    order_class: Literal["simple", "oco"] = "simple"
    take_profit_price: Decimal | None = None
    stop_loss_price: Decimal | None = None

    @field_validator("symbol")
    @classmethod
    def symbol_uppercase(cls, v: str) -> str:
        """Ensure symbol is uppercase."""
        return v.upper()

    @field_validator("limit_price", "stop_price", "take_profit_price", "stop_loss_price")
    @classmethod
    def price_positive(cls, v: Decimal | None) -> Decimal | None:
        """Ensure prices are positive if provided."""
        if v is not None and v <= 0:
            raise ValueError("Price must be positive")
        return v


class BrokerOrder(BaseModel):
    """Last observed state of an order at the broker."""

    id: str
    symbol: str
    side: Literal["buy", "sell"]
    order_type: str
    qty: Decimal
    status: OrderStatus
    broker_status: str | None = None
    limit_price: Decimal | None = None
    stop_price: Decimal | None = None
    filled_avg_price: Decimal | None = None
    legs: list[BrokerOrder] = Field(default_factory=list)

    @property
    def is_filled(self) -> bool:
        return self.status is OrderStatus.FILLED


# ==============================================================================
# HTTP Models
# ==============================================================================


class OrderInstructionRequest(BaseModel):
    """
    Order intake body.

    Accepts both ``symbol``/``stop_percentage`` and the legacy field names
    ``symbol_id``/``sl_percentage``.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "symbol": "AAPL",
                    "action": "buy",
                    "quantity": 10,
                    "target_percentage": 5,
                    "sl_percentage": 2,
                }
            ]
        },
    )

    symbol: str = Field(..., validation_alias=AliasChoices("symbol", "symbol_id"))
    action: str = Field(..., validation_alias=AliasChoices("action", "direction", "side"))
    quantity: Any
    target_percentage: Any
    stop_percentage: Any = Field(
        ..., validation_alias=AliasChoices("stop_percentage", "sl_percentage")
    )


class OrderResult(BaseModel):
    """Synchronous acknowledgment of a placed instruction."""

    entry_order_id: str
    symbol: str
    side: Literal["buy", "sell"]
    quantity: int
    filled_avg_price: Decimal
    reference_price: Decimal
    target_price: Decimal
    stop_price: Decimal
    target_order_id: str
    stop_order_id: str
    exit_strategy: str
    supervision_state: str

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "entry_order_id": "61e69015-8549-4bfd-b9c3-01e75843f47d",
                    "symbol": "AAPL",
                    "side": "buy",
                    "quantity": 10,
                    "filled_avg_price": "150.00",
                    "reference_price": "150.00",
                    "target_price": "157.50",
                    "stop_price": "147.00",
                    "target_order_id": "b0b6dd9d-8b9b-48a9-ba46-b9d54906e415",
                    "stop_order_id": "8b9b48a9-ba46-4b9d-b549-06e415b0b6dd",
                    "exit_strategy": "discrete_legs",
                    "supervision_state": "monitoring",
                }
            ]
        }
    }


class SupervisionStatusResponse(BaseModel):
    """Supervision status of one exit pair."""

    entry_order_id: str
    symbol: str
    target_order_id: str
    stop_order_id: str
    state: str
    polls: int
    filled_order_id: str | None = None
    cancelled_order_id: str | None = None
    sibling_cancel_confirmed: bool | None = None
    reason: str | None = None
    started_at: datetime
    finished_at: datetime | None = None

    @classmethod
    def from_outcome(cls, outcome: SupervisionOutcome) -> SupervisionStatusResponse:
        return cls(
            entry_order_id=outcome.entry_order_id,
            symbol=outcome.symbol,
            target_order_id=outcome.target_order_id,
            stop_order_id=outcome.stop_order_id,
            state=outcome.state.value,
            polls=outcome.polls,
            filled_order_id=outcome.filled_order_id,
            cancelled_order_id=outcome.cancelled_order_id,
            sibling_cancel_confirmed=outcome.sibling_cancel_confirmed,
            reason=outcome.reason,
            started_at=outcome.started_at,
            finished_at=outcome.finished_at,
        )


class SupervisionListResponse(BaseModel):
    supervisions: list[SupervisionStatusResponse]
    active: int


class ErrorResponse(BaseModel):
    """Error body returned for every failed request."""

    error: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str  # "healthy", "degraded"
    service: str
    version: str
    broker_connected: bool
    active_supervisions: int
    exit_strategy: str
    timestamp: datetime


class ConfigResponse(BaseModel):
    """Safety-relevant configuration, exposed for operational verification."""

    service: str
    version: str
    environment: str
    alpaca_paper: bool
    exit_strategy: str
    reference_price_source: str
    market_clock_check_enabled: bool
    cancel_entry_on_fill_timeout: bool
    rollback_partial_exits: bool
    fill_max_attempts: int
    fill_poll_interval_seconds: float
    oco_poll_interval_seconds: float
    oco_max_polls: int
    oco_max_duration_seconds: float
    oco_max_consecutive_failures: int
    timestamp: datetime
