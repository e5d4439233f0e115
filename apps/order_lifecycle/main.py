"""
Order Lifecycle Service FastAPI Application.

Key Features:
- POST /api/v1/orders - Execute an instruction (entry, fill, exits, OCO supervision)
- GET /api/v1/supervisions - List OCO supervisions
- GET /api/v1/supervisions/{entry_order_id} - Supervision status of one exit pair
- GET /health - Health check (broker connectivity)
- GET /api/v1/config - Safety-relevant configuration
- GET /metrics - Prometheus metrics

Environment Variables:
    ALPACA_API_KEY_ID / ALPACA_API_SECRET_KEY: Broker credentials (required)
    ALPACA_BASE_URL: Trading API URL (default: https://paper-api.alpaca.markets)
    EXIT_STRATEGY: discrete_legs | native_bracket (default: discrete_legs)
    LOG_LEVEL: Logging level (default: INFO)
    See apps/order_lifecycle/config.py for the full list.

Usage:
    # Development
    $ uvicorn apps.order_lifecycle.main:app --reload --port 8010

    # Production
    $ uvicorn apps.order_lifecycle.main:app --host 0.0.0.0 --port 8010
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from apps.order_lifecycle import __version__
from apps.order_lifecycle.broker_gateway import AlpacaBrokerGateway, BrokerGateway
from apps.order_lifecycle.config import OrderLifecycleConfig, get_config_cached
from apps.order_lifecycle.exceptions import (
    BrokerRejectedError,
    BrokerUnavailableError,
    ExitLevelsError,
    FillTimeoutError,
    InvalidInputError,
    MarketClosedError,
    OrderLifecycleError,
    PartialExitPlacementError,
)
from apps.order_lifecycle.models import Instruction, SupervisionOutcome, SupervisionState
from apps.order_lifecycle.oco_supervisor import SupervisionManager
from apps.order_lifecycle.orchestrator import OrderLifecycleOrchestrator
from apps.order_lifecycle.schemas import (
    ConfigResponse,
    ErrorResponse,
    HealthResponse,
    OrderInstructionRequest,
    OrderResult,
    SupervisionListResponse,
    SupervisionStatusResponse,
)
from libs.common.logging import add_trace_id_middleware, configure_logging, log_with_context

logger = logging.getLogger(__name__)

SERVICE_NAME = "order_lifecycle"

_ERROR_STATUS: list[tuple[type[OrderLifecycleError], int]] = [
    (InvalidInputError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (MarketClosedError, status.HTTP_409_CONFLICT),
    (PartialExitPlacementError, status.HTTP_502_BAD_GATEWAY),
    (ExitLevelsError, status.HTTP_502_BAD_GATEWAY),
    (BrokerRejectedError, status.HTTP_502_BAD_GATEWAY),
    (BrokerUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (FillTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
]


def _status_for(exc: OrderLifecycleError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _log_outcome(outcome: SupervisionOutcome) -> None:
    level = "ERROR" if outcome.state is SupervisionState.ABANDONED else "INFO"
    log_with_context(
        logger,
        level,
        "Supervision finished",
        entry_order_id=outcome.entry_order_id,
        state=outcome.state.value,
        filled_order_id=outcome.filled_order_id,
        sibling_cancel_confirmed=outcome.sibling_cancel_confirmed,
        reason=outcome.reason,
        polls=outcome.polls,
    )


def create_app(
    *,
    gateway: BrokerGateway | None = None,
    config: OrderLifecycleConfig | None = None,
    setup_logging: bool = True,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        gateway: Broker gateway to use (tests); built from config if None
        config: Service config; read from the environment if None
        setup_logging: Install JSON logging on startup

    Raises:
        ConfigurationError: At startup, if no gateway is injected and broker
            credentials are missing
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        service_config = config or get_config_cached()
        if setup_logging:
            configure_logging(service_name=SERVICE_NAME, log_level=service_config.log_level)

        logger.info(f"Starting Order Lifecycle Service (version={__version__})")

        broker = gateway
        if broker is None:
            service_config.require_credentials()
            broker = AlpacaBrokerGateway(
                api_key=service_config.alpaca_api_key_id,
                secret_key=service_config.alpaca_api_secret_key,
                base_url=service_config.alpaca_base_url,
                data_url=service_config.alpaca_data_url,
                paper=service_config.alpaca_paper,
                data_feed=service_config.alpaca_data_feed,
            )

        supervision = SupervisionManager.from_config(broker, service_config)
        supervision.add_listener(_log_outcome)

        app.state.config = service_config
        app.state.gateway = broker
        app.state.supervision = supervision
        app.state.orchestrator = OrderLifecycleOrchestrator(broker, service_config, supervision)

        logger.info(
            "Order Lifecycle Service ready",
            extra={
                "exit_strategy": service_config.exit_strategy.value,
                "alpaca_paper": service_config.alpaca_paper,
                "environment": service_config.environment,
            },
        )
        try:
            yield
        finally:
            logger.info("Order Lifecycle Service shutting down")
            await supervision.shutdown()
            broker.close()

    app = FastAPI(
        title="Order Lifecycle Service",
        description="Entry execution, exit pair placement and OCO supervision",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    add_trace_id_middleware(app)
    app.mount("/metrics", make_asgi_app())

    # ------------------------------------------------------------------------
    # Exception Handlers
    # ------------------------------------------------------------------------

    @app.exception_handler(OrderLifecycleError)
    async def order_lifecycle_error_handler(
        request: Request, exc: OrderLifecycleError
    ) -> JSONResponse:
        """Map lifecycle errors to HTTP status codes."""
        return JSONResponse(
            status_code=_status_for(exc),
            content=jsonable_encoder(
                ErrorResponse(error=type(exc).__name__, message=exc.message, details=exc.details)
            ),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle malformed request bodies."""
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=jsonable_encoder(
                ErrorResponse(
                    error="InvalidInputError",
                    message="Request validation failed",
                    details={"errors": jsonable_encoder(exc.errors())},
                )
            ),
        )

    # ------------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------------

    @app.get("/", tags=["Root"])
    async def root() -> dict[str, Any]:
        """Root endpoint."""
        return {
            "service": SERVICE_NAME,
            "version": __version__,
            "status": "running",
        }

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check(request: Request) -> HealthResponse:
        """
        Health check endpoint.

        Returns "healthy" when the broker answers, "degraded" otherwise.
        Supervisions keep running while degraded.
        """
        service_config: OrderLifecycleConfig = request.app.state.config
        broker_connected = await request.app.state.gateway.check_connection()
        return HealthResponse(
            status="healthy" if broker_connected else "degraded",
            service=SERVICE_NAME,
            version=__version__,
            broker_connected=broker_connected,
            active_supervisions=request.app.state.supervision.active_count,
            exit_strategy=service_config.exit_strategy.value,
            timestamp=datetime.now(UTC),
        )

    @app.get("/api/v1/config", response_model=ConfigResponse, tags=["Configuration"])
    async def get_service_config(request: Request) -> ConfigResponse:
        """Expose safety-relevant configuration (no secrets)."""
        service_config: OrderLifecycleConfig = request.app.state.config
        return ConfigResponse(
            service=SERVICE_NAME,
            version=__version__,
            environment=service_config.environment,
            alpaca_paper=service_config.alpaca_paper,
            exit_strategy=service_config.exit_strategy.value,
            reference_price_source=service_config.reference_price_source.value,
            market_clock_check_enabled=service_config.market_clock_check_enabled,
            cancel_entry_on_fill_timeout=service_config.cancel_entry_on_fill_timeout,
            rollback_partial_exits=service_config.rollback_partial_exits,
            fill_max_attempts=service_config.fill_max_attempts,
            fill_poll_interval_seconds=service_config.fill_poll_interval_seconds,
            oco_poll_interval_seconds=service_config.oco_poll_interval_seconds,
            oco_max_polls=service_config.oco_max_polls,
            oco_max_duration_seconds=service_config.oco_max_duration_seconds,
            oco_max_consecutive_failures=service_config.oco_max_consecutive_failures,
            timestamp=datetime.now(UTC),
        )

    @app.post(
        "/api/v1/orders",
        response_model=OrderResult,
        status_code=status.HTTP_201_CREATED,
        responses={
            409: {"model": ErrorResponse},
            422: {"model": ErrorResponse},
            502: {"model": ErrorResponse},
            503: {"model": ErrorResponse},
            504: {"model": ErrorResponse},
        },
        tags=["Orders"],
    )
    async def place_order(body: OrderInstructionRequest, request: Request) -> OrderResult:
        """
        Execute an instruction.

        Returns once the entry is filled and both exit legs are live. OCO
        supervision continues in the background; poll
        /api/v1/supervisions/{entry_order_id} for its outcome.
        """
        instruction = Instruction(
            symbol=body.symbol,
            direction=body.action,
            quantity=body.quantity,
            target_percentage=body.target_percentage,
            stop_percentage=body.stop_percentage,
        )
        orchestrator: OrderLifecycleOrchestrator = request.app.state.orchestrator
        return await orchestrator.place_order(instruction)

    @app.get(
        "/api/v1/supervisions", response_model=SupervisionListResponse, tags=["Supervision"]
    )
    async def list_supervisions(request: Request) -> SupervisionListResponse:
        """List all supervisions started by this process."""
        supervision: SupervisionManager = request.app.state.supervision
        return SupervisionListResponse(
            supervisions=[
                SupervisionStatusResponse.from_outcome(outcome)
                for outcome in supervision.list_statuses()
            ],
            active=supervision.active_count,
        )

    @app.get(
        "/api/v1/supervisions/{entry_order_id}",
        response_model=SupervisionStatusResponse,
        tags=["Supervision"],
    )
    async def get_supervision(entry_order_id: str, request: Request) -> SupervisionStatusResponse:
        """Supervision status of one exit pair."""
        outcome = request.app.state.supervision.get_status(entry_order_id)
        if outcome is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"No supervision for entry order {entry_order_id}",
            )
        return SupervisionStatusResponse.from_outcome(outcome)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "apps.order_lifecycle.main:app",
        host="0.0.0.0",
        port=8010,
        reload=True,
    )
