"""
Unit tests for Order Lifecycle Service FastAPI endpoints.

Tests cover:
- Root, health and config endpoints
- Order intake: success, field aliases, error mapping
- Supervision status endpoints
- Trace ID propagation
- Startup without credentials
"""

import dataclasses
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from apps.order_lifecycle.exceptions import BrokerRejectedError, BrokerUnavailableError
from apps.order_lifecycle.main import create_app
from libs.common.exceptions import ConfigurationError

ORDER_BODY = {
    "symbol": "AAPL",
    "action": "buy",
    "quantity": 10,
    "target_percentage": 5,
    "stop_percentage": 2,
}


@pytest.fixture()
def client(fake_gateway, lifecycle_config):
    """TestClient running the app lifespan against the fake broker."""
    app = create_app(gateway=fake_gateway, config=lifecycle_config, setup_logging=False)
    with TestClient(app) as test_client:
        yield test_client


class TestRootEndpoint:
    """Tests for root endpoint."""

    def test_root_returns_service_info(self, client):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "order_lifecycle"
        assert data["status"] == "running"
        assert "version" in data


class TestHealthCheckEndpoint:
    """Tests for health check endpoint."""

    def test_healthy_when_broker_connected(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["broker_connected"] is True
        assert data["active_supervisions"] == 0
        assert data["exit_strategy"] == "discrete_legs"

    def test_degraded_when_broker_down(self, client, fake_gateway):
        fake_gateway.connected = False

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"
        assert response.json()["broker_connected"] is False


class TestConfigEndpoint:
    """Tests for config endpoint."""

    def test_exposes_safety_flags_without_secrets(self, client):
        response = client.get("/api/v1/config")

        assert response.status_code == 200
        data = response.json()
        assert data["alpaca_paper"] is True
        assert data["exit_strategy"] == "discrete_legs"
        assert data["reference_price_source"] == "fill"
        assert data["fill_max_attempts"] == 10
        assert data["cancel_entry_on_fill_timeout"] is False
        assert "test-secret" not in response.text


class TestPlaceOrderEndpoint:
    """Tests for POST /api/v1/orders."""

    def test_places_order(self, client, fake_gateway):
        fake_gateway.script("order-1", "filled")

        response = client.post("/api/v1/orders", json=ORDER_BODY)

        assert response.status_code == 201
        data = response.json()
        assert data["entry_order_id"] == "order-1"
        assert data["symbol"] == "AAPL"
        assert data["quantity"] == 10
        assert data["target_price"] == "157.50"
        assert data["stop_price"] == "147.00"
        assert data["target_order_id"] == "order-2"
        assert data["stop_order_id"] == "order-3"

    def test_accepts_legacy_field_names(self, client, fake_gateway):
        fake_gateway.script("order-1", "filled")
        body = {
            "symbol_id": "aapl",
            "action": "buy",
            "quantity": 10,
            "target_percentage": 5,
            "sl_percentage": 2,
        }

        response = client.post("/api/v1/orders", json=body)

        assert response.status_code == 201
        assert response.json()["symbol"] == "AAPL"
        assert response.json()["stop_price"] == "147.00"

    def test_invalid_instruction_returns_422_without_broker_calls(self, client, fake_gateway):
        response = client.post("/api/v1/orders", json={**ORDER_BODY, "quantity": 0})

        assert response.status_code == 422
        assert response.json()["error"] == "InvalidInputError"
        assert response.json()["details"] == {"quantity": 0}
        assert fake_gateway.submitted == []

    def test_missing_field_returns_422(self, client):
        body = {key: value for key, value in ORDER_BODY.items() if key != "stop_percentage"}

        response = client.post("/api/v1/orders", json=body)

        assert response.status_code == 422
        assert response.json()["error"] == "InvalidInputError"
        assert "errors" in response.json()["details"]

    def test_market_closed_returns_409(self, client, fake_gateway):
        fake_gateway.clock_open = False

        response = client.post("/api/v1/orders", json=ORDER_BODY)

        assert response.status_code == 409
        assert response.json()["error"] == "MarketClosedError"
        assert fake_gateway.submitted == []

    def test_broker_rejection_returns_502_with_payload(self, client, fake_gateway):
        fake_gateway.submit_errors[0] = BrokerRejectedError(
            "rejected", status_code=403, payload={"message": "insufficient buying power"}
        )

        response = client.post("/api/v1/orders", json=ORDER_BODY)

        assert response.status_code == 502
        data = response.json()
        assert data["error"] == "BrokerRejectedError"
        assert data["details"]["status_code"] == 403
        assert data["details"]["payload"] == {"message": "insufficient buying power"}

    def test_broker_unavailable_returns_503(self, client, fake_gateway):
        fake_gateway.submit_errors[0] = BrokerUnavailableError("connection refused")

        response = client.post("/api/v1/orders", json=ORDER_BODY)

        assert response.status_code == 503
        assert response.json()["error"] == "BrokerUnavailableError"

    def test_fill_timeout_returns_504(self, client, fake_gateway):
        response = client.post("/api/v1/orders", json=ORDER_BODY)

        assert response.status_code == 504
        data = response.json()
        assert data["error"] == "FillTimeoutError"
        assert data["details"]["order_id"] == "order-1"
        assert data["details"]["attempts"] == 10
        assert data["details"]["entry_cancelled"] is False

    def test_partial_exit_returns_502(self, client, fake_gateway):
        fake_gateway.script("order-1", "filled")
        fake_gateway.submit_errors[2] = BrokerRejectedError("rejected", status_code=422)

        response = client.post("/api/v1/orders", json=ORDER_BODY)

        assert response.status_code == 502
        data = response.json()
        assert data["error"] == "PartialExitPlacementError"
        assert data["details"]["placed_order_id"] == "order-2"
        assert data["details"]["rolled_back"] is True


    def test_exit_levels_at_fill_price_return_502(self, client, fake_gateway):
        fake_gateway.script("order-1", "filled")
        fake_gateway.fill_prices["order-1"] = Decimal("40.00")
        body = {**ORDER_BODY, "action": "sell", "target_percentage": "99.99"}

        response = client.post("/api/v1/orders", json=body)

        assert response.status_code == 502
        data = response.json()
        assert data["error"] == "ExitLevelsError"
        assert data["details"]["entry_order_id"] == "order-1"


class TestSupervisionEndpoints:
    """Tests for supervision status endpoints."""

    def test_unknown_entry_returns_404(self, client):
        response = client.get("/api/v1/supervisions/missing")

        assert response.status_code == 404

    def test_status_after_order(self, client, fake_gateway):
        fake_gateway.script("order-1", "filled")
        client.post("/api/v1/orders", json=ORDER_BODY)

        response = client.get("/api/v1/supervisions/order-1")

        assert response.status_code == 200
        data = response.json()
        assert data["entry_order_id"] == "order-1"
        assert data["target_order_id"] == "order-2"
        assert data["stop_order_id"] == "order-3"
        assert data["state"] in {"monitoring", "abandoned"}

        listing = client.get("/api/v1/supervisions").json()
        assert [item["entry_order_id"] for item in listing["supervisions"]] == ["order-1"]


class TestMetricsEndpoint:
    """Tests for the Prometheus mount."""

    def test_exposes_lifecycle_metrics(self, client, fake_gateway):
        fake_gateway.clock_open = False
        client.post("/api/v1/orders", json=ORDER_BODY)

        response = client.get("/metrics/")

        assert response.status_code == 200
        assert "order_lifecycle_instructions_total" in response.text


class TestTraceId:
    """Tests for trace ID propagation."""

    def test_echoes_supplied_trace_id(self, client):
        response = client.get("/", headers={"X-Trace-ID": "trace-123"})

        assert response.headers["x-trace-id"] == "trace-123"

    def test_generates_trace_id_on_error_responses(self, client):
        response = client.get("/api/v1/supervisions/missing")

        assert response.headers.get("x-trace-id")


class TestStartup:
    """Tests for application startup."""

    def test_missing_credentials_fail_startup(self, lifecycle_config):
        config = dataclasses.replace(lifecycle_config, alpaca_api_key_id="")
        app = create_app(config=config, setup_logging=False)

        with pytest.raises(ConfigurationError):
            with TestClient(app):
                pass

    def test_shutdown_closes_gateway(self, fake_gateway, lifecycle_config):
        app = create_app(gateway=fake_gateway, config=lifecycle_config, setup_logging=False)

        with TestClient(app):
            assert fake_gateway.closed is False

        assert fake_gateway.closed is True
