"""Configuration module for the Order Lifecycle Service.

All environment variable parsing lives here. Invalid values fall back to
defaults with a warning; missing broker credentials are only an error when
the service actually starts (see ``require_credentials``) so that tests and
tooling can build a config without secrets.

Usage:
    from apps.order_lifecycle.config import get_config

    config = get_config()
    if config.exit_strategy is ExitStrategy.NATIVE_BRACKET:
        logger.info("Submitting exits as a native OCO order")
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import TypeVar

from apps.order_lifecycle.models import ExitStrategy, ReferencePriceSource
from libs.common.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)


# ============================================================================
# Helper Functions
# ============================================================================


def _get_float_env(name: str, default: float) -> float:
    """Parse float from environment variable with fallback to default."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid float for %s=%s; using default=%s", name, raw, default)
        return default


def _get_decimal_env(name: str, default: Decimal) -> Decimal:
    """Parse Decimal from environment variable with fallback to default."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return Decimal(raw)
    except (ValueError, InvalidOperation):
        logger.warning("Invalid decimal for %s=%s; using default=%s", name, raw, default)
        return default


def _get_int_env(name: str, default: int) -> int:
    """Parse int from environment variable with fallback to default."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid int for %s=%s; using default=%s", name, raw, default)
        return default


def _get_bool_env_strict(name: str, default: bool) -> bool:
    """Parse boolean from environment variable (strict: only "true" is True)."""
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() == "true"


def _get_bool_env_permissive(name: str, default: bool) -> bool:
    """Parse boolean from environment variable (permissive: true/yes/on/1)."""
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in ("true", "yes", "on", "1")


def _get_enum_env(name: str, enum_cls: type[E], default: E) -> E:
    """Parse an Enum value from environment variable with fallback to default."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return enum_cls(raw.strip().lower())
    except ValueError:
        logger.warning("Invalid value for %s=%s; using default=%s", name, raw, default.value)
        return default


# ============================================================================
# Configuration Defaults
# ============================================================================

ALPACA_BASE_URL_DEFAULT = "https://paper-api.alpaca.markets"
ALPACA_DATA_URL_DEFAULT = "https://data.alpaca.markets"
PRICE_INCREMENT_DEFAULT = Decimal("0.01")

# Entry fill wait: 10 polls at 1 second spacing
FILL_MAX_ATTEMPTS_DEFAULT = 10
FILL_POLL_INTERVAL_SECONDS_DEFAULT = 1.0

OCO_POLL_INTERVAL_SECONDS_DEFAULT = 5.0
OCO_MAX_POLLS_DEFAULT = 0  # 0 = bounded by duration only
OCO_MAX_DURATION_SECONDS_DEFAULT = 86_400.0
OCO_MAX_CONSECUTIVE_FAILURES_DEFAULT = 12

# Bound on a single broker request made while polling
BROKER_CALL_TIMEOUT_SECONDS_DEFAULT = 30.0
# Finished supervision outcomes kept for status queries
SUPERVISION_HISTORY_LIMIT_DEFAULT = 1000


# ============================================================================
# Configuration Dataclass
# ============================================================================


@dataclass
class OrderLifecycleConfig:
    """Configuration for the Order Lifecycle Service.

    Attributes:
        # Core Settings
        log_level: Logging level (default: INFO)
        environment: Environment name (dev, staging, prod)

        # Alpaca Configuration
        alpaca_api_key_id: Alpaca API key ID
        alpaca_api_secret_key: Alpaca API secret key
        alpaca_base_url: Trading API URL
        alpaca_data_url: Market data API URL
        alpaca_paper: Use paper trading API
        alpaca_data_feed: Market data feed ("iex", "sip"), None for account default

        # Entry
        market_clock_check_enabled: Refuse instructions while the market is closed
        reference_price_source: Price the exit levels are derived from
        price_increment: Minimum price increment used for rounding
        fill_max_attempts: Entry fill polls before FillTimeoutError
        fill_poll_interval_seconds: Spacing between entry fill polls
        cancel_entry_on_fill_timeout: Cancel the entry order after a fill timeout

        # Exits
        exit_strategy: discrete_legs or native_bracket
        rollback_partial_exits: Cancel the lone exit leg when its sibling fails

        # OCO Supervision
        oco_poll_interval_seconds: Spacing between supervision ticks
        oco_max_polls: Max supervision ticks (0 = unbounded by count)
        oco_max_duration_seconds: Wall clock budget for one supervision
        oco_max_consecutive_failures: Transport failures in a row before abandoning
        broker_call_timeout_seconds: Timeout for one broker request made while polling
        supervision_history_limit: Finished supervision outcomes kept for status queries
    """

    # Core Settings
    log_level: str
    environment: str

    # Alpaca Configuration
    alpaca_api_key_id: str
    alpaca_api_secret_key: str
    alpaca_base_url: str
    alpaca_data_url: str
    alpaca_paper: bool
    alpaca_data_feed: str | None

    # Entry
    market_clock_check_enabled: bool
    reference_price_source: ReferencePriceSource
    price_increment: Decimal
    fill_max_attempts: int
    fill_poll_interval_seconds: float
    cancel_entry_on_fill_timeout: bool

    # Exits
    exit_strategy: ExitStrategy
    rollback_partial_exits: bool

    # OCO Supervision
    oco_poll_interval_seconds: float
    oco_max_polls: int
    oco_max_duration_seconds: float
    oco_max_consecutive_failures: int
    broker_call_timeout_seconds: float = BROKER_CALL_TIMEOUT_SECONDS_DEFAULT
    supervision_history_limit: int = SUPERVISION_HISTORY_LIMIT_DEFAULT

    def require_credentials(self) -> None:
        """Raise ConfigurationError if broker credentials are missing."""
        missing = [
            name
            for name, value in (
                ("ALPACA_API_KEY_ID", self.alpaca_api_key_id),
                ("ALPACA_API_SECRET_KEY", self.alpaca_api_secret_key),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Missing broker credentials: {', '.join(missing)}")


# ============================================================================
# Configuration Factory
# ============================================================================


def get_config() -> OrderLifecycleConfig:
    """Load configuration from environment variables.

    Returns:
        OrderLifecycleConfig: Parsed configuration

    Note:
        Invalid values fall back to defaults with warnings. Non-positive
        budgets are clamped to their defaults because a zero fill budget or
        poll interval would make the lifecycle meaningless.
    """
    fill_max_attempts = _get_int_env("FILL_MAX_ATTEMPTS", FILL_MAX_ATTEMPTS_DEFAULT)
    if fill_max_attempts < 1:
        logger.warning(
            "FILL_MAX_ATTEMPTS=%s must be >= 1; using default=%s",
            fill_max_attempts,
            FILL_MAX_ATTEMPTS_DEFAULT,
        )
        fill_max_attempts = FILL_MAX_ATTEMPTS_DEFAULT

    fill_poll_interval = _get_float_env(
        "FILL_POLL_INTERVAL_SECONDS", FILL_POLL_INTERVAL_SECONDS_DEFAULT
    )
    if fill_poll_interval < 0:
        logger.warning(
            "FILL_POLL_INTERVAL_SECONDS=%s must be >= 0; using default=%s",
            fill_poll_interval,
            FILL_POLL_INTERVAL_SECONDS_DEFAULT,
        )
        fill_poll_interval = FILL_POLL_INTERVAL_SECONDS_DEFAULT

    oco_poll_interval = _get_float_env(
        "OCO_POLL_INTERVAL_SECONDS", OCO_POLL_INTERVAL_SECONDS_DEFAULT
    )
    if oco_poll_interval <= 0:
        logger.warning(
            "OCO_POLL_INTERVAL_SECONDS=%s must be > 0; using default=%s",
            oco_poll_interval,
            OCO_POLL_INTERVAL_SECONDS_DEFAULT,
        )
        oco_poll_interval = OCO_POLL_INTERVAL_SECONDS_DEFAULT

    oco_max_duration = _get_float_env("OCO_MAX_DURATION_SECONDS", OCO_MAX_DURATION_SECONDS_DEFAULT)
    if oco_max_duration <= 0:
        logger.warning(
            "OCO_MAX_DURATION_SECONDS=%s must be > 0; using default=%s",
            oco_max_duration,
            OCO_MAX_DURATION_SECONDS_DEFAULT,
        )
        oco_max_duration = OCO_MAX_DURATION_SECONDS_DEFAULT

    broker_call_timeout = _get_float_env(
        "BROKER_CALL_TIMEOUT_SECONDS", BROKER_CALL_TIMEOUT_SECONDS_DEFAULT
    )
    if broker_call_timeout <= 0:
        logger.warning(
            "BROKER_CALL_TIMEOUT_SECONDS=%s must be > 0; using default=%s",
            broker_call_timeout,
            BROKER_CALL_TIMEOUT_SECONDS_DEFAULT,
        )
        broker_call_timeout = BROKER_CALL_TIMEOUT_SECONDS_DEFAULT

    price_increment = _get_decimal_env("PRICE_INCREMENT", PRICE_INCREMENT_DEFAULT)
    if price_increment <= 0:
        logger.warning(
            "PRICE_INCREMENT=%s must be > 0; using default=%s",
            price_increment,
            PRICE_INCREMENT_DEFAULT,
        )
        price_increment = PRICE_INCREMENT_DEFAULT

    return OrderLifecycleConfig(
        # Core Settings
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        environment=os.getenv("ENVIRONMENT", "dev"),
        # Alpaca Configuration
        alpaca_api_key_id=os.getenv("ALPACA_API_KEY_ID", ""),
        alpaca_api_secret_key=os.getenv("ALPACA_API_SECRET_KEY", ""),
        alpaca_base_url=os.getenv("ALPACA_BASE_URL", ALPACA_BASE_URL_DEFAULT),
        alpaca_data_url=os.getenv("ALPACA_DATA_URL", ALPACA_DATA_URL_DEFAULT),
        alpaca_paper=_get_bool_env_strict("ALPACA_PAPER", True),
        alpaca_data_feed=os.getenv("ALPACA_DATA_FEED") or None,
        # Entry
        market_clock_check_enabled=_get_bool_env_permissive("MARKET_CLOCK_CHECK_ENABLED", True),
        reference_price_source=_get_enum_env(
            "REFERENCE_PRICE_SOURCE", ReferencePriceSource, ReferencePriceSource.FILL
        ),
        price_increment=price_increment,
        fill_max_attempts=fill_max_attempts,
        fill_poll_interval_seconds=fill_poll_interval,
        cancel_entry_on_fill_timeout=_get_bool_env_permissive(
            "CANCEL_ENTRY_ON_FILL_TIMEOUT", False
        ),
        # Exits
        exit_strategy=_get_enum_env("EXIT_STRATEGY", ExitStrategy, ExitStrategy.DISCRETE_LEGS),
        rollback_partial_exits=_get_bool_env_permissive("ROLLBACK_PARTIAL_EXITS", True),
        # OCO Supervision
        oco_poll_interval_seconds=oco_poll_interval,
        oco_max_polls=max(0, _get_int_env("OCO_MAX_POLLS", OCO_MAX_POLLS_DEFAULT)),
        oco_max_duration_seconds=oco_max_duration,
        oco_max_consecutive_failures=max(
            1,
            _get_int_env("OCO_MAX_CONSECUTIVE_FAILURES", OCO_MAX_CONSECUTIVE_FAILURES_DEFAULT),
        ),
        broker_call_timeout_seconds=broker_call_timeout,
        supervision_history_limit=max(
            1, _get_int_env("SUPERVISION_HISTORY_LIMIT", SUPERVISION_HISTORY_LIMIT_DEFAULT)
        ),
    )


# ============================================================================
# Singleton
# ============================================================================

_config_instance: OrderLifecycleConfig | None = None


def get_config_cached() -> OrderLifecycleConfig:
    """Return a process-wide config, parsed on first use."""
    global _config_instance
    if _config_instance is None:
        _config_instance = get_config()
    return _config_instance


def reset_config_cache() -> None:
    """Drop the cached config (tests)."""
    global _config_instance
    _config_instance = None
