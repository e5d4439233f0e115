"""Common utilities and exceptions."""

from libs.common.exceptions import ConfigurationError, TradingPlatformError

__all__ = [
    "TradingPlatformError",
    "ConfigurationError",
]
