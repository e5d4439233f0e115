"""
Exception hierarchy shared by the order lifecycle services.

Service packages derive their own errors from TradingPlatformError so that
callers can catch everything raised by the platform in one place while still
handling specific failures (broker rejection, fill timeout, ...) precisely.
"""


class TradingPlatformError(Exception):
    """
    Base exception for all platform errors.

    Example:
        >>> try:
        ...     await orchestrator.place_order(instruction)
        ... except TradingPlatformError as e:
        ...     logger.error(f"Order lifecycle failed: {e}")
    """

    pass


class ConfigurationError(TradingPlatformError):
    """
    Raised when required configuration or credentials are missing.

    Example:
        >>> if not config.alpaca_api_key_id:
        ...     raise ConfigurationError("ALPACA_API_KEY_ID not configured")
    """

    pass
