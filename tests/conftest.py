"""
Root conftest for tests.

This ensures:
1. No trace ID leaks between tests through the logging context
2. The cached service config is re-read from the environment per test
"""

import pytest

from apps.order_lifecycle.config import reset_config_cache
from libs.common.logging.context import clear_trace_id


@pytest.fixture(autouse=True)
def _isolate_process_state():
    """Reset module-level state shared by the order lifecycle service."""
    clear_trace_id()
    reset_config_cache()
    yield
    clear_trace_id()
    reset_config_cache()
