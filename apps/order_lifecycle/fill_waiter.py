"""
Entry order fill confirmation.

Polls the broker for an order until it reports ``filled`` or the attempt
budget runs out. The poll loop is a tenacity ``AsyncRetrying`` driven by the
order result:

- a filled order ends the loop and is returned
- any other status sleeps ``interval`` seconds (``asyncio.sleep``) and polls
  again, up to ``max_attempts`` polls in total
- an exception from the gateway (e.g. BrokerUnavailableError) is not retried
  and propagates at once
- an order that is ``canceled`` or ``rejected`` can never fill, so polling
  stops with BrokerRejectedError
- a single poll that gets no answer within ``call_timeout`` seconds fails with
  BrokerUnavailableError

Cancelling the awaiting task interrupts the sleep and no further request is
made.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_attempt, wait_fixed

from apps.order_lifecycle import metrics
from apps.order_lifecycle.broker_gateway import BrokerGateway
from apps.order_lifecycle.exceptions import (
    BrokerRejectedError,
    BrokerUnavailableError,
    FillTimeoutError,
)
from apps.order_lifecycle.schemas import BrokerOrder

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_INTERVAL_SECONDS = 1.0
DEFAULT_CALL_TIMEOUT_SECONDS = 30.0


def _not_filled(order: BrokerOrder) -> bool:
    return not order.is_filled


class FillWaiter:
    """
    Waits for an order to fill.

    Example:
        >>> waiter = FillWaiter(gateway)
        >>> filled = await waiter.await_fill(entry.id)
        >>> filled.filled_avg_price
        Decimal('150.00')
    """

    def __init__(
        self,
        gateway: BrokerGateway,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.max_attempts = max_attempts
        self.interval = interval
        self.call_timeout = call_timeout
        self._sleep = sleep

    async def _poll(self, order_id: str) -> BrokerOrder:
        try:
            async with asyncio.timeout(self.call_timeout):
                order = await self.gateway.get_order(order_id)
        except TimeoutError as e:
            raise BrokerUnavailableError(
                f"No answer for order {order_id} within {self.call_timeout}s",
                details={"order_id": order_id},
            ) from e
        logger.debug(
            "Polled entry order",
            extra={"order_id": order_id, "status": order.broker_status},
        )
        if order.status.is_dead:
            raise BrokerRejectedError(
                f"Order {order_id} ended {order.broker_status} before filling",
                payload={"order_id": order_id, "status": order.broker_status},
            )
        return order

    async def await_fill(
        self,
        order_id: str,
        max_attempts: int | None = None,
        interval: float | None = None,
    ) -> BrokerOrder:
        """
        Poll an order until it is filled.

        Args:
            order_id: Broker order id
            max_attempts: Poll budget (defaults to the waiter's)
            interval: Seconds between polls (defaults to the waiter's)

        Returns:
            The filled BrokerOrder

        Raises:
            FillTimeoutError: Not filled after exactly ``max_attempts`` polls
            BrokerRejectedError: Order was cancelled or rejected
            BrokerUnavailableError: Broker unreachable or a poll timed out (not retried)
        """
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        wait_seconds = interval if interval is not None else self.interval
        started = time.monotonic()

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(wait_seconds),
            retry=retry_if_result(_not_filled),
            sleep=self._sleep,
        )

        try:
            order: BrokerOrder = await retrying(self._poll, order_id)
        except RetryError as e:
            last_order = e.last_attempt.result()
            metrics.entry_fill_wait_seconds.labels(outcome="timeout").observe(
                time.monotonic() - started
            )
            logger.warning(
                "Entry order not filled within poll budget",
                extra={
                    "order_id": order_id,
                    "attempts": attempts,
                    "last_status": last_order.broker_status,
                },
            )
            raise FillTimeoutError(
                order_id=order_id,
                attempts=attempts,
                last_status=last_order.broker_status,
            ) from e
        except Exception:
            metrics.entry_fill_wait_seconds.labels(outcome="error").observe(
                time.monotonic() - started
            )
            raise

        metrics.entry_fill_wait_seconds.labels(outcome="filled").observe(
            time.monotonic() - started
        )
        logger.info(
            "Entry order filled",
            extra={
                "order_id": order_id,
                "filled_avg_price": order.filled_avg_price,
                "polls": retrying.statistics.get("attempt_number"),
            },
        )
        return order
