"""
One-cancels-other supervision of an exit pair.

State machine:

    MONITORING ──target filled──▶ TARGET_WON   (stop cancelled)
        │      ──stop filled────▶ STOP_WON     (target cancelled)
        │      ──both legs dead─▶ ABANDONED
        └──budget exhausted / fatal broker error──▶ ABANDONED

Each tick fetches the target first and stops there when it is filled, so the
target wins a tie and a failing stop lookup cannot hide a target fill. The
stop is fetched only while the target is open.

Supervision is bounded by a wall clock budget, an optional poll budget and a
budget of consecutive transport failures. Every broker request is bounded by
``call_timeout`` and by what is left of the wall clock budget; a request that
times out counts as a transport failure. ABANDONED is reported to listeners,
logged at ERROR and counted in metrics; it is never raised.

Cancelling a supervision task (service shutdown) stops polling and leaves
both exit orders live at the broker.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from apps.order_lifecycle import metrics
from apps.order_lifecycle.broker_gateway import BrokerGateway
from apps.order_lifecycle.config import OrderLifecycleConfig
from apps.order_lifecycle.exceptions import BrokerError, BrokerUnavailableError
from apps.order_lifecycle.models import ExitPair, SupervisionOutcome, SupervisionState

logger = logging.getLogger(__name__)

T = TypeVar("T")

SupervisionListener = Callable[[SupervisionOutcome], Awaitable[None] | None]

SIBLING_CANCEL_ATTEMPTS = 3
DEFAULT_CALL_TIMEOUT_SECONDS = 30.0
DEFAULT_HISTORY_LIMIT = 1000


async def _bounded(awaitable: Awaitable[T], timeout: float, what: str) -> T:
    try:
        async with asyncio.timeout(timeout):
            return await awaitable
    except TimeoutError as e:
        raise BrokerUnavailableError(f"{what}: no answer within {timeout:.3g}s") from e


class OcoSupervisor:
    """
    Enforces one-cancels-other on a single exit pair.

    Attributes:
        pair: The exit pair under supervision
        outcome: Live status, updated in place on every tick
    """

    def __init__(
        self,
        gateway: BrokerGateway,
        pair: ExitPair,
        poll_interval: float = 5.0,
        max_polls: int = 0,
        max_duration: float = 86_400.0,
        max_consecutive_failures: int = 12,
        call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.pair = pair
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.max_duration = max_duration
        self.max_consecutive_failures = max_consecutive_failures
        self.call_timeout = call_timeout
        self._sleep = sleep
        self._clock = clock
        self.outcome = SupervisionOutcome.for_pair(pair)

    @property
    def state(self) -> SupervisionState:
        return self.outcome.state

    async def tick(self, budget: float | None = None) -> SupervisionState:
        """
        Evaluate the legs once and apply the transition rule.

        Args:
            budget: Seconds left for this tick's order lookups; each lookup
                is bounded by the smaller of this and ``call_timeout``

        Raises:
            BrokerUnavailableError: A lookup failed transiently or timed out
            BrokerError: A lookup was rejected
        """
        timeout = self.call_timeout if budget is None else min(self.call_timeout, budget)

        target = await _bounded(
            self.gateway.get_order(self.pair.target_order_id),
            timeout,
            f"get_order {self.pair.target_order_id}",
        )
        if target.is_filled:
            await self._resolve(
                SupervisionState.TARGET_WON, winner=target.id, loser=self.pair.stop_order_id
            )
            return self.outcome.state

        stop = await _bounded(
            self.gateway.get_order(self.pair.stop_order_id),
            timeout,
            f"get_order {self.pair.stop_order_id}",
        )
        if stop.is_filled:
            await self._resolve(SupervisionState.STOP_WON, winner=stop.id, loser=target.id)
        elif target.status.is_dead and stop.status.is_dead:
            self._abandon(
                f"both exit legs ended without a fill "
                f"(target={target.broker_status}, stop={stop.broker_status})"
            )
        return self.outcome.state

    async def run(self) -> SupervisionOutcome:
        """
        Poll until the pair resolves or a budget is exhausted.

        Returns:
            The terminal SupervisionOutcome
        """
        started = self._clock()
        consecutive_failures = 0

        logger.info(
            "OCO supervision started",
            extra={
                "entry_order_id": self.pair.entry_order_id,
                "target_order_id": self.pair.target_order_id,
                "stop_order_id": self.pair.stop_order_id,
                "strategy": self.pair.strategy.value,
            },
        )

        while True:
            if self.max_polls and self.outcome.polls >= self.max_polls:
                return self._abandon(f"poll budget of {self.max_polls} exhausted")
            elapsed = self._clock() - started
            if elapsed >= self.max_duration:
                return self._abandon(f"duration budget of {self.max_duration}s exhausted")

            self.outcome.polls += 1
            try:
                state = await self.tick(budget=self.max_duration - elapsed)
            except BrokerUnavailableError as e:
                consecutive_failures += 1
                logger.warning(
                    "OCO poll failed",
                    extra={
                        "entry_order_id": self.pair.entry_order_id,
                        "consecutive_failures": consecutive_failures,
                        "error": str(e),
                    },
                )
                if consecutive_failures >= self.max_consecutive_failures:
                    return self._abandon(
                        f"{consecutive_failures} consecutive broker failures: {e}"
                    )
            except BrokerError as e:
                return self._abandon(f"fatal broker error: {e}")
            except Exception as e:
                logger.exception(
                    "Unexpected error in OCO supervision",
                    extra={"entry_order_id": self.pair.entry_order_id},
                )
                return self._abandon(f"unexpected error: {e}")
            else:
                consecutive_failures = 0
                if state.is_terminal:
                    return self.outcome

            await self._sleep(self.poll_interval)

    async def _resolve(self, state: SupervisionState, winner: str, loser: str) -> None:
        self.pair.terminal = True
        confirmed, already_terminal = await self._cancel_sibling(loser)

        self.outcome.state = state
        self.outcome.filled_order_id = winner
        self.outcome.cancelled_order_id = loser
        self.outcome.sibling_cancel_confirmed = confirmed
        self.outcome.finished_at = datetime.now(UTC)
        if already_terminal:
            self.outcome.reason = "sibling already terminal at broker"

        log = logger.info if confirmed else logger.error
        log(
            "OCO resolved",
            extra={
                "entry_order_id": self.pair.entry_order_id,
                "state": state.value,
                "filled_order_id": winner,
                "cancelled_order_id": loser,
                "sibling_cancel_confirmed": confirmed,
                "sibling_already_terminal": already_terminal,
                "polls": self.outcome.polls,
            },
        )

    async def _cancel_sibling(self, order_id: str) -> tuple[bool, bool]:
        """
        Cancel the losing leg, retrying transport failures.

        Returns:
            (confirmed, already_terminal). An order that was already filled or
            cancelled counts as confirmed.
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(SIBLING_CANCEL_ATTEMPTS),
                wait=wait_exponential(multiplier=1, min=2, max=10),
                retry=retry_if_exception_type(BrokerUnavailableError),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
                sleep=self._sleep,
            ):
                with attempt:
                    cancelled = await _bounded(
                        self.gateway.cancel_order(order_id),
                        self.call_timeout,
                        f"cancel_order {order_id}",
                    )
        except BrokerError as e:
            metrics.sibling_cancel_failures_total.inc()
            logger.error(
                "Sibling cancel not confirmed; order may still be live",
                extra={
                    "entry_order_id": self.pair.entry_order_id,
                    "order_id": order_id,
                    "error": str(e),
                },
            )
            return False, False
        return True, not cancelled

    def _abandon(self, reason: str) -> SupervisionOutcome:
        self.outcome.state = SupervisionState.ABANDONED
        self.outcome.reason = reason
        self.outcome.finished_at = datetime.now(UTC)
        logger.error(
            "OCO supervision abandoned",
            extra={
                "entry_order_id": self.pair.entry_order_id,
                "target_order_id": self.pair.target_order_id,
                "stop_order_id": self.pair.stop_order_id,
                "reason": reason,
                "polls": self.outcome.polls,
            },
        )
        return self.outcome


class SupervisionManager:
    """
    Owns the background supervision tasks.

    One task per exit pair, keyed by entry order id. A task is dropped once it
    finishes. Outcomes stay available for status queries: running ones
    always, finished ones up to ``history_limit`` (oldest evicted first).
    Listeners are called once with the terminal outcome.

    Example:
        >>> manager = SupervisionManager(gateway, poll_interval=5.0)
        >>> manager.add_listener(lambda outcome: print(outcome.state))
        >>> manager.start(pair)
        >>> manager.get_status(pair.entry_order_id).state
        <SupervisionState.MONITORING: 'monitoring'>
    """

    def __init__(
        self,
        gateway: BrokerGateway,
        poll_interval: float = 5.0,
        max_polls: int = 0,
        max_duration: float = 86_400.0,
        max_consecutive_failures: int = 12,
        call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.max_duration = max_duration
        self.max_consecutive_failures = max_consecutive_failures
        self.call_timeout = call_timeout
        self.history_limit = history_limit
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task[SupervisionOutcome]] = {}
        self._statuses: dict[str, SupervisionOutcome] = {}
        self._listeners: list[SupervisionListener] = []

    @classmethod
    def from_config(
        cls, gateway: BrokerGateway, config: OrderLifecycleConfig
    ) -> "SupervisionManager":
        return cls(
            gateway,
            poll_interval=config.oco_poll_interval_seconds,
            max_polls=config.oco_max_polls,
            max_duration=config.oco_max_duration_seconds,
            max_consecutive_failures=config.oco_max_consecutive_failures,
            call_timeout=config.broker_call_timeout_seconds,
            history_limit=config.supervision_history_limit,
        )

    @property
    def active_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def add_listener(self, listener: SupervisionListener) -> None:
        self._listeners.append(listener)

    def start(self, pair: ExitPair) -> SupervisionOutcome:
        """
        Start supervising an exit pair in the background.

        Must be called from a running event loop. The task inherits the
        caller's context (trace id).

        Returns:
            The live outcome (state MONITORING)
        """
        existing = self._tasks.get(pair.entry_order_id)
        if existing is not None and not existing.done():
            logger.warning(
                "Exit pair already supervised", extra={"entry_order_id": pair.entry_order_id}
            )
            return self._statuses[pair.entry_order_id]

        supervisor = OcoSupervisor(
            self.gateway,
            pair,
            poll_interval=self.poll_interval,
            max_polls=self.max_polls,
            max_duration=self.max_duration,
            max_consecutive_failures=self.max_consecutive_failures,
            call_timeout=self.call_timeout,
            sleep=self._sleep,
        )
        self._statuses[pair.entry_order_id] = supervisor.outcome
        task = asyncio.create_task(
            self._supervise(supervisor), name=f"oco-supervision-{pair.entry_order_id}"
        )
        self._tasks[pair.entry_order_id] = task
        task.add_done_callback(lambda done, key=pair.entry_order_id: self._forget(key, done))
        return supervisor.outcome

    def get_status(self, entry_order_id: str) -> SupervisionOutcome | None:
        return self._statuses.get(entry_order_id)

    def list_statuses(self) -> list[SupervisionOutcome]:
        return list(self._statuses.values())

    async def wait(self, entry_order_id: str) -> SupervisionOutcome:
        """
        Wait for a supervision to finish and return its outcome.

        Raises:
            KeyError: No supervision known for this entry
        """
        task = self._tasks.get(entry_order_id)
        if task is not None:
            return await task
        return self._statuses[entry_order_id]

    async def shutdown(self) -> None:
        """Cancel all running supervisions. Exit orders stay live at the broker."""
        running = [task for task in self._tasks.values() if not task.done()]
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
            logger.info(f"Cancelled {len(running)} supervision task(s); exit orders left live")

    async def _supervise(self, supervisor: OcoSupervisor) -> SupervisionOutcome:
        metrics.active_supervisions.inc()
        try:
            outcome = await supervisor.run()
        except asyncio.CancelledError:
            supervisor.outcome.reason = "supervision stopped; exit orders left live"
            logger.warning(
                "OCO supervision cancelled",
                extra={
                    "entry_order_id": supervisor.pair.entry_order_id,
                    "target_order_id": supervisor.pair.target_order_id,
                    "stop_order_id": supervisor.pair.stop_order_id,
                },
            )
            raise
        finally:
            metrics.active_supervisions.dec()

        metrics.supervisions_total.labels(state=outcome.state.value).inc()
        await self._notify(outcome)
        return outcome

    def _forget(self, entry_order_id: str, task: asyncio.Task[SupervisionOutcome]) -> None:
        if self._tasks.get(entry_order_id) is task:
            del self._tasks[entry_order_id]
        self._prune_history()

    def _prune_history(self) -> None:
        excess = len(self._statuses) - self.history_limit
        if excess <= 0:
            return
        finished = [key for key, status in self._statuses.items() if status.state.is_terminal]
        for key in finished[:excess]:
            del self._statuses[key]

    async def _notify(self, outcome: SupervisionOutcome) -> None:
        for listener in self._listeners:
            try:
                result = listener(outcome)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Supervision listener failed",
                    extra={"entry_order_id": outcome.entry_order_id},
                )
