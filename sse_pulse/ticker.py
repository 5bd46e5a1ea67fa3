import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Set, Union

import anyio
from anyio.abc import TaskGroup

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tick:
    """Valueless timer signal; ``sequence`` counts elapsed intervals from 0."""

    sequence: int


TickCallback = Callable[[Tick], Awaitable[None]]
ErrorCallback = Callable[[BaseException], None]


def validate_interval(value: Union[int, float]) -> Union[int, float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError("interval must be int or float")
    if not value > 0 or math.isinf(value):
        raise ValueError("interval must be a positive, finite number")
    return value


class Subscription:
    """Handle to one running timer. Cancelling it stops further ticks."""

    def __init__(self, ticker: "Ticker", interval: Union[int, float]) -> None:
        self.interval = interval
        self._ticker = ticker
        self._cancel_scope = anyio.CancelScope()
        self._cancelled = False
        self._finished = False

    @property
    def active(self) -> bool:
        return not (self._cancelled or self._finished)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._cancel_scope.cancel()
        self._ticker._discard(self)

    def _finish(self) -> None:
        self._finished = True
        self._ticker._discard(self)


class Ticker:
    """
    Timer that multiplexes any number of periodic subscriptions onto the
    running event loop via an anyio task group.

    Each subscription ticks at absolute deadlines ``start + n * interval``
    (n >= 1, so there is never a tick at t=0). The callback is awaited before
    the next deadline is looked at, so at most one tick is in flight per
    subscriber. Slow subscribers do not build up a backlog: deadlines that
    passed while the callback was running are coalesced into a single tick,
    delivered right away with the sequence of the most recent missed
    deadline. Sequences are strictly increasing but may have gaps.
    """

    def __init__(self, task_group: TaskGroup) -> None:
        self._task_group = task_group
        self._subscriptions: Set[Subscription] = set()

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        interval: Union[int, float],
        on_tick: TickCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        subscription = Subscription(self, validate_interval(interval))
        self._subscriptions.add(subscription)
        self._task_group.start_soon(self._run, subscription, on_tick, on_error)
        return subscription

    def cancel_all(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.cancel()

    def _discard(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)

    async def _run(
        self,
        subscription: Subscription,
        on_tick: TickCallback,
        on_error: Optional[ErrorCallback],
    ) -> None:
        interval = subscription.interval
        start = anyio.current_time()
        sequence = 0
        try:
            with subscription._cancel_scope:
                while True:
                    await anyio.sleep_until(start + (sequence + 1) * interval)
                    await on_tick(Tick(sequence))

                    # deadlines missed while on_tick was running collapse
                    # into one tick carrying the latest missed sequence
                    elapsed = int((anyio.current_time() - start) // interval)
                    next_sequence = max(sequence + 1, elapsed - 1)
                    if next_sequence > sequence + 1:
                        logger.debug(
                            "ticker skipped %d tick(s) for slow subscriber",
                            next_sequence - sequence - 1,
                        )
                    sequence = next_sequence
        except Exception as e:
            if on_error is None:
                raise
            on_error(e)
        finally:
            subscription._finish()
