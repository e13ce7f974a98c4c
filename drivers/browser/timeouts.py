"""TimeoutGuard: turn "never resolves" into a typed, recoverable failure.

The guarded work runs as its own task behind `asyncio.shield`, so a deadline
abandons it instead of cancelling it. The abandoned task keeps running on the
loop; whatever it eventually produces is consumed and logged at debug level.
Callers that serialize access (PageHandle) hold their lock around `run()`, so
the lock is released the moment the deadline fires.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from .config import TIMEOUT_POLICY_ERROR, DriverConfig
from .errors import OperationTimeout
from .events import EventBus, TimeoutsRepeated

logger = logging.getLogger("driver.browser.timeouts")

T = TypeVar("T")

DEFAULT_CAPTURE_TIMEOUT_S = 10.0


@dataclass(frozen=True)
class TimeoutDefaults:
    navigation_s: float = 30.0
    capture_s: float = DEFAULT_CAPTURE_TIMEOUT_S
    command_s: float = 30.0

    @classmethod
    def from_config(cls, config: DriverConfig) -> TimeoutDefaults:
        return cls(
            navigation_s=float(config.navigation_timeout),
            capture_s=float(config.capture_timeout),
            command_s=float(config.command_timeout),
        )


def _consume_abandoned(operation: str) -> Callable[[asyncio.Future], None]:
    def _done(task: asyncio.Future) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("abandoned %s finished with %s: %s", operation, type(exc).__name__, exc)
        else:
            logger.debug("abandoned %s finished late", operation)

    return _done


class TimeoutGuard:
    def __init__(
        self,
        *,
        policy: str = TIMEOUT_POLICY_ERROR,
        threshold: int = 3,
        events: EventBus | None = None,
        on_threshold: Callable[[str], None] | None = None,
    ) -> None:
        self.policy = policy
        self.threshold = max(1, int(threshold))
        self.events = events
        self.on_threshold = on_threshold
        self.consecutive = 0
        self.total_timeouts = 0

    async def run(
        self,
        awaitable: Awaitable[T],
        *,
        timeout: float | None,
        operation: str,
        error_cls: type[OperationTimeout] = OperationTimeout,
    ) -> T:
        """Await `awaitable` for at most `timeout` seconds.

        Raises `error_cls` on deadline. Exceptions raised by the work itself
        propagate unchanged and reset the consecutive-timeout counter.
        """
        task = asyncio.ensure_future(awaitable)
        try:
            if timeout is None:
                result = await asyncio.shield(task)
            else:
                result = await asyncio.wait_for(asyncio.shield(task), timeout=max(0.0, float(timeout)))
        except asyncio.TimeoutError:
            task.add_done_callback(_consume_abandoned(operation))
            self._record_timeout(operation)
            logger.warning("%s timed out after %.2fs; abandoning in-flight work", operation, timeout)
            raise error_cls(operation, timeout) from None
        except asyncio.CancelledError:
            if not task.done():
                task.add_done_callback(_consume_abandoned(operation))
            raise
        except Exception:
            self.consecutive = 0
            raise
        self.consecutive = 0
        return result

    def _record_timeout(self, operation: str) -> None:
        self.consecutive += 1
        self.total_timeouts += 1
        if self.consecutive < self.threshold:
            return
        count = self.consecutive
        self.consecutive = 0
        logger.warning("%d consecutive timeouts (last: %s); policy=%s", count, operation, self.policy)
        if self.events is not None:
            self.events.publish(TimeoutsRepeated(operation=operation, consecutive=count, policy=self.policy))
        if self.on_threshold is not None:
            self.on_threshold(self.policy)


__all__ = ["DEFAULT_CAPTURE_TIMEOUT_S", "TimeoutDefaults", "TimeoutGuard"]
