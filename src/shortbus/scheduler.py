"""Host timer primitives for deferred execution.

Schedulers decouple *when something fires* from *what the queue does*.

- AsyncioScheduler: timers and tasks on an asyncio event loop (default).
- ManualScheduler:  virtual clock advanced explicitly; no event loop needed.

The queue never blocks waiting on a scheduler. It only asks for a callback
to be invoked later, or for a coroutine to be driven to completion.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from shortbus.errors import ConfigurationError

logger = logging.getLogger("shortbus.scheduler")

TimerCallback = Callable[[], None]
DoneCallback = Callable[["asyncio.Future[Any]"], None]


# ---------------------------------------------------------------------------
# Scheduler ABC
# ---------------------------------------------------------------------------

class Scheduler(ABC):
    """Abstract timer/task backend used by steps and queues."""

    @abstractmethod
    def call_later(self, delay: float, callback: TimerCallback) -> Any:
        """Invoke *callback* after *delay* seconds. Returns a handle with ``cancel()``."""
        raise NotImplementedError()  # pragma: no cover

    @abstractmethod
    def spawn(self, coro: Awaitable[Any], on_done: DoneCallback) -> Any:
        """Drive *coro* to completion, then call *on_done* with the finished future."""
        raise NotImplementedError()  # pragma: no cover

    def ensure_ready(self, *, tasks: bool = False) -> None:
        """Raise ConfigurationError if timers (or, with *tasks*, coroutines) cannot run."""
        return None


# ---------------------------------------------------------------------------
# AsyncioScheduler
# ---------------------------------------------------------------------------

class AsyncioScheduler(Scheduler):
    """Timers and tasks on an asyncio event loop.

    Without an explicit *loop* the running loop is looked up on every call,
    so one queue can be reused across ``asyncio.run`` invocations.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None:
            return self._loop
        try:
            return asyncio.get_running_loop()
        except RuntimeError as exc:
            raise ConfigurationError(
                "Timeouts and coroutine steps require a running asyncio event loop "
                "(or pass a ManualScheduler)."
            ) from exc

    def ensure_ready(self, *, tasks: bool = False) -> None:
        self._get_loop()

    def call_later(self, delay: float, callback: TimerCallback) -> asyncio.TimerHandle:
        return self._get_loop().call_later(max(0.0, float(delay)), callback)

    def spawn(self, coro: Awaitable[Any], on_done: DoneCallback) -> "asyncio.Future[Any]":
        task = asyncio.ensure_future(coro, loop=self._get_loop())
        task.add_done_callback(on_done)
        return task


# ---------------------------------------------------------------------------
# ManualScheduler
# ---------------------------------------------------------------------------

class _ManualTimer:
    __slots__ = ("when", "callback", "cancelled")

    def __init__(self, when: float, callback: TimerCallback) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(Scheduler):
    """Deterministic virtual clock.

    Nothing fires until ``advance`` is called. Timers scheduled for the same
    instant fire in the order they were scheduled. Coroutines are not
    supported; use an asyncio loop for ``StepKind.COROUTINE`` steps.
    """

    def __init__(self, start: float = 0.0) -> None:
        self.time = float(start)
        self._heap: List[Tuple[float, int, _ManualTimer]] = []
        self._seq = itertools.count()

    @property
    def pending(self) -> int:
        """Number of armed, uncancelled timers."""
        return sum(1 for _, _, t in self._heap if not t.cancelled)

    def ensure_ready(self, *, tasks: bool = False) -> None:
        if tasks:
            raise ConfigurationError("ManualScheduler cannot run coroutine steps.")

    def call_later(self, delay: float, callback: TimerCallback) -> _ManualTimer:
        timer = _ManualTimer(self.time + max(0.0, float(delay)), callback)
        heapq.heappush(self._heap, (timer.when, next(self._seq), timer))
        return timer

    def spawn(self, coro: Awaitable[Any], on_done: DoneCallback) -> Any:
        close = getattr(coro, "close", None)
        if close is not None:
            close()
        raise ConfigurationError("ManualScheduler cannot run coroutine steps.")

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing every timer that falls due. Returns count fired."""
        target = self.time + float(seconds)
        fired = 0
        while self._heap and self._heap[0][0] <= target:
            when, _, timer = heapq.heappop(self._heap)
            if timer.cancelled:
                continue
            self.time = when
            fired += 1
            timer.callback()
        self.time = target
        logger.debug("ManualScheduler: advanced to %.3f (%d fired)", self.time, fired)
        return fired
