"""Step: one schedulable unit of work and its execution lifecycle.

State diagram:
    pending  -> running   (run() invokes the callback)
    pending  -> skipped   (skip requested before the step was reached)
    running  -> complete  (callback returned / ctx.done() called)
    running  -> timedout  (the step's own timer expired first)
    running  -> failed    (callback raised / ctx.fail() called)
    timedout -> complete  (late completion is still reported)
    timedout -> failed

Timeouts are advisory: an expired timer labels the step and emits a
notification but never interrupts the callback.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional

from shortbus.config import Mode
from shortbus.errors import ConfigurationError, StateError
from shortbus.events import EventEmitter, QueueEvent
from shortbus.scheduler import AsyncioScheduler, Scheduler

logger = logging.getLogger("shortbus.step")


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    SKIPPED = "skipped"
    TIMEDOUT = "timedout"
    FAILED = "failed"


class StepKind(str, Enum):
    """How a step's callback signals completion.

    SYNC:      ``callback()``; complete when it returns.
    DEFERRED:  ``callback(ctx)``; complete when ``ctx.done()`` is called.
    COROUTINE: ``async def callback(ctx)``; complete when the coroutine returns.
    """

    SYNC = "sync"
    DEFERRED = "deferred"
    COROUTINE = "coroutine"


VALID_TRANSITIONS: Dict[StepStatus, FrozenSet[StepStatus]] = {
    StepStatus.PENDING: frozenset([StepStatus.RUNNING, StepStatus.SKIPPED]),
    StepStatus.RUNNING: frozenset([
        StepStatus.COMPLETE,
        StepStatus.TIMEDOUT,
        StepStatus.FAILED,
    ]),
    StepStatus.TIMEDOUT: frozenset([StepStatus.COMPLETE, StepStatus.FAILED]),
    # Terminal for the current run
    StepStatus.COMPLETE: frozenset(),
    StepStatus.SKIPPED: frozenset(),
    StepStatus.FAILED: frozenset(),
}

# Statuses in which skip() is refused.
_UNSKIPPABLE = frozenset([
    StepStatus.RUNNING,
    StepStatus.COMPLETE,
    StepStatus.TIMEDOUT,
    StepStatus.FAILED,
])


def infer_kind(callback: Callable[..., Any]) -> StepKind:
    """COROUTINE for ``async def`` callables, SYNC otherwise. DEFERRED is never inferred."""
    if inspect.iscoroutinefunction(callback):
        return StepKind.COROUTINE
    return StepKind.SYNC


class StepContext:
    """Completion handle passed to DEFERRED and COROUTINE callbacks.

    Calling the context itself is the same as ``done()``, so it can be handed
    straight to anything expecting a zero-argument callback::

        def fetch(ctx):
            ctx.set_timeout(2.0)
            loop.call_later(0.5, ctx)
    """

    __slots__ = ("_step", "_run_id")

    def __init__(self, step: "Step", run_id: int) -> None:
        self._step = step
        self._run_id = run_id

    @property
    def name(self) -> str:
        return self._step.name

    @property
    def number(self) -> int:
        return self._step.number

    @property
    def status(self) -> StepStatus:
        return self._step.status

    @property
    def skipped(self) -> bool:
        return self._step.skipped

    def done(self) -> None:
        self._step._finish(self._run_id)

    def fail(self, error: Optional[BaseException] = None) -> None:
        self._step._fail(error or RuntimeError(f"{self.name} reported failure"), self._run_id)

    def set_timeout(self, seconds: float) -> None:
        """Arm (or re-arm) this step's own advisory timer."""
        self._step._arm_timer(seconds, self._run_id)

    def __call__(self) -> None:
        self.done()

    def __repr__(self) -> str:
        return f"StepContext({self.name!r}, status={self.status.value})"


class Step:
    """One registered unit of work.

    ``name`` and ``number`` are fixed at creation. The owning queue listens to
    ``events`` and drives ``run``; callers normally only ``skip()`` steps.
    """

    def __init__(
        self,
        name: str,
        callback: Callable[..., Any],
        number: int,
        kind: Optional[StepKind] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        if not callable(callback):
            raise ConfigurationError(f"No processing method defined for step {number}.")
        self._name = str(name) if name else "Unknown"
        self._number = int(number)
        self._callback = callback
        self._kind = StepKind(kind) if kind is not None else infer_kind(callback)
        self._scheduler = scheduler or AsyncioScheduler()
        self.events = EventEmitter()
        self.skip_requested = False
        self.error: Optional[BaseException] = None
        self.timer: Any = None
        self._status = StepStatus.PENDING
        self._mode = Mode.QUIET
        self._run_id = 0
        self._task: Any = None

    # -- read-only identity -------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def number(self) -> int:
        return self._number

    @property
    def kind(self) -> StepKind:
        return self._kind

    @property
    def callback(self) -> Callable[..., Any]:
        return self._callback

    @property
    def status(self) -> StepStatus:
        return self._status

    @property
    def skipped(self) -> bool:
        return self.skip_requested

    def __repr__(self) -> str:
        return f"Step(number={self._number}, name={self._name!r}, status={self._status.value})"

    # -- public operations --------------------------------------------------

    def run(self, mode: Mode = Mode.QUIET) -> None:
        """Execute the callback unless a skip was requested."""
        self._mode = Mode.parse(mode)
        if self.skip_requested:
            self._mark_skipped()
            return

        logger.log(self._mode.log_level, "Executing %s", self._name)
        self.events.emit(QueueEvent.STEP_STARTED, self)
        self._transition(StepStatus.RUNNING)
        run_id = self._run_id

        if self._kind is StepKind.SYNC:
            try:
                self._callback()
            except Exception as exc:
                self._fail(exc, run_id)
                return
            self._finish(run_id)
            return

        ctx = StepContext(self, run_id)
        if self._kind is StepKind.DEFERRED:
            try:
                self._callback(ctx)
            except Exception as exc:
                self._fail(exc, run_id)
            return

        try:
            coro = self._callback(ctx)
            self._task = self._scheduler.spawn(coro, lambda fut: self._on_task_done(fut, run_id))
        except Exception as exc:
            self._fail(exc, run_id)

    def skip(self) -> bool:
        """Request that the callback never runs. Returns False (with a warning) if too late."""
        if self._status in _UNSKIPPABLE:
            logger.warning(
                "Cannot skip %s: step is already %s.", self._name, self._status.value,
            )
            return False
        self.skip_requested = True
        return True

    def abort(self) -> bool:
        """Skip a pending step right now, emitting its skip and completion notifications."""
        if not self.skip():
            return False
        if self._status is StepStatus.PENDING:
            self._mark_skipped()
        return True

    def clear_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    # -- queue hooks --------------------------------------------------------

    def _begin_run(self) -> None:
        """Return to ``pending`` for a new run; keeps ``skip_requested``."""
        self.clear_timer()
        self._run_id += 1
        self._status = StepStatus.PENDING
        self.error = None
        self._task = None

    def _reset(self) -> None:
        self._begin_run()
        self.skip_requested = False

    # -- internals ----------------------------------------------------------

    def _transition(self, new_status: StepStatus) -> None:
        if new_status not in VALID_TRANSITIONS[self._status]:
            raise StateError(self._status, new_status, self)
        self._status = new_status

    def _mark_skipped(self) -> None:
        self._transition(StepStatus.SKIPPED)
        logger.log(self._mode.log_level, "%s skipped", self._name)
        self.events.emit(QueueEvent.STEP_SKIPPED, self)
        self.events.emit(QueueEvent.STEP_COMPLETE, self)

    def _finish(self, run_id: int) -> None:
        if run_id != self._run_id:
            logger.debug("Ignoring stale completion for %s", self._name)
            return
        if StepStatus.COMPLETE not in VALID_TRANSITIONS[self._status]:
            logger.debug("Ignoring duplicate completion for %s (%s)", self._name, self._status.value)
            return
        self.clear_timer()
        self._transition(StepStatus.COMPLETE)
        logger.log(self._mode.log_level, "%s completed", self._name)
        self.events.emit(QueueEvent.STEP_COMPLETE, self)

    def _fail(self, error: BaseException, run_id: int) -> None:
        if run_id != self._run_id:
            return
        if StepStatus.FAILED not in VALID_TRANSITIONS[self._status]:
            logger.debug("Ignoring failure for %s (%s): %s", self._name, self._status.value, error)
            return
        self.clear_timer()
        self.error = error
        self._transition(StepStatus.FAILED)
        logger.error("%s failed: %s: %s", self._name, type(error).__name__, error)
        self.events.emit(QueueEvent.STEP_FAILED, self)
        self.events.emit(QueueEvent.STEP_COMPLETE, self)

    def _arm_timer(self, seconds: float, run_id: int) -> None:
        if run_id != self._run_id:
            return
        self.clear_timer()
        self.timer = self._scheduler.call_later(seconds, lambda: self._on_timeout(run_id))

    def _on_timeout(self, run_id: int) -> None:
        self.timer = None
        if run_id != self._run_id or self._status is not StepStatus.RUNNING:
            return
        self._transition(StepStatus.TIMEDOUT)
        logger.warning("%s timed out", self._name)
        self.events.emit(QueueEvent.STEP_TIMEOUT, self)

    def _on_task_done(self, fut: "asyncio.Future[Any]", run_id: int) -> None:
        self._task = None
        if fut.cancelled():
            self._fail(asyncio.CancelledError(f"{self._name} was cancelled"), run_id)
            return
        exc = fut.exception()
        if exc is not None:
            self._fail(exc, run_id)
            return
        self._finish(run_id)
