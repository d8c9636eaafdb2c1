"""TaskQueue: ordered steps run in parallel or strictly in sequence.

Scheduling is single-threaded and cooperative. "Parallel" means every step
is started without waiting for earlier ones to finish; the order in which
deferred or coroutine steps then complete is up to the host event loop.
"Sequential" means step N+1 starts only after step N reported completion
(or was skipped).

The queue tallies completion notifications and emits ``complete`` exactly
once per run. A step that never signals completion leaves the run open;
the queue-wide timeout only reports, it never preempts.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple, Union

from shortbus.config import Mode, default_mode
from shortbus.errors import ConfigurationError
from shortbus.events import EventEmitter, QueueEvent
from shortbus.scheduler import AsyncioScheduler, Scheduler
from shortbus.step import Step, StepKind, StepStatus

logger = logging.getLogger("shortbus")

NOT_STARTED = "NOT STARTED"

# Step notifications the queue forwards as-is; completion gets its own handler.
_FORWARDED = (
    QueueEvent.STEP_STARTED,
    QueueEvent.STEP_SKIPPED,
    QueueEvent.STEP_TIMEOUT,
    QueueEvent.STEP_FAILED,
)


# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

class ExitCode(IntEnum):
    OK = 0
    STEP_FAILED = 1
    STEP_TIMEOUT = 2
    ABORTED = 3


def exit_code_from(queue: "TaskQueue") -> ExitCode:
    """Map the step statuses of a finished queue to an ExitCode suitable for sys.exit().

    ``ABORTED`` reflects an abort requested during the last run. ``run()``
    clears the cancelled flag, so a queue aborted while idle and then run
    reports ``OK`` even though every step ended ``skipped``.
    """
    statuses = [s.status for s in queue]
    if any(s is StepStatus.FAILED for s in statuses):
        return ExitCode.STEP_FAILED
    if any(s is StepStatus.TIMEDOUT for s in statuses):
        return ExitCode.STEP_TIMEOUT
    if queue.cancelled:
        return ExitCode.ABORTED
    return ExitCode.OK


# ---------------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------------

@dataclass
class _RunContext:
    """State owned by a single call to ``run``; replaced on the next one."""
    steps: List[Step]
    sequential: bool = False
    completed: int = 0
    cancelled: bool = False
    finished: bool = False
    tallied: Set[int] = field(default_factory=set)
    cursor: int = 0
    current: Optional[Step] = None
    advancing: bool = False
    wake: bool = False
    timer: Any = None


# ---------------------------------------------------------------------------
# TaskQueue
# ---------------------------------------------------------------------------

class TaskQueue(EventEmitter):
    """Register named steps, then run them concurrently or in order.

    ::

        tasks = TaskQueue("dev")
        tasks.add(lambda: print("one"))
        tasks.add("fetch", lambda ctx: loop.call_later(0.5, ctx), kind=StepKind.DEFERRED)
        tasks.on("complete", lambda: print("all done"))
        tasks.run(sequential=True)

    Args:
        mode:      ``"dev..."`` for verbose logging, anything else for quiet.
                   ``None`` reads ``SHORTBUS_ENV``.
        timeout:   Queue-wide deadline in seconds (``None`` disables it).
        scheduler: Host timer backend; defaults to the running asyncio loop.
    """

    def __init__(
        self,
        mode: Union[Mode, str, None] = None,
        timeout: Optional[float] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        super().__init__()
        self._mode = Mode.parse(mode) if mode is not None else default_mode()
        self.timeout = timeout
        self.scheduler = scheduler or AsyncioScheduler()
        self._steps: List[Step] = []
        self._run: Optional[_RunContext] = None
        self._cancelled = False
        self._abort_pending = False
        self._subscriptions: Dict[int, List[Tuple[QueueEvent, Callable[..., Any]]]] = {}

    # -- read-only projections ----------------------------------------------

    @property
    def mode(self) -> Mode:
        return self._mode

    @mode.setter
    def mode(self, value: Union[Mode, str]) -> None:
        self._mode = Mode.parse(value)

    @property
    def steps(self) -> Tuple[Step, ...]:
        return tuple(self._steps)

    @property
    def list(self) -> List[Dict[str, Any]]:
        return [{"number": s.number, "name": s.name, "status": s.status} for s in self._steps]

    @property
    def processing(self) -> bool:
        return self._run is not None and not self._run.finished

    @property
    def sequential(self) -> bool:
        return self._run is not None and self._run.sequential

    @property
    def completed(self) -> int:
        return self._run.completed if self._run is not None else 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self) -> Iterator[Step]:
        return iter(list(self._steps))

    # -- registration -------------------------------------------------------

    def add(
        self,
        name: Union[str, Callable[..., Any], None] = None,
        callback: Optional[Callable[..., Any]] = None,
        *,
        kind: Optional[StepKind] = None,
    ) -> Optional[Step]:
        """Append a step. ``add(fn)`` auto-names it ``"Step N"``.

        Pass ``kind=StepKind.DEFERRED`` for callbacks that receive a
        ``StepContext`` and call ``ctx.done()`` themselves.
        """
        if self.processing:
            logger.warning("Cannot add a step while processing.")
            return None

        if callback is None and callable(name):
            callback, name = name, None
        if name is None:
            name = f"Step {len(self._steps) + 1}"
        elif not isinstance(name, str):
            raise ConfigurationError(f"Step name must be a string, got {type(name).__name__}.")

        if not callable(callback):
            raise ConfigurationError(
                f"No processing method defined for step {len(self._steps) + 1}."
            )

        number = (self._steps[-1].number if self._steps else 0) + 1
        step = Step(
            name=name,
            callback=callback,
            number=number,
            kind=kind,
            scheduler=self.scheduler,
        )
        self._attach(step)
        self._steps.append(step)
        logger.log(self._mode.log_level, "Added %s (#%d, %s)", step.name, step.number, step.kind.value)
        self.emit(QueueEvent.STEP_ADDED, step)
        return step

    def get_at(self, index: int) -> Optional[Step]:
        if not self._valid_index(index):
            logger.warning("Step index %r could not be found or does not exist.", index)
            return None
        return self._steps[index]

    def get(self, key: Union[str, int]) -> Optional[Step]:
        """Look a step up by name first, then by number.

        Returns None unless exactly one step matches. A ``str`` key never
        matches a number and an ``int`` key never matches a name, so
        ``get("2")`` and ``get(2)`` are distinct lookups.
        """
        by_name = [s for s in self._steps if s.name == key]
        if len(by_name) == 1:
            return by_name[0]
        if isinstance(key, bool) or not isinstance(key, int):
            return None
        by_number = [s for s in self._steps if s.number == key]
        if len(by_number) == 1:
            return by_number[0]
        return None

    def remove(self, key: Union[str, int]) -> Optional[Step]:
        """Remove and return the step ``get(key)`` would find."""
        if self.processing:
            logger.warning("Cannot remove a step while processing.")
            return None
        step = self.get(key)
        if step is None:
            return None
        self._steps.remove(step)
        self._detach(step)
        self.emit(QueueEvent.STEP_REMOVED, step)
        return step

    def remove_at(self, index: int) -> Optional[Step]:
        if self.processing:
            logger.warning("Cannot remove a step while processing.")
            return None
        if isinstance(index, bool) or not isinstance(index, int):
            logger.error("Failed to remove step: %r", index)
            return None
        if not self._valid_index(index):
            logger.error("Step index %d could not be found or does not exist.", index)
            return None
        step = self._steps.pop(index)
        self._detach(step)
        self.emit(QueueEvent.STEP_REMOVED, step)
        return step

    def reset(self) -> None:
        """Clear skip requests and step statuses so an aborted queue can run again."""
        if self.processing:
            logger.warning(
                "Cannot reset a running queue. Abort or wait for the process to complete "
                "before resetting."
            )
            return
        for step in self._steps:
            step._reset()
        self._cancelled = False
        if self._abort_pending:
            self.off(QueueEvent.COMPLETE, self._on_aborted)
            self._abort_pending = False

    # -- execution ----------------------------------------------------------

    def run(self, sequential: bool = False) -> None:
        """Start every step (parallel) or the first step of a chain (sequential)."""
        if self.processing:
            logger.warning(
                "Cannot start processing (already running). Please wait for this process "
                "to complete before calling run() again."
            )
            return

        if not self._steps:
            self.emit(QueueEvent.COMPLETE)
            return

        if self.timeout is not None:
            self.scheduler.ensure_ready()
        needs_tasks = any(
            s.kind is StepKind.COROUTINE and not s.skip_requested for s in self._steps
        )
        if needs_tasks:
            self.scheduler.ensure_ready(tasks=True)

        ctx = _RunContext(steps=list(self._steps), sequential=bool(sequential))
        self._run = ctx
        self._cancelled = False
        for step in ctx.steps:
            step._begin_run()

        if self.timeout is not None:
            ctx.timer = self.scheduler.call_later(self.timeout, self.on_timeout)

        logger.log(
            self._mode.log_level, "Processing %d step(s) %s",
            len(ctx.steps), "sequentially" if ctx.sequential else "in parallel",
        )

        if ctx.sequential:
            self._advance(ctx)
            return

        error: Optional[Exception] = None
        for step in ctx.steps:
            if self._run is not ctx or ctx.finished:
                break
            if step.status is not StepStatus.PENDING:
                continue
            try:
                step.run(self._mode)
            except Exception as exc:
                # A listener raised; start the remaining steps before surfacing it.
                if error is None:
                    error = exc
        if error is not None:
            raise error

    process = run

    async def run_async(self, sequential: bool = False) -> List[Dict[str, Any]]:
        """Run the queue and wait for ``complete``; returns the ``list`` projection."""
        loop = asyncio.get_running_loop()
        finished = loop.create_future()

        def _resolve() -> None:
            if not finished.done():
                finished.set_result(None)

        self.once(QueueEvent.COMPLETE, _resolve)
        try:
            self.run(sequential)
        except BaseException:
            self.off(QueueEvent.COMPLETE, _resolve)
            raise
        await finished
        return self.list

    def on_timeout(self) -> None:
        """Report the status of every step; does not stop anything in flight."""
        if not self.processing:
            return
        if self._run is not None:
            self._run.timer = None
        log = [
            (s.name, NOT_STARTED if s.status is StepStatus.PENDING else s.status.value)
            for s in self._steps
        ]
        logger.warning(
            "Queue timed out after %ss: %s",
            self.timeout, ", ".join(f"{name}={status}" for name, status in log),
        )
        self.emit(QueueEvent.TIMEOUT, log)

    def abort(self) -> None:
        """Skip every step that has not started and emit ``aborted`` after ``complete``."""
        self.emit(QueueEvent.ABORTING)
        self._cancelled = True
        ctx = self._run if self.processing else None
        if ctx is not None:
            ctx.cancelled = True

        if not self._abort_pending:
            self._abort_pending = True
            self.once(QueueEvent.COMPLETE, self._on_aborted)

        for step in list(self._steps):
            if ctx is not None:
                if step.status is StepStatus.PENDING:
                    step.abort()
                else:
                    step.skip()
                continue
            if step.status is not StepStatus.PENDING:
                # Left terminal by a finished run.
                step._begin_run()
            step.skip()

    cancel = abort

    # -- internals ----------------------------------------------------------

    def _valid_index(self, index: Any) -> bool:
        if isinstance(index, bool) or not isinstance(index, int):
            return False
        return 0 <= index < len(self._steps)

    def _attach(self, step: Step) -> None:
        subs: List[Tuple[QueueEvent, Callable[..., Any]]] = []
        for event in _FORWARDED:
            handler = (lambda ev: lambda s: self.emit(ev, s))(event)
            step.events.on(event, handler)
            subs.append((event, handler))
        step.events.on(QueueEvent.STEP_COMPLETE, self._on_step_complete)
        subs.append((QueueEvent.STEP_COMPLETE, self._on_step_complete))
        self._subscriptions[id(step)] = subs

    def _detach(self, step: Step) -> None:
        step.clear_timer()
        for event, handler in self._subscriptions.pop(id(step), []):
            step.events.off(event, handler)

    def _on_step_complete(self, step: Step) -> None:
        try:
            self.emit(QueueEvent.STEP_COMPLETE, step)
        finally:
            self._tally(step)

    def _tally(self, step: Step) -> None:
        ctx = self._run
        if ctx is None or ctx.finished or not any(s is step for s in ctx.steps):
            return

        if ctx.sequential:
            # Chain-driven: only the step currently in flight advances the sequence.
            if step is ctx.current:
                self._advance(ctx)
            return

        if step.number in ctx.tallied:
            return
        ctx.tallied.add(step.number)
        ctx.completed += 1
        logger.log(
            self._mode.log_level, "%s tallied (%d/%d)", step.name, ctx.completed, len(ctx.steps),
        )
        if ctx.completed == len(ctx.steps):
            self._finish(ctx)

    def _advance(self, ctx: _RunContext) -> None:
        # Steps that complete synchronously re-enter here from their own
        # completion notification; flag a wake-up and let the loop below
        # continue instead of recursing once per step.
        if ctx.advancing:
            ctx.wake = True
            return
        ctx.advancing = True
        error: Optional[Exception] = None
        try:
            while self._run is ctx and not ctx.finished:
                ctx.wake = False
                if ctx.cursor >= len(ctx.steps):
                    self._finish(ctx)
                    break
                step = ctx.steps[ctx.cursor]
                ctx.cursor += 1
                ctx.current = step
                if step.status is not StepStatus.PENDING:
                    # Already aborted: its notifications went out at abort time.
                    continue
                try:
                    step.run(self._mode)
                except Exception as exc:
                    if error is None:
                        error = exc
                if not ctx.wake:
                    break
        finally:
            ctx.advancing = False
        if error is not None:
            raise error

    def _finish(self, ctx: _RunContext) -> None:
        if ctx.finished:
            return
        ctx.finished = True
        ctx.current = None
        if ctx.timer is not None:
            ctx.timer.cancel()
            ctx.timer = None
        for step in ctx.steps:
            step.clear_timer()
        logger.log(self._mode.log_level, "All steps finished.")
        self.emit(QueueEvent.COMPLETE)

    def _on_aborted(self) -> None:
        self._abort_pending = False
        logger.log(self._mode.log_level, "Queue aborted.")
        self.emit(QueueEvent.ABORTED)
