"""Lightweight in-process task queue.

Register steps on a ``TaskQueue`` and run them in parallel or in sequence,
with advisory timeouts, skipping, and queue-wide abort.

Modules: ``queue``, ``step``, ``events``, ``scheduler``, ``config``, ``errors``.
"""

from shortbus.config import Mode
from shortbus.errors import ConfigurationError, ShortbusError, StateError
from shortbus.events import EventEmitter, QueueEvent
from shortbus.queue import ExitCode, TaskQueue, exit_code_from
from shortbus.scheduler import AsyncioScheduler, ManualScheduler, Scheduler
from shortbus.step import Step, StepContext, StepKind, StepStatus

__all__ = [
    "AsyncioScheduler",
    "ConfigurationError",
    "EventEmitter",
    "ExitCode",
    "ManualScheduler",
    "Mode",
    "QueueEvent",
    "Scheduler",
    "ShortbusError",
    "StateError",
    "Step",
    "StepContext",
    "StepKind",
    "StepStatus",
    "TaskQueue",
    "exit_code_from",
]
