"""Error types for the task queue.

Only configuration problems are raised to the caller. State problems
(mutating a running queue, skipping a finished step) are logged and the
operation degrades to a no-op; ``StateError`` is reserved for illegal
status transitions inside the step state machine.
"""

from __future__ import annotations

from typing import Any, Optional


class ShortbusError(Exception):
    """Base exception for the task queue."""


class ConfigurationError(ShortbusError):
    """Invalid registration or setup: missing callback, bad name, unusable scheduler."""


class StateError(ShortbusError):
    """Raised when a step status transition is not allowed by the state machine."""

    def __init__(self, from_status: Any, to_status: Any, step: Optional[Any] = None) -> None:
        self.from_status = from_status
        self.to_status = to_status
        self.step = step
        label = f" ({step.name!r})" if step is not None else ""
        super().__init__(
            f"Invalid step transition{label}: '{_value(from_status)}' -> '{_value(to_status)}'"
        )


def _value(status: Any) -> str:
    return str(getattr(status, "value", status))
