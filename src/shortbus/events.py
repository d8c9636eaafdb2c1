"""Notification plumbing shared by steps and queues.

Notifications are a closed set (``QueueEvent``); subscribing to anything
else is a configuration error rather than a silently dead listener.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from shortbus.errors import ConfigurationError

Handler = Callable[..., Any]
EventName = Union["QueueEvent", str]


class QueueEvent(str, Enum):
    STEP_ADDED = "stepadded"
    STEP_REMOVED = "stepremoved"
    STEP_STARTED = "stepstarted"
    STEP_SKIPPED = "stepskipped"
    STEP_TIMEOUT = "steptimeout"
    STEP_COMPLETE = "stepcomplete"
    STEP_FAILED = "stepfailed"
    TIMEOUT = "timeout"
    COMPLETE = "complete"
    ABORTING = "aborting"
    ABORTED = "aborted"


def _coerce(event: EventName) -> QueueEvent:
    try:
        return QueueEvent(event)
    except ValueError:
        raise ConfigurationError(f"Unknown event: {event!r}") from None


class _Listener:
    __slots__ = ("handler", "once")

    def __init__(self, handler: Handler, once: bool) -> None:
        self.handler = handler
        self.once = once


class EventEmitter:
    """Minimal observer registry keyed by ``QueueEvent``.

    Handlers run synchronously in registration order. An exception raised
    by a handler propagates to whoever called ``emit``.
    """

    def __init__(self) -> None:
        self._listeners: Dict[QueueEvent, List[_Listener]] = {}

    def on(self, event: EventName, handler: Optional[Handler] = None) -> Any:
        """Subscribe *handler* to *event*. Without a handler, acts as a decorator."""
        if handler is None:
            return lambda fn: self._subscribe(event, fn, once=False)
        return self._subscribe(event, handler, once=False)

    def once(self, event: EventName, handler: Optional[Handler] = None) -> Any:
        """Like ``on`` but the handler is dropped after its first call."""
        if handler is None:
            return lambda fn: self._subscribe(event, fn, once=True)
        return self._subscribe(event, handler, once=True)

    def off(self, event: EventName, handler: Handler) -> bool:
        """Remove the first registration of *handler*. Returns True if one was found."""
        listeners = self._listeners.get(_coerce(event), [])
        for i, listener in enumerate(listeners):
            if listener.handler == handler:
                del listeners[i]
                return True
        return False

    def emit(self, event: EventName, *args: Any) -> int:
        """Call every handler for *event* with *args*; returns how many ran."""
        key = _coerce(event)
        listeners = self._listeners.get(key)
        if not listeners:
            return 0
        # Snapshot so handlers may subscribe/unsubscribe while we dispatch.
        snapshot = list(listeners)
        for listener in snapshot:
            if listener.once:
                try:
                    listeners.remove(listener)
                except ValueError:
                    continue
            listener.handler(*args)
        return len(snapshot)

    def listener_count(self, event: EventName) -> int:
        return len(self._listeners.get(_coerce(event), []))

    def _subscribe(self, event: EventName, handler: Handler, *, once: bool) -> Handler:
        if not callable(handler):
            raise ConfigurationError(f"Handler for {event!r} is not callable")
        self._listeners.setdefault(_coerce(event), []).append(_Listener(handler, once))
        return handler
