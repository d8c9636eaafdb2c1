"""Queue configuration: diagnostic verbosity mode.

The mode only changes how chatty the queue is. Any value starting with
``dev`` (case-insensitive) selects verbose output; everything else is quiet::

    Mode.parse("Development")  # -> Mode.VERBOSE
    Mode.parse("staging")      # -> Mode.QUIET

When no mode is given the ``SHORTBUS_ENV`` environment variable is consulted,
falling back to ``production``.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from typing import Mapping, Optional, Union

ENV_VAR = "SHORTBUS_ENV"
DEFAULT_ENV = "production"


class Mode(str, Enum):
    VERBOSE = "dev"
    QUIET = "prod"

    @classmethod
    def parse(cls, value: Union["Mode", str, None]) -> "Mode":
        if isinstance(value, Mode):
            return value
        if value is None:
            return cls.QUIET
        if str(value).lower().startswith("dev"):
            return cls.VERBOSE
        return cls.QUIET

    @property
    def log_level(self) -> int:
        """Level used for lifecycle lines: INFO when verbose, DEBUG otherwise."""
        return logging.INFO if self is Mode.VERBOSE else logging.DEBUG


def default_mode(environ: Optional[Mapping[str, str]] = None) -> Mode:
    env = os.environ if environ is None else environ
    return Mode.parse(env.get(ENV_VAR) or DEFAULT_ENV)
