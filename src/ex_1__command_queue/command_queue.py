#!/usr/bin/env python
"""command_queue.py

Queue-driven shell runner. Each command becomes one step; steps run
concurrently by default or one after another with --sequential.

Parallel:
  python -m ex_1__command_queue.command_queue "sleep 1" "echo hi"

Sequential, verbose, with a queue-wide deadline:
  python -m ex_1__command_queue.command_queue "make lint" "make test" --sequential --mode dev --timeout 60
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from shortbus.events import QueueEvent
from shortbus.queue import ExitCode, TaskQueue, exit_code_from
from shortbus.step import StepContext, StepKind

logger = logging.getLogger("command_queue")


# ---------------------------------------------------------------------------
# Step construction
# ---------------------------------------------------------------------------


def command_step(cmd: str, step_timeout: Optional[float] = None):
    """Build a coroutine step that runs *cmd* in a shell and fails on non-zero exit."""

    async def _run(ctx: StepContext) -> None:
        if step_timeout is not None:
            ctx.set_timeout(step_timeout)
        proc = await asyncio.create_subprocess_shell(
            cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        for line in stdout.decode(errors="replace").splitlines():
            logger.info("[%s] %s", ctx.name, line)
        if proc.returncode != 0:
            raise RuntimeError(
                f"exit={proc.returncode}: {stderr.decode(errors='replace').strip()[-400:]}"
            )

    return _run


def build_queue(
    commands: List[str],
    *,
    mode: Optional[str] = None,
    timeout: Optional[float] = None,
    step_timeout: Optional[float] = None,
) -> TaskQueue:
    tasks = TaskQueue(mode=mode, timeout=timeout)
    for cmd in commands:
        tasks.add(cmd, command_step(cmd, step_timeout), kind=StepKind.COROUTINE)

    tasks.on(QueueEvent.STEP_TIMEOUT, lambda step: logger.warning("%s is taking too long", step.name))
    tasks.on(QueueEvent.TIMEOUT, lambda log: logger.warning("queue timeout: %s", log))
    return tasks


def _summarize(tasks: TaskQueue) -> None:
    for step in tasks:
        logger.info("  #%d %s: %s", step.number, step.name, step.status.value.upper())


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="command_queue",
        description="Run shell commands through a task queue (parallel or sequential).",
    )
    parser.add_argument("commands", nargs="+", help="Shell commands, one step each")
    parser.add_argument("--sequential", action="store_true",
                        help="Run commands one at a time in the given order")
    parser.add_argument("--timeout", type=float, default=None,
                        help="Queue-wide deadline in seconds (reported, not enforced)")
    parser.add_argument("--step-timeout", type=float, default=None,
                        help="Per-command deadline in seconds (reported, not enforced)")
    parser.add_argument("--mode", default=None,
                        help="'dev' for verbose output (default: $SHORTBUS_ENV)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")

    async def _drive() -> TaskQueue:
        tasks = build_queue(
            args.commands,
            mode=args.mode,
            timeout=args.timeout,
            step_timeout=args.step_timeout,
        )
        await tasks.run_async(sequential=args.sequential)
        return tasks

    try:
        tasks = asyncio.run(_drive())
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return int(ExitCode.ABORTED)

    _summarize(tasks)
    code = exit_code_from(tasks)
    logger.info("Finished: %s", code.name)
    return int(code)


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
