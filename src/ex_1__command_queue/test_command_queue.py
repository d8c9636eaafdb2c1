"""End-to-end tests for the command_queue CLI using real subprocesses."""

from __future__ import annotations

import sys
import unittest

from command_queue import build_queue, main
from shortbus.queue import ExitCode
from shortbus.step import StepKind, StepStatus

PY = f'"{sys.executable}"'


def py(code: str) -> str:
    return f'{PY} -c "{code}"'


class TestBuildQueue(unittest.TestCase):
    def test_one_coroutine_step_per_command(self):
        tasks = build_queue(["echo a", "echo b"], mode="dev")
        self.assertEqual([s.name for s in tasks], ["echo a", "echo b"])
        self.assertTrue(all(s.kind is StepKind.COROUTINE for s in tasks))
        self.assertTrue(all(s.status is StepStatus.PENDING for s in tasks))


class TestMain(unittest.TestCase):
    def test_all_commands_succeed(self):
        code = main([py("print(1)"), py("print(2)")])
        self.assertEqual(code, ExitCode.OK)

    def test_failing_command_sets_exit_code(self):
        with self.assertLogs("shortbus", level="ERROR"):
            code = main([py("pass"), py("import sys; sys.exit(3)")])
        self.assertEqual(code, ExitCode.STEP_FAILED)

    def test_sequential_runs_every_command(self):
        with self.assertLogs("command_queue", level="INFO") as cm:
            code = main(["--sequential", py("print('first')"), py("print('second')")])
        self.assertEqual(code, ExitCode.OK)
        printed = [line.rsplit("] ", 1)[1] for line in cm.output if line.endswith(("] first", "] second"))]
        self.assertEqual(printed, ["first", "second"])

    def test_step_timeout_is_reported_not_enforced(self):
        with self.assertLogs("command_queue", level="WARNING") as cm:
            code = main([
                "--step-timeout", "0.01",
                py("import time; time.sleep(0.3)"),
            ])
        self.assertIn("taking too long", " ".join(cm.output))
        self.assertEqual(code, ExitCode.OK)


if __name__ == "__main__":
    unittest.main()
