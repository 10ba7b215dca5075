"""
External command and test execution.

Every command runs through `CommandRunner` so timeouts, output capping,
and logging are centralized. Commands are split with shlex and never run
through a shell.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import IO, List, Optional, Sequence, Union

from .domain import TestRunSummary
from .errors import CommandError

LOG = logging.getLogger(__name__)

_TRUNCATED = "\n[output truncated]"
_CHUNK_SIZE = 65536
# Readers finish once the child exits unless a grandchild keeps the pipe open.
_READER_JOIN_TIMEOUT = 5.0


@dataclass
class CommandResult:
    """
    Captured outcome of one external command.

    A timed out command reports returncode -1.
    """

    command: str
    returncode: int
    stdout: str
    stderr: str
    duration: float = 0.0
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class CommandRunner:
    """
    Run commands synchronously with an explicit timeout.
    """

    def __init__(self, timeout: float = 300.0, max_output_bytes: int = 1_000_000) -> None:
        self.timeout = timeout
        self.max_output_bytes = max_output_bytes

    def run(
        self,
        command: Union[str, Sequence[str]],
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        args = shlex.split(command) if isinstance(command, str) else list(command)
        display = command if isinstance(command, str) else shlex.join(args)
        limit = timeout if timeout is not None else self.timeout
        if not args:
            raise CommandError("cannot run an empty command")

        LOG.debug("Running command: %s (cwd=%s, timeout=%ss)", display, cwd, limit)
        started = time.monotonic()
        try:
            process = subprocess.Popen(
                args,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            LOG.warning("Command could not be started: %s (%s)", display, exc)
            return CommandResult(
                command=display,
                returncode=-1,
                stdout="",
                stderr=f"failed to execute {args[0]}: {exc}",
                duration=time.monotonic() - started,
            )

        stdout = _CappedBuffer(self.max_output_bytes)
        stderr = _CappedBuffer(self.max_output_bytes)
        readers = [
            threading.Thread(target=stdout.drain, args=(process.stdout,), daemon=True),
            threading.Thread(target=stderr.drain, args=(process.stderr,), daemon=True),
        ]
        for reader in readers:
            reader.start()

        timed_out = False
        try:
            returncode = process.wait(timeout=limit)
        except subprocess.TimeoutExpired:
            timed_out = True
            process.kill()
            process.wait()
            returncode = -1
            LOG.warning("Command timed out after %ss: %s", limit, display)
        for reader in readers:
            reader.join(_READER_JOIN_TIMEOUT)

        error_text = stderr.text()
        if timed_out:
            error_text += f"\ncommand timed out after {limit}s"
        result = CommandResult(
            command=display,
            returncode=returncode,
            stdout=stdout.text(),
            stderr=error_text,
            duration=time.monotonic() - started,
            timed_out=timed_out,
        )
        if not result.success and not timed_out:
            LOG.debug("Command %s exited with %d: %s", display, result.returncode, result.stderr)
        return result


class _CappedBuffer:
    """
    Collects at most `limit` bytes from a pipe and discards the rest.

    The pipe is always read to EOF so the child never blocks on a full
    pipe once the cap is reached.
    """

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.chunks: List[bytes] = []
        self.size = 0
        self.discarded = 0

    def feed(self, chunk: bytes) -> None:
        room = self.limit - self.size
        if room > 0:
            kept = chunk[:room]
            self.chunks.append(kept)
            self.size += len(kept)
        self.discarded += max(0, len(chunk) - max(room, 0))

    def drain(self, pipe: IO[bytes]) -> None:
        with pipe:
            for chunk in iter(lambda: pipe.read(_CHUNK_SIZE), b""):
                self.feed(chunk)

    def text(self) -> str:
        data = b"".join(self.chunks)
        if not self.discarded:
            return data.decode("utf-8", errors="replace")
        # The cut may fall inside a multi-byte character.
        return data.decode("utf-8", errors="ignore") + _TRUNCATED


class TestRunner(ABC):
    """
    Abstract interface for running a workspace's test suite.
    """

    __test__ = False

    @abstractmethod
    def run(self, cwd: str) -> TestRunSummary:
        """
        Run the tests rooted at `cwd` and return pass/fail counts.

        Implementations raise CommandError when the suite could not be
        run at all.
        """


_PYTEST_COUNT = re.compile(r"(\d+) (passed|failed|errors?|skipped)")


class PytestRunner(TestRunner):
    """
    Run pytest in a subprocess and parse its terminal summary line.
    """

    def __init__(self, runner: Optional[CommandRunner] = None, args: Sequence[str] = ("-q",)) -> None:
        self.runner = runner or CommandRunner()
        self.args = list(args)

    def run(self, cwd: str) -> TestRunSummary:
        command: List[str] = [sys.executable, "-m", "pytest", *self.args]
        result = self.runner.run(command, cwd=cwd)
        if result.timed_out:
            raise CommandError(f"test run timed out: {result.command}")
        # Exit code 5 means no tests were collected.
        if result.returncode == 5:
            return TestRunSummary(passed=0, failed=0, total=0)
        if result.returncode not in (0, 1):
            raise CommandError(
                f"test run failed with exit code {result.returncode}: {result.stderr.strip()[:200]}"
            )
        return parse_pytest_summary(result.stdout)


def parse_pytest_summary(output: str) -> TestRunSummary:
    """
    Parse counts from the last pytest summary line in `output`.

    Errors count as failures. Skipped tests count towards the total only.
    """

    counts = {"passed": 0, "failed": 0, "errors": 0, "skipped": 0}
    for line in reversed(output.splitlines()):
        matches = _PYTEST_COUNT.findall(line)
        if not matches:
            continue
        for number, kind in matches:
            key = "errors" if kind.startswith("error") else kind
            counts[key] = int(number)
        break

    failed = counts["failed"] + counts["errors"]
    return TestRunSummary(
        passed=counts["passed"],
        failed=failed,
        total=counts["passed"] + failed + counts["skipped"],
    )
