# executor.py
from __future__ import annotations

import os
import shlex
import signal
import subprocess
import threading
import time
from collections import deque
from pathlib import Path
from typing import Deque, Dict, List, Optional, Union

from .errors import JobCancelled
from .expr import evaluate
from .model import FailureKind, MatrixBinding, SkipReason, StepResult, StepSpec, StepStatus

# Exit codes POSIX shells use when the command itself could not be started.
SHELL_NOT_EXECUTABLE = 126
SHELL_NOT_FOUND = 127

TOOL_HINTS = {
    "cargo": "Install a Rust toolchain (rustup) or fix PATH.",
    "rustup": "Install rustup from https://rustup.rs or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "pytest": "Install pytest (e.g., pip install pytest).",
}


# ----------------------------------------------------------------------
# Bounded output capture
# ----------------------------------------------------------------------

class OutputBuffer:
    """
    Keeps the last `limit` bytes written to it.

    Older bytes are dropped once the limit is exceeded and `truncated` is set,
    so a process spewing unbounded output can never exhaust memory.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self.truncated = False
        self.total = 0
        self._chunks: Deque[bytes] = deque()
        self._size = 0

    def write(self, data: bytes) -> None:
        if not data:
            return
        self.total += len(data)
        self._chunks.append(data)
        self._size += len(data)
        while self._size > self.limit:
            self.truncated = True
            head = self._chunks[0]
            excess = self._size - self.limit
            if len(head) <= excess:
                self._chunks.popleft()
                self._size -= len(head)
            else:
                self._chunks[0] = head[excess:]
                self._size -= excess

    def getvalue(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


def _pump(stream, buf: OutputBuffer) -> None:
    # read1 returns whatever is available so interleaving is preserved
    while True:
        chunk = stream.read1(65536)
        if not chunk:
            break
        buf.write(chunk)
    stream.close()


def _kill(proc: subprocess.Popen) -> None:
    # steps run in their own session, so the whole process group goes
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


def render_command(step: StepSpec) -> Union[str, List[str]]:
    """Shell steps become one string; argv steps stay a list."""
    if step.shell:
        if step.args:
            return f"{step.command} {shlex.join(step.args)}"
        return step.command
    return [step.command, *step.args]


# ----------------------------------------------------------------------
# Executor
# ----------------------------------------------------------------------

class StepExecutor:
    """Runs one step: condition check, spawn, bounded capture, classification."""

    def __init__(
        self,
        *,
        output_limit: int = 64 * 1024,
        default_timeout: Optional[float] = None,
        repo_root: str | Path = ".",
        poll_interval: float = 0.05,
        drain_timeout: float = 2.0,
    ):
        self.output_limit = output_limit
        self.default_timeout = default_timeout
        self.repo_root = Path(repo_root)
        self.poll_interval = poll_interval
        self.drain_timeout = drain_timeout

    def run(
        self,
        step: StepSpec,
        binding: MatrixBinding,
        env: Dict[str, str],
        cancel: Optional[threading.Event] = None,
    ) -> StepResult:
        if not evaluate(step.condition, binding):
            return StepResult.skipped(step.name, SkipReason.CONDITION)

        if cancel is not None and cancel.is_set():
            raise JobCancelled("run cancelled before step started", step=step.name)

        cmd = render_command(step)
        cwd = (self.repo_root / (step.cwd or ".")).resolve()
        started = time.monotonic()

        if not cwd.is_dir():
            return self._launch_failure(step, f"working directory not found: {cwd}", started)

        try:
            proc = subprocess.Popen(
                cmd,
                shell=step.shell,
                cwd=str(cwd),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,  # one stream keeps stdout/stderr ordering
                start_new_session=hasattr(os, "killpg"),
            )
        except OSError as e:
            # FileNotFoundError, PermissionError, ...: the command never ran
            return self._launch_failure(step, self._explain(step, e), started)

        buf = OutputBuffer(self.output_limit)
        reader = threading.Thread(target=_pump, args=(proc.stdout, buf), daemon=True)
        reader.start()

        timeout = step.timeout if step.timeout is not None else self.default_timeout
        deadline = started + timeout if timeout is not None else None
        timed_out = False

        while True:
            try:
                proc.wait(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel is not None and cancel.is_set():
                _kill(proc)
                proc.wait()
                reader.join(self.drain_timeout)
                raise JobCancelled("run cancelled while step was running", step=step.name)
            if deadline is not None and time.monotonic() >= deadline:
                timed_out = True
                _kill(proc)
                proc.wait()
                break

        reader.join(self.drain_timeout)
        if reader.is_alive():
            # a leftover child still holds the pipe open
            _kill(proc)
            reader.join(self.drain_timeout)

        duration = time.monotonic() - started
        code = proc.returncode

        if timed_out:
            return StepResult(
                name=step.name,
                status=StepStatus.FAILED,
                exit_code=code,
                output=buf.getvalue(),
                truncated=buf.truncated,
                failure_kind=FailureKind.TIMEOUT,
                error=f"step exceeded timeout of {timeout}s",
                duration=duration,
            )

        if code == 0:
            return StepResult(
                name=step.name,
                status=StepStatus.SUCCEEDED,
                exit_code=0,
                output=buf.getvalue(),
                truncated=buf.truncated,
                duration=duration,
            )

        kind = FailureKind.NON_ZERO_EXIT
        if step.shell and code in (SHELL_NOT_EXECUTABLE, SHELL_NOT_FOUND):
            kind = FailureKind.LAUNCH_FAILURE

        return StepResult(
            name=step.name,
            status=StepStatus.FAILED,
            exit_code=code,
            output=buf.getvalue(),
            truncated=buf.truncated,
            failure_kind=kind,
            duration=duration,
        )

    def _launch_failure(self, step: StepSpec, message: str, started: float) -> StepResult:
        return StepResult(
            name=step.name,
            status=StepStatus.FAILED,
            failure_kind=FailureKind.LAUNCH_FAILURE,
            error=message,
            duration=time.monotonic() - started,
        )

    @staticmethod
    def _explain(step: StepSpec, exc: OSError) -> str:
        tool = step.command.split()[0] if step.command else ""
        msg = f"could not launch '{tool}': {exc.strerror or exc}"
        hint = TOOL_HINTS.get(Path(tool).name)
        if hint:
            msg += f" (hint: {hint})"
        return msg
