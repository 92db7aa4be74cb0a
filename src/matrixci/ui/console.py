"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional

from ..expr import describe
from ..model import JobResult, JobStatus, StepResult, StepStatus

if TYPE_CHECKING:
    from ..aggregate import PipelineResult
    from ..model import JobInstance


_STEP_MARKS = {
    StepStatus.SUCCEEDED: "ok",
    StepStatus.FAILED: "FAILED",
    StepStatus.SKIPPED: "skipped",
}


class Console:
    """Centralized console output formatting. Safe to call from job threads."""

    def __init__(self, debug: bool = False, quiet: bool = False, tail_lines: int = 20):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-step progress lines
            tail_lines: Lines of captured output shown for a failing step
        """
        self.debug = debug
        self.quiet = quiet
        self.tail_lines = tail_lines
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_run_started(
        self,
        pipeline: str,
        workflow: str,
        job_count: int,
        workers: int,
        fail_fast: bool,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Workflow: {workflow}",
            f"Jobs: {job_count}",
            f"Workers: {workers}",
            f"Fail-fast: {'on' if fail_fast else 'off'}",
            "",
        )

    def print_not_triggered(self, pipeline: str, event: str) -> None:
        self._out(f"Pipeline '{pipeline}' is not triggered by '{event}', nothing to run.")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        if not self.quiet:
            self._out(f"JOB STARTED: {name}")

    def print_step_result(self, job: str, result: StepResult) -> None:
        """Print one line per processed step."""
        if self.quiet:
            return
        mark = _STEP_MARKS[result.status]
        if result.status is StepStatus.SKIPPED and result.skip_reason is not None:
            mark = f"skipped ({result.skip_reason.value})"
        elif result.status is StepStatus.FAILED and result.failure_kind is not None:
            mark = f"FAILED ({result.failure_kind.value}, exit={result.exit_code})"
        self._out(f"[{job}] {result.name}: {mark}")

    def print_job_finished(self, result: JobResult) -> None:
        if self.quiet:
            return
        line = f"JOB {result.status.value.upper()}: {result.name} ({result.duration:.1f}s)"
        if result.error:
            line += f" - {result.error.splitlines()[0]}"
        self._out(line)

    def print_plan(self, jobs: List["JobInstance"]) -> None:
        """Print expanded matrix: one block per job, one line per step."""
        self._out(f"\nPLAN ({len(jobs)} job(s))")
        for job in jobs:
            lines = [f"  {job.name}"]
            for svc in job.services:
                lines.append(f"    service {svc.name} ({svc.kind})")
            for step in job.steps:
                gate = f" if {describe(step.condition)}" if step.condition is not None else ""
                always = " [always]" if step.always_run else ""
                lines.append(f"    - {step.name}{gate}{always}")
            self._out(*lines)

    def print_results(self, result: "PipelineResult") -> None:
        """Print final results summary, with attribution for every failure."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job in result.jobs:
            lines.append(f"  {job.name}: {job.status.value.upper()}")
        for job in result.jobs:
            if job.status in (JobStatus.SUCCEEDED, JobStatus.NOT_RUN):
                continue
            lines.append("")
            lines.append(f"{job.status.value.upper()}: {job.name}")
            if job.error:
                lines.append(f"Error: {job.error}")
            failure = job.first_failure
            if failure is not None:
                lines.append(f"First failing step: {failure.name}")
                if failure.exit_code is not None:
                    lines.append(f"Exit code: {failure.exit_code}")
                if failure.error:
                    lines.append(f"Error: {failure.error}")
                lines.extend(self._tail(failure))
        lines.append("")
        lines.append(f"PIPELINE {result.status.value.upper()}")
        self._out(*lines)

    def _tail(self, step: StepResult) -> List[str]:
        if not step.output:
            return []
        out = step.output.rstrip("\n").splitlines()
        shown = out if self.debug else out[-self.tail_lines:]
        header = "Output"
        if step.truncated or len(shown) < len(out):
            header += " (truncated)"
        return [f"{header}:"] + [f"  | {line}" for line in shown]

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
