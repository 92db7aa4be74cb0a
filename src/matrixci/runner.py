# runner.py
from __future__ import annotations

import os
import threading
import time
from contextlib import ExitStack
from typing import Dict, List, Optional

from .errors import CIError
from .executor import StepExecutor
from .model import (
    JobInstance,
    JobResult,
    JobState,
    JobStatus,
    SkipReason,
    StepResult,
    StepStatus,
)
from .services import ServiceManager
from .ui.console import get_console


def matrix_env(job: JobInstance) -> Dict[str, str]:
    """MATRIX_<DIM>=value for every dimension of the binding."""
    return {
        f"MATRIX_{dim.upper().replace('-', '_')}": value
        for dim, value in job.binding.items
    }


class JobRunner:
    """
    Executes one job instance.

    pending -> provisioning -> running -> completed | errored

    Services are acquired in declaration order on an ExitStack, so they are
    released in reverse order on every way out of `run`: normal completion,
    step failure, service failure, cancellation or an unexpected fault.
    """

    def __init__(
        self,
        services: ServiceManager,
        executor: StepExecutor,
        *,
        cancel: Optional[threading.Event] = None,
        inherit_env: bool = True,
    ):
        self.services = services
        self.executor = executor
        self.cancel = cancel
        self.inherit_env = inherit_env
        self.state = JobState.PENDING
        self.transitions: List[JobState] = [JobState.PENDING]

    def _enter(self, state: JobState) -> None:
        self.state = state
        self.transitions.append(state)

    def _base_env(self, job: JobInstance) -> Dict[str, str]:
        env: Dict[str, str] = dict(os.environ) if self.inherit_env else {}
        env.update(matrix_env(job))
        env.update(job.env)
        return env

    def run(self, job: JobInstance) -> JobResult:
        console = get_console()
        console.print_job_start(job.name)
        started = time.monotonic()
        results: List[StepResult] = []

        try:
            with ExitStack() as stack:
                service_env: Dict[str, str] = {}
                if job.services:
                    self._enter(JobState.PROVISIONING)
                    for requirement in job.services:
                        instance = self.services.acquire(requirement, job=job.name, cancel=self.cancel)
                        stack.callback(self.services.release, instance)
                        service_env.update(instance.env())

                self._enter(JobState.RUNNING)
                self._run_steps(job, self._base_env(job), service_env, results)

        except CIError as e:
            return self._errored(job, results, started, str(e).splitlines()[0], e.kind)
        except Exception as e:
            # executor or provider fault: infrastructure, not a test failure
            console.print_exception(e)
            return self._errored(job, results, started, f"{type(e).__name__}: {e}", "infrastructure")

        self._enter(JobState.COMPLETED)
        failed = any(r.status is StepStatus.FAILED for r in results)
        result = JobResult(
            index=job.index,
            name=job.name,
            binding=job.binding,
            status=JobStatus.FAILED if failed else JobStatus.SUCCEEDED,
            steps=results,
            duration=time.monotonic() - started,
        )
        console.print_job_finished(result)
        return result

    def _run_steps(
        self,
        job: JobInstance,
        env: Dict[str, str],
        service_env: Dict[str, str],
        results: List[StepResult],
    ) -> None:
        console = get_console()
        failed = False
        for step in job.steps:
            if failed and not step.always_run:
                result = StepResult.skipped(step.name, SkipReason.PRIOR_FAILURE)
            else:
                step_env = dict(env)
                step_env.update(step.env_dict)
                step_env.update(service_env)
                result = self.executor.run(step, job.binding, step_env, self.cancel)
            results.append(result)
            console.print_step_result(job.name, result)
            if result.status is StepStatus.FAILED:
                failed = True

    def _errored(
        self,
        job: JobInstance,
        results: List[StepResult],
        started: float,
        message: str,
        kind: str,
    ) -> JobResult:
        self._enter(JobState.ERRORED)
        # steps that never got a chance are kept in the report, marked aborted
        for step in job.steps[len(results):]:
            results.append(StepResult.skipped(step.name, SkipReason.ABORTED))
        result = JobResult(
            index=job.index,
            name=job.name,
            binding=job.binding,
            status=JobStatus.ERRORED,
            steps=results,
            error=message,
            error_kind=kind,
            duration=time.monotonic() - started,
        )
        get_console().print_job_finished(result)
        return result
