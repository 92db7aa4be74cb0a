# scheduler.py
from __future__ import annotations

import itertools
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Deque, Dict, List, Mapping, Optional, Set

from .aggregate import PipelineResult, aggregate
from .config import RunConfig
from .errors import ConditionReferenceError, DefinitionError
from .executor import StepExecutor
from .expr import interpolate, placeholders, references
from .model import (
    JobInstance,
    JobResult,
    JobStatus,
    MatrixBinding,
    PipelineDefinition,
    ServiceRequirement,
    StepSpec,
)
from .runner import JobRunner
from .services import ServiceManager, ServiceProvider
from .ui.console import get_console


# ----------------------------------------------------------------------
# Validation (definition time, before any side effect)
# ----------------------------------------------------------------------

def _text_refs(*texts: Optional[str]) -> Set[str]:
    out: Set[str] = set()
    for t in texts:
        out |= placeholders(t)
    return out


def _step_refs(step: StepSpec) -> Set[str]:
    refs = references(step.condition)
    refs |= _text_refs(step.name, step.command, step.cwd, *step.args)
    for k, v in step.env:
        refs |= _text_refs(k, v)
    return refs


def _service_refs(svc: ServiceRequirement) -> Set[str]:
    refs = _text_refs(svc.namespace, svc.credentials.user, svc.credentials.password)
    for _, v in svc.params:
        refs |= _text_refs(v)
    return refs


def validate(
    definition: PipelineDefinition,
    providers: Optional[Mapping[str, ServiceProvider]] = None,
) -> None:
    """
    Reject a definition before anything runs.

    Raises:
        ConditionReferenceError: a condition or ${{ matrix.x }} names an undeclared dimension
        DefinitionError: empty/duplicate matrix values, no steps, duplicate or unknown services
    """
    declared = definition.matrix.names
    if len(set(declared)) != len(declared):
        raise DefinitionError("duplicate matrix dimension names", details={"dimensions": declared})

    for dim, values in definition.matrix.dimensions:
        if not values:
            raise DefinitionError(f"matrix dimension '{dim}' has no values")
        if len(set(values)) != len(values):
            dupes = sorted({v for v in values if values.count(v) > 1})
            raise DefinitionError(f"matrix dimension '{dim}' has duplicate values: {dupes}")

    template = definition.job
    if not template.steps:
        raise DefinitionError(f"job '{template.name}' has no steps", job=template.name)

    for step in template.steps:
        missing = _step_refs(step) - set(declared)
        if missing:
            raise ConditionReferenceError(
                f"step '{step.name}' references undeclared matrix dimension(s): {sorted(missing)}",
                job=template.name,
                step=step.name,
                details={"declared": declared},
            )

    job_refs = _text_refs(template.name, template.runs_on)
    for k, v in template.env:
        job_refs |= _text_refs(k, v)
    missing = job_refs - set(declared)
    if missing:
        raise ConditionReferenceError(
            f"job '{template.name}' references undeclared matrix dimension(s): {sorted(missing)}",
            job=template.name,
            details={"declared": declared},
        )

    seen: Set[str] = set()
    for svc in template.services:
        if svc.name in seen:
            raise DefinitionError(f"duplicate service name '{svc.name}'", job=template.name)
        seen.add(svc.name)
        if providers is not None and svc.kind not in providers:
            raise DefinitionError(
                f"service '{svc.name}' has unknown kind '{svc.kind}'",
                job=template.name,
                details={"known": sorted(providers)},
            )
        missing = _service_refs(svc) - set(declared)
        if missing:
            raise ConditionReferenceError(
                f"service '{svc.name}' references undeclared matrix dimension(s): {sorted(missing)}",
                job=template.name,
                details={"declared": declared},
            )


# ----------------------------------------------------------------------
# Expansion
# ----------------------------------------------------------------------

def _bind_step(step: StepSpec, binding: MatrixBinding) -> StepSpec:
    return replace(
        step,
        name=interpolate(step.name, binding),
        command=interpolate(step.command, binding),
        args=tuple(interpolate(a, binding) for a in step.args),
        env=tuple((k, interpolate(v, binding)) for k, v in step.env),
        cwd=interpolate(step.cwd, binding),
    )


def _bind_service(svc: ServiceRequirement, binding: MatrixBinding) -> ServiceRequirement:
    return replace(
        svc,
        namespace=interpolate(svc.namespace, binding),
        credentials=replace(
            svc.credentials,
            user=interpolate(svc.credentials.user, binding),
            password=interpolate(svc.credentials.password, binding),
        ),
        params=tuple((k, interpolate(v, binding)) for k, v in svc.params),
    )


def bindings(definition: PipelineDefinition) -> List[MatrixBinding]:
    """Cross product in declaration order; the first dimension varies slowest."""
    names = definition.matrix.names
    value_lists = [values for _, values in definition.matrix.dimensions]
    return [MatrixBinding(tuple(zip(names, combo))) for combo in itertools.product(*value_lists)]


def expand(definition: PipelineDefinition) -> List[JobInstance]:
    """
    Expand the matrix into concrete job instances.

    The order is deterministic: two expansions of the same definition produce
    identically ordered instances, and `index` records that order.
    """
    template = definition.job
    jobs: List[JobInstance] = []
    for index, binding in enumerate(bindings(definition)):
        base = interpolate(template.name, binding)
        name = f"{base} ({binding.label})" if binding.items else base
        jobs.append(
            JobInstance(
                index=index,
                name=name,
                binding=binding,
                steps=tuple(_bind_step(s, binding) for s in template.steps),
                services=tuple(_bind_service(s, binding) for s in template.services),
                env={k: interpolate(v, binding) for k, v in template.env},
                runs_on=interpolate(template.runs_on, binding),
            )
        )
    return jobs


# ----------------------------------------------------------------------
# Dispatch
# ----------------------------------------------------------------------

class Scheduler:
    """
    Runs the job instances of one pipeline with bounded parallelism.

    Fail-fast is cooperative: after a failed or errored job is seen, no new
    job is launched, but jobs already running finish (and release their
    services) normally. `cancel()` is preemptive: in-flight jobs abort to
    errored, still tearing down their services.
    """

    def __init__(
        self,
        config: Optional[RunConfig] = None,
        *,
        services: Optional[ServiceManager] = None,
        executor: Optional[StepExecutor] = None,
    ):
        self.config = config or RunConfig()
        self.services = services or ServiceManager(
            startup_timeout=self.config.startup_timeout,
            probe_interval=self.config.probe_interval,
        )
        self.executor = executor or StepExecutor(
            output_limit=self.config.output_limit,
            default_timeout=self.config.step_timeout,
            repo_root=self.config.repo_root,
        )
        self._cancel = threading.Event()
        self.launched: List[int] = []

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        self._cancel.set()

    def validate(self, definition: PipelineDefinition) -> None:
        validate(definition, self.services.providers)

    def plan(self, definition: PipelineDefinition) -> List[JobInstance]:
        self.validate(definition)
        return expand(definition)

    def _run_one(self, job: JobInstance) -> JobResult:
        runner = JobRunner(
            self.services,
            self.executor,
            cancel=self._cancel,
            inherit_env=self.config.inherit_env,
        )
        return runner.run(job)

    def run(self, definition: PipelineDefinition, *, event: Optional[str] = None) -> PipelineResult:
        """
        Validate, expand, dispatch and aggregate.

        DefinitionError propagates before any job (or service) is started.
        """
        console = get_console()
        self.validate(definition)
        started = time.monotonic()

        if not definition.triggered_by(event):
            console.print_not_triggered(definition.name, str(event))
            return aggregate([], name=definition.name, event=event, triggered=False)

        jobs = expand(definition)
        fail_fast = definition.fail_fast if self.config.fail_fast is None else self.config.fail_fast
        max_workers = self.config.max_workers

        pending: Deque[JobInstance] = deque(jobs)
        in_flight: Dict[Future, JobInstance] = {}
        results: List[JobResult] = []
        stop_launching = False
        interrupted = False

        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            try:
                while pending or in_flight:
                    while (
                        pending
                        and len(in_flight) < max_workers
                        and not stop_launching
                        and not self._cancel.is_set()
                    ):
                        job = pending.popleft()
                        self.launched.append(job.index)
                        in_flight[pool.submit(self._run_one, job)] = job

                    if not in_flight:
                        break

                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                    for fut in done:
                        result = self._collect(fut, in_flight[fut])
                        results.append(result)
                        del in_flight[fut]
                        if fail_fast and result.status in (JobStatus.FAILED, JobStatus.ERRORED):
                            if not stop_launching and pending:
                                console.print_info(
                                    f"fail-fast: {result.name} {result.status.value}, "
                                    f"not launching {len(pending)} remaining job(s)"
                                )
                            stop_launching = True
            except KeyboardInterrupt:
                interrupted = True
                console.print_info("\nInterrupted, cancelling running jobs...")
                self.cancel()
                seen = {r.index for r in results}
                for fut, job in in_flight.items():
                    if job.index not in seen:
                        results.append(self._collect(fut, job))
                in_flight.clear()

        # every expanded job is reported, launched or not
        reported = {r.index for r in results}
        reason = "cancelled" if self._cancel.is_set() else "not launched (fail-fast)"
        for job in jobs:
            if job.index in reported:
                continue
            results.append(
                JobResult(
                    index=job.index,
                    name=job.name,
                    binding=job.binding,
                    status=JobStatus.NOT_RUN,
                    error=reason,
                    error_kind="cancelled" if self._cancel.is_set() else "fail_fast",
                )
            )

        result = aggregate(
            results,
            name=definition.name,
            event=event,
            duration=time.monotonic() - started,
        )
        result.cancelled = interrupted or self._cancel.is_set()
        return result

    @staticmethod
    def _collect(fut: Future, job: JobInstance) -> JobResult:
        try:
            return fut.result()
        except Exception as e:
            return JobResult(
                index=job.index,
                name=job.name,
                binding=job.binding,
                status=JobStatus.ERRORED,
                error=f"{type(e).__name__}: {e}",
                error_kind="infrastructure",
            )


def run_pipeline(
    definition: PipelineDefinition,
    config: Optional[RunConfig] = None,
    *,
    event: Optional[str] = None,
    providers: Optional[Mapping[str, ServiceProvider]] = None,
) -> PipelineResult:
    """Convenience entry point: one scheduler, one run."""
    config = config or RunConfig()
    services = ServiceManager(
        providers,
        startup_timeout=config.startup_timeout,
        probe_interval=config.probe_interval,
    )
    return Scheduler(config, services=services).run(definition, event=event)
