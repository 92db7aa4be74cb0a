# src/matrixci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .expr import Condition, parse_condition
from .model import (
    Credentials,
    JobTemplate,
    Matrix,
    PipelineDefinition,
    ServiceRequirement,
    StepSpec,
    Trigger,
    TriggerEvent,
)

When = Union[str, Condition, None]


def _env_pairs(env: Optional[Mapping[str, Any]]) -> Tuple[Tuple[str, str], ...]:
    # force values to str for env compatibility
    return tuple((k, str(v)) for k, v in (env or {}).items())


def _gate(when: When, always: bool) -> Tuple[Optional[Condition], bool]:
    """`when="always()"` is the workflow spelling of always_run=True."""
    if isinstance(when, str):
        text = when.strip()
        if text.startswith("${{") and text.endswith("}}"):
            text = text[3:-2].strip()
        if text == "always()":
            return None, True
        return parse_condition(text), always
    return when, always


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    when: When = None,
    always: bool = False,
    env: Optional[Mapping[str, Any]] = None,
    cwd: str | None = None,
    timeout: float | None = None,
) -> StepSpec:
    """Create a shell step."""
    condition, always_run = _gate(when, always)
    return StepSpec(
        name=name,
        command=cmd,
        shell=True,
        condition=condition,
        always_run=always_run,
        env=_env_pairs(env),
        cwd=cwd,
        timeout=timeout,
    )


def cmd(
    name: str,
    program: str,
    *args: str,
    when: When = None,
    always: bool = False,
    env: Optional[Mapping[str, Any]] = None,
    cwd: str | None = None,
    timeout: float | None = None,
) -> StepSpec:
    """Create a step that executes `program` directly with `args` (no shell)."""
    condition, always_run = _gate(when, always)
    return StepSpec(
        name=name,
        command=program,
        args=tuple(str(a) for a in args),
        shell=False,
        condition=condition,
        always_run=always_run,
        env=_env_pairs(env),
        cwd=cwd,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------

def service(
    name: str,
    kind: str,
    *,
    user: str = "guest",
    password: str | None = None,
    namespace: str = "/",
    startup_timeout: float | None = None,
    **params: Any,
) -> ServiceRequirement:
    """
    Declare an ephemeral service.

    Extra keyword params are passed to the provider, e.g.
    service("db", "container", image="postgres:16", container_port=5432).
    Container environment goes in as env={"POSTGRES_PASSWORD": "x"}.
    """
    env = params.pop("env", None) or {}
    pairs = [(k, str(v)) for k, v in params.items()]
    pairs.extend((f"env.{k}", str(v)) for k, v in env.items())
    return ServiceRequirement(
        name=name,
        kind=kind,
        credentials=Credentials(user=user, password=password),
        namespace=namespace,
        params=tuple(pairs),
        startup_timeout=startup_timeout,
    )


def rabbitmq(
    name: str = "rabbitmq",
    *,
    user: str = "guest",
    password: str | None = "guest",
    vhost: str = "/",
    startup_timeout: float | None = None,
) -> ServiceRequirement:
    """RabbitMQ broker; steps see RABBITMQ_URL, RABBITMQ_PORT, ..."""
    return service(
        name,
        "rabbitmq",
        user=user,
        password=password,
        namespace=vhost,
        startup_timeout=startup_timeout,
    )


# ---------------------------------------------------------------------
# Job template
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: StepSpec,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[StepSpec]] = None,  # allow: job("x", steps_list=[...])
    services: Optional[Sequence[ServiceRequirement]] = None,
    env: Optional[Mapping[str, Any]] = None,
    runs_on: str | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobTemplate:
    steps_final: List[StepSpec] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return JobTemplate(
        name=name,
        steps=tuple(steps_final),
        services=tuple(services or ()),
        env=_env_pairs(env),
        runs_on=runs_on,
    )


class JobBuilder:
    """Fluent alternative to job(): build("test").define_step(...).build()"""

    def __init__(self, name: str):
        self.name = name
        self._steps: list[StepSpec] = []
        self._services: list[ServiceRequirement] = []
        self._env: dict[str, str] = {}
        self._runs_on: Optional[str] = None

    def define_step(self, name: str, run: str, *, when: When = None, always: bool = False, cwd: str | None = None):
        self._steps.append(sh(name, run, when=when, always=always, cwd=cwd))
        return self

    def define_service(self, requirement: ServiceRequirement):
        self._services.append(requirement)
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def build(self) -> JobTemplate:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            steps_list=self._steps,
            services=self._services,
            env=self._env,
            runs_on=self._runs_on,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix + triggers
# ---------------------------------------------------------------------

def matrix(dims: Optional[Mapping[str, Iterable[Any]]] = None, **kw: Iterable[Any]) -> Matrix:
    """
    Ordered matrix. Dimension order is the order given here.

        matrix(os=["ubuntu-latest"], rust=["nightly", "beta", "stable"])
    """
    merged: Dict[str, Iterable[Any]] = dict(dims or {})
    merged.update(kw)
    return Matrix.of(merged)


def on_push(*branches: str) -> Trigger:
    return Trigger(TriggerEvent.PUSH, branches=tuple(branches))


def on_pull_request(*branches: str) -> Trigger:
    return Trigger(TriggerEvent.PULL_REQUEST, branches=tuple(branches))


def on_schedule(cron: str) -> Trigger:
    return Trigger(TriggerEvent.SCHEDULE, cron=cron)


# ---------------------------------------------------------------------
# Pipeline (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    job_template: JobTemplate,
    *,
    matrix: Matrix | Mapping[str, Iterable[Any]] | None = None,
    on: Sequence[Trigger] = (),
    fail_fast: bool = True,
) -> PipelineDefinition:
    """
    Workflow definition helper.

    Users can write:
        from matrixci import pipeline, job, sh, matrix, on_push

        def workflow():
            return pipeline(
                "build-and-test",
                job("build", sh(...), sh(...)),
                matrix=matrix(rust=["stable", "nightly"]),
                on=[on_push()],
            )
    """
    if matrix is None:
        m = Matrix()
    elif isinstance(matrix, Matrix):
        m = matrix
    else:
        m = Matrix.of(dict(matrix))
    return PipelineDefinition(
        name=name,
        job=job_template,
        matrix=m,
        triggers=tuple(on),
        fail_fast=fail_fast,
    )
