# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Mapping, Optional, Tuple

from .errors import DefinitionError

if TYPE_CHECKING:
    from .expr import Condition


# ----------------------------------------------------------------------
# Definition side (immutable input)
# ----------------------------------------------------------------------

class TriggerEvent(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"
    MANUAL = "manual"


@dataclass(frozen=True)
class Trigger:
    """An event that starts a run (push, pull request, cron schedule)."""
    event: TriggerEvent
    cron: Optional[str] = None
    branches: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Matrix:
    """
    Ordered set of named dimensions, each an ordered tuple of values.

    Order matters: it defines the canonical enumeration order of job instances.
    """
    dimensions: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()

    @classmethod
    def of(cls, dims: Mapping[str, Any] | None = None, **kw: Any) -> "Matrix":
        merged: Dict[str, Any] = dict(dims or {})
        merged.update(kw)
        for name, values in merged.items():
            if isinstance(values, (str, bytes)):
                raise DefinitionError(
                    f"matrix dimension '{name}' needs a list of values, got the string {values!r}",
                    details={"dimension": name},
                )
        return cls(tuple((name, tuple(str(v) for v in values)) for name, values in merged.items()))

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self.dimensions]

    def values(self, name: str) -> Tuple[str, ...]:
        for dim, values in self.dimensions:
            if dim == name:
                return values
        raise KeyError(name)

    @property
    def size(self) -> int:
        n = 1
        for _, values in self.dimensions:
            n *= len(values)
        return n


@dataclass(frozen=True)
class StepSpec:
    """
    A single command inside a job.

    `condition=None` means unconditional. `shell=True` runs `command` through
    the shell (args are quoted and appended); otherwise `[command, *args]` is
    executed directly.
    """
    name: str
    command: str
    args: Tuple[str, ...] = ()
    shell: bool = True
    condition: Optional["Condition"] = None
    always_run: bool = False
    env: Tuple[Tuple[str, str], ...] = ()
    cwd: Optional[str] = None
    timeout: Optional[float] = None

    @property
    def env_dict(self) -> Dict[str, str]:
        return dict(self.env)


@dataclass(frozen=True)
class Credentials:
    user: str = "guest"
    password: Optional[str] = None  # None -> generated per instance


@dataclass(frozen=True)
class ServiceRequirement:
    """A named ephemeral dependency and its startup parameters."""
    name: str
    kind: str
    credentials: Credentials = field(default_factory=Credentials)
    namespace: str = "/"
    params: Tuple[Tuple[str, str], ...] = ()
    startup_timeout: Optional[float] = None  # None -> RunConfig.startup_timeout

    @property
    def params_dict(self) -> Dict[str, str]:
        return dict(self.params)


@dataclass(frozen=True)
class JobTemplate:
    name: str
    steps: Tuple[StepSpec, ...]
    services: Tuple[ServiceRequirement, ...] = ()
    env: Tuple[Tuple[str, str], ...] = ()
    runs_on: Optional[str] = None


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    job: JobTemplate
    matrix: Matrix = field(default_factory=Matrix)
    triggers: Tuple[Trigger, ...] = ()
    fail_fast: bool = True

    def triggered_by(self, event: str | TriggerEvent | None) -> bool:
        """No event (direct invocation) always runs; otherwise the event must be declared."""
        if event is None:
            return True
        event = TriggerEvent(event)
        if event is TriggerEvent.MANUAL:
            return True
        return any(t.event is event for t in self.triggers)


# ----------------------------------------------------------------------
# Expansion side
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class MatrixBinding:
    """One concrete value per dimension, in dimension declaration order."""
    items: Tuple[Tuple[str, str], ...] = ()

    def __getitem__(self, name: str) -> str:
        for dim, value in self.items:
            if dim == name:
                return value
        raise KeyError(name)

    def __contains__(self, name: object) -> bool:
        return any(dim == name for dim, _ in self.items)

    def __iter__(self) -> Iterator[str]:
        return (dim for dim, _ in self.items)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self[name] if name in self else default

    def as_dict(self) -> Dict[str, str]:
        return dict(self.items)

    @property
    def label(self) -> str:
        return ", ".join(f"{k}={v}" for k, v in self.items)


@dataclass(frozen=True, eq=False)
class JobInstance:
    """One fully-bound matrix cell. Steps and services are already interpolated."""
    index: int
    name: str
    binding: MatrixBinding
    steps: Tuple[StepSpec, ...]
    services: Tuple[ServiceRequirement, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    runs_on: Optional[str] = None


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    CONDITION = "condition"
    PRIOR_FAILURE = "prior_failure"
    ABORTED = "aborted"


class FailureKind(str, Enum):
    NON_ZERO_EXIT = "non_zero_exit"    # command ran and reported failure
    LAUNCH_FAILURE = "launch_failure"  # command could not be spawned
    TIMEOUT = "timeout"


class JobStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ERRORED = "errored"
    NOT_RUN = "not_run"


class JobState(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    COMPLETED = "completed"
    ERRORED = "errored"


@dataclass
class StepResult:
    name: str
    status: StepStatus
    exit_code: Optional[int] = None
    output: str = ""
    truncated: bool = False
    skip_reason: Optional[SkipReason] = None
    failure_kind: Optional[FailureKind] = None
    error: Optional[str] = None
    duration: float = 0.0

    @classmethod
    def skipped(cls, name: str, reason: SkipReason) -> "StepResult":
        return cls(name=name, status=StepStatus.SKIPPED, skip_reason=reason)

    @property
    def retryable(self) -> bool:
        # Only infrastructure failures are candidates for a retry policy.
        return self.failure_kind is FailureKind.LAUNCH_FAILURE

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
        }
        if self.skip_reason is not None:
            d["skip_reason"] = self.skip_reason.value
        if self.failure_kind is not None:
            d["failure_kind"] = self.failure_kind.value
            d["retryable"] = self.retryable
        if self.error:
            d["error"] = self.error
        if self.output:
            d["output"] = self.output
        if self.truncated:
            d["truncated"] = True
        return d


@dataclass
class JobResult:
    index: int
    name: str
    binding: MatrixBinding
    status: JobStatus
    steps: List[StepResult] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    duration: float = 0.0

    @property
    def first_failure(self) -> Optional[StepResult]:
        for r in self.steps:
            if r.status is StepStatus.FAILED:
                return r
        return None

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "index": self.index,
            "name": self.name,
            "matrix": self.binding.as_dict(),
            "status": self.status.value,
            "duration": round(self.duration, 3),
            "steps": [s.to_dict() for s in self.steps],
        }
        if self.error:
            d["error"] = self.error
            d["error_kind"] = self.error_kind
        failure = self.first_failure
        if failure is not None:
            d["first_failure"] = {
                "step": failure.name,
                "failure_kind": failure.failure_kind.value if failure.failure_kind else None,
                "exit_code": failure.exit_code,
                "output": failure.output,
            }
        return d
