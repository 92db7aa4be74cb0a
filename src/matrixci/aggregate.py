# aggregate.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .model import JobResult, JobStatus, MatrixBinding


class PipelineStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PipelineResult:
    """All job results of a run, in canonical matrix order."""
    status: PipelineStatus
    jobs: List[JobResult] = field(default_factory=list)
    by_dimension: Dict[str, Dict[str, List[JobResult]]] = field(default_factory=dict)
    name: Optional[str] = None
    event: Optional[str] = None
    triggered: bool = True
    cancelled: bool = False
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status is PipelineStatus.SUCCEEDED

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def job(self, binding: MatrixBinding | Dict[str, str]) -> JobResult:
        """Look up the result of one matrix cell."""
        wanted = binding.as_dict() if isinstance(binding, MatrixBinding) else dict(binding)
        for j in self.jobs:
            if j.binding.as_dict() == wanted:
                return j
        raise KeyError(wanted)

    def failed_cells(self) -> List[MatrixBinding]:
        return [j.binding for j in self.jobs if j.status is not JobStatus.SUCCEEDED]

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in JobStatus}
        for j in self.jobs:
            out[j.status.value] += 1
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.name,
            "event": self.event,
            "triggered": self.triggered,
            "cancelled": self.cancelled,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "counts": self.counts(),
            "jobs": [j.to_dict() for j in self.jobs],
            "by_dimension": {
                dim: {
                    value: {
                        "jobs": [j.index for j in results],
                        "failed": [j.index for j in results if j.status is not JobStatus.SUCCEEDED],
                    }
                    for value, results in values.items()
                }
                for dim, values in self.by_dimension.items()
            },
        }


def aggregate(job_results: Iterable[JobResult], **meta: Any) -> PipelineResult:
    """
    Collect job results into a PipelineResult.

    Results may arrive in any order; they are re-sorted by their canonical
    expansion index. The pipeline succeeds only if every job succeeded.
    """
    jobs = sorted(job_results, key=lambda j: j.index)

    by_dimension: Dict[str, Dict[str, List[JobResult]]] = {}
    for j in jobs:
        for dim, value in j.binding.items:
            by_dimension.setdefault(dim, {}).setdefault(value, []).append(j)

    ok = all(j.status is JobStatus.SUCCEEDED for j in jobs)
    return PipelineResult(
        status=PipelineStatus.SUCCEEDED if ok else PipelineStatus.FAILED,
        jobs=jobs,
        by_dimension=by_dimension,
        **meta,
    )
