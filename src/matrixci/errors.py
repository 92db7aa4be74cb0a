# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured engine error with enough context for:
      - clean CLI output
      - the JSON report
      - debugging without full tracebacks
    """
    message: str
    job: Optional[str] = None
    step: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    kind = "ci_error"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Definition-time errors (raised before any job runs)
# ----------------------------------------------------------------------

class DefinitionError(CIError):
    """Invalid pipeline definition: bad matrix, bad condition, unknown service kind."""
    kind = "definition_error"


class ConditionReferenceError(DefinitionError):
    """A condition or interpolation names a dimension the matrix does not declare."""
    kind = "reference_error"


# ----------------------------------------------------------------------
# Service errors (abort one job)
# ----------------------------------------------------------------------

class ServiceError(CIError):
    kind = "service_error"


class ServiceStartupTimeout(ServiceError):
    kind = "service_startup_timeout"


class ServiceAcquisitionFailure(ServiceError):
    kind = "service_acquisition_failure"


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------

class JobCancelled(CIError):
    kind = "cancelled"
