from .aggregate import PipelineResult, PipelineStatus, aggregate
from .config import RunConfig
from .dsl import build, cmd, job, matrix, on_pull_request, on_push, on_schedule, pipeline, rabbitmq, service, sh
from .errors import (
    CIError,
    ConditionReferenceError,
    DefinitionError,
    JobCancelled,
    ServiceAcquisitionFailure,
    ServiceStartupTimeout,
)
from .expr import evaluate, parse_condition
from .model import JobStatus, MatrixBinding, PipelineDefinition, StepStatus
from .scheduler import Scheduler, expand, run_pipeline, validate
from .workflow import load_pipeline

__all__ = [
    "pipeline", "job", "sh", "cmd", "service", "rabbitmq", "matrix", "build",
    "on_push", "on_pull_request", "on_schedule",
    "Scheduler", "expand", "validate", "run_pipeline", "aggregate", "load_pipeline",
    "evaluate", "parse_condition", "RunConfig",
    "PipelineDefinition", "PipelineResult", "PipelineStatus", "MatrixBinding", "JobStatus", "StepStatus",
    "CIError", "DefinitionError", "ConditionReferenceError", "ServiceStartupTimeout",
    "ServiceAcquisitionFailure", "JobCancelled",
]
