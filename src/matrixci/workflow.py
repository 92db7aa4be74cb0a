# workflow.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import List

from .errors import DefinitionError
from .model import PipelineDefinition

DEFAULT_WORKFLOW = "matrixci_workflow.py"


def find_workflow_files(directory: str | Path = ".") -> List[Path]:
    """matrixci_workflow.py first, then any other *_workflow.py, sorted."""
    current_dir = Path(directory)
    workflow_files = []

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in sorted(current_dir.glob("*_workflow.py")):
        if path != default_workflow:
            workflow_files.append(path)

    return workflow_files


def load_pipeline(path: str | Path) -> PipelineDefinition:
    """
    Load a pipeline definition from a python file path.

    The file must define either:
      - workflow() -> PipelineDefinition
      - PIPELINE = PipelineDefinition(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"matrixci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    definition = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        definition = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        definition = globals_dict["PIPELINE"]

    if not isinstance(definition, PipelineDefinition):
        raise DefinitionError(
            "Workflow must return/define a PipelineDefinition. "
            "Define workflow() -> PipelineDefinition or PIPELINE = pipeline(...).",
            details={"path": str(wf_path)},
        )
    return definition
