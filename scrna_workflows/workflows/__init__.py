"""Workflow assembly: stage handlers, the standard stage graph and the
two example analyses.

Example Usage
-------------
>>> from scrna_workflows.workflows import run_hsc_workflow, run_workflow
>>> from scrna_workflows.config import get_dataset_config
>>>
>>> report = run_hsc_workflow()
>>> report.tables["cluster_sizes"]
>>>
>>> cfg = get_dataset_config("synthetic").workflow_config()
>>> report = run_workflow(cfg)
"""

from .report import WorkflowReport
from .standard import (
    OPTIONAL_STAGES,
    STANDARD_STAGES,
    build_standard_workflow,
    run_workflow,
)
from .hsc import hsc_config, run_hsc_workflow
from .bone_marrow import bone_marrow_config, run_bone_marrow_workflow

__all__ = [
    "WorkflowReport",
    "OPTIONAL_STAGES",
    "STANDARD_STAGES",
    "build_standard_workflow",
    "run_workflow",
    "hsc_config",
    "run_hsc_workflow",
    "bone_marrow_config",
    "run_bone_marrow_workflow",
]
