"""The standard stage graph shared by the example workflows.

load -> annotate -> qc -> normalize -> variance -> [integrate] -> reduce
-> cluster -> markers -> [classify]
"""

import functools
from pathlib import Path
from typing import Any, Dict, Optional, Union

import pandas as pd

from ..config.workflow import WorkflowConfig
from ..pipeline.executor import WorkflowExecutor
from ..pipeline.logger import PipelineLogger
from . import stages
from .report import WorkflowReport

PathLike = Union[str, Path]

# (stage_id, name, handler, depends_on)
STANDARD_STAGES = [
    ("load", "Load dataset", stages.load_stage, []),
    ("annotate", "Gene annotation", stages.annotate_stage, ["load"]),
    ("qc", "Quality control", stages.qc_stage, ["annotate"]),
    ("normalize", "Normalization", stages.normalize_stage, ["qc"]),
    ("variance", "Variance modelling", stages.variance_stage, ["normalize"]),
    ("integrate", "Batch integration", stages.integrate_stage, ["variance"]),
    ("reduce", "Dimensionality reduction", stages.reduce_stage, ["integrate"]),
    ("cluster", "Clustering", stages.cluster_stage, ["reduce"]),
    ("markers", "Marker detection", stages.markers_stage, ["cluster"]),
    ("classify", "Cell-type classification", stages.classify_stage, ["markers"]),
]

OPTIONAL_STAGES = ("integrate", "classify")


def build_standard_workflow(
    config: Optional[WorkflowConfig] = None,
    logger: Optional[PipelineLogger] = None,
    annotation_table: Optional[Union[pd.DataFrame, PathLike]] = None,
    annotation_key: Optional[str] = None,
    reference: Any = None,
    source_args: Optional[Dict[str, Any]] = None,
) -> WorkflowExecutor:
    """Build an executor holding the standard stage graph.

    Parameters
    ----------
    config : WorkflowConfig, optional
        Workflow configuration (default: ``WorkflowConfig()``)
    logger : PipelineLogger, optional
        Logger for stage events
    annotation_table : DataFrame or path, optional
        Gene annotation table for the annotate stage
    annotation_key : str, optional
        ``var`` column holding gene identifiers
    reference : ReferenceAtlas or AnnData, optional
        Reference for the classify stage
    source_args : dict, optional
        Extra arguments for the dataset source

    Returns
    -------
    WorkflowExecutor
        Executor with integrate/classify enabled per ``config``

    Raises
    ------
    ValueError
        If integration is requested without a batch column, or
        classification without a reference
    """
    cfg = (config or WorkflowConfig()).resolve()
    if cfg.integrate and cfg.batch_key is None:
        raise ValueError("Integration needs a batch_key")
    if cfg.classify and reference is None:
        raise ValueError("Classification needs a reference")

    executor_kwargs: Dict[str, Any] = {}
    if cfg.output_dir:
        executor_kwargs["state_file"] = str(Path(cfg.output_dir) / ".workflow_state.json")
        if cfg.checkpoint:
            executor_kwargs["checkpoint_dir"] = str(Path(cfg.output_dir) / "checkpoints")

    stage_args: Dict[str, Dict[str, Any]] = {
        "load": dict(source_args or {}),
        "annotate": {"table": annotation_table, "key": annotation_key},
        "classify": {"reference": reference},
    }
    enabled = {"integrate": cfg.integrate, "classify": cfg.classify}

    executor = WorkflowExecutor(logger=logger, name=cfg.name, **executor_kwargs)
    for stage_id, name, handler, depends_on in STANDARD_STAGES:
        executor.register_stage(
            stage_id,
            functools.partial(handler, config=cfg),
            depends_on=depends_on,
            name=name,
            args=stage_args.get(stage_id, {}),
            optional=stage_id in OPTIONAL_STAGES,
            enabled=enabled.get(stage_id, True),
        )
    return executor


def run_workflow(
    config: Optional[WorkflowConfig] = None,
    adata: Any = None,
    logger: Optional[PipelineLogger] = None,
    start_stage: Optional[str] = None,
    end_stage: Optional[str] = None,
    resume: bool = False,
    **build_kwargs: Any,
) -> WorkflowReport:
    """Build and run the standard workflow, returning its report.

    With ``config.output_dir`` set the report tables are written there.
    """
    cfg = config or WorkflowConfig()
    executor = build_standard_workflow(cfg, logger=logger, **build_kwargs)
    run = executor.run(adata=adata, start_stage=start_stage, end_stage=end_stage, resume=resume)
    report = WorkflowReport.from_run(run, name=cfg.name)
    if cfg.output_dir:
        written = report.write(cfg.output_dir)
        executor.logger.log_info(f"Wrote {len(written)} report files to {cfg.output_dir}")
    return report
