"""Mouse haematopoietic stem cell workflow.

Plate-based data: deconvolution size factors, an empirical mean-variance
trend (blocked on plate when a plate column is present), the top 10% of
genes by biological variance, PCA with the denoising rank choice, t-SNE,
graph-based clustering and markers blocked on plate.
"""

import logging
from typing import Any, Dict, Optional

from ..config.datasets import get_dataset_config
from ..config.workflow import WorkflowConfig
from ..pipeline.logger import PipelineLogger
from .report import WorkflowReport
from .standard import run_workflow

log = logging.getLogger(__name__)

DATASET = "nestorowa_hsc"


def hsc_config(
    config: Optional[WorkflowConfig] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> WorkflowConfig:
    """Workflow configuration of the HSC analysis."""
    return get_dataset_config(DATASET).workflow_config(base=config, overrides=overrides)


def run_hsc_workflow(
    adata: Any = None,
    config: Optional[WorkflowConfig] = None,
    overrides: Optional[Dict[str, Any]] = None,
    logger: Optional[PipelineLogger] = None,
    annotation_table: Any = None,
    **source_args: Any,
) -> WorkflowReport:
    """Run the HSC workflow.

    Parameters
    ----------
    adata : AnnData, optional
        Raw-count dataset; loaded from the preset's source when omitted
    config : WorkflowConfig, optional
        Base configuration the preset is applied to
    overrides : dict, optional
        Nested overrides applied after the preset, e.g.
        ``{"batch_key": "plate"}``
    logger : PipelineLogger, optional
        Logger for stage events
    annotation_table : DataFrame or path, optional
        Gene annotation table
    **source_args
        Arguments for the dataset source

    Returns
    -------
    WorkflowReport
    """
    cfg = hsc_config(config, overrides)
    if cfg.batch_key is None:
        log.info("No plate column configured; analysing without blocking")
    return run_workflow(
        cfg,
        adata=adata,
        logger=logger,
        annotation_table=annotation_table,
        source_args=source_args,
    )
