"""Human bone marrow workflow.

Droplet data from several donors: two-pass QC per donor, library-size
factors, a Poisson technical trend blocked on donor, the top 5000 genes
by biological variance, MNN integration across donors, UMAP, k-means
overclustering, upregulated markers with a log-fold-change threshold of
1 blocked on donor, and pseudo-bulk classification against a reference.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..config.datasets import get_dataset_config
from ..config.workflow import WorkflowConfig
from ..pipeline.logger import PipelineLogger
from .report import WorkflowReport
from .standard import run_workflow

log = logging.getLogger(__name__)

DATASET = "bone_marrow"


def bone_marrow_config(
    config: Optional[WorkflowConfig] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> WorkflowConfig:
    """Workflow configuration of the bone marrow analysis."""
    return get_dataset_config(DATASET).workflow_config(base=config, overrides=overrides)


def run_bone_marrow_workflow(
    path: Optional[Union[str, Path]] = None,
    adata: Any = None,
    reference: Any = None,
    config: Optional[WorkflowConfig] = None,
    overrides: Optional[Dict[str, Any]] = None,
    logger: Optional[PipelineLogger] = None,
    annotation_table: Any = None,
) -> WorkflowReport:
    """Run the bone marrow workflow.

    Parameters
    ----------
    path : str or Path, optional
        ``.h5ad`` file with raw counts and a donor column
    adata : AnnData, optional
        Raw-count dataset used instead of ``path``
    reference : ReferenceAtlas or AnnData, optional
        Reference for classification; classification is skipped without one
    config : WorkflowConfig, optional
        Base configuration the preset is applied to
    overrides : dict, optional
        Nested overrides applied after the preset
    logger : PipelineLogger, optional
        Logger for stage events
    annotation_table : DataFrame or path, optional
        Gene annotation table (Ensembl IDs to symbols and chromosomes)

    Returns
    -------
    WorkflowReport

    Raises
    ------
    ValueError
        If neither ``path`` nor ``adata`` is given
    """
    if path is None and adata is None:
        raise ValueError("Provide an h5ad path or an AnnData")

    cfg = bone_marrow_config(config, overrides)
    if reference is None and cfg.classify:
        log.warning("No reference given; classification is skipped")
        cfg = cfg.merged({"classify": False})

    source_args = {"path": str(path)} if path is not None and adata is None else {}
    return run_workflow(
        cfg,
        adata=adata,
        logger=logger,
        annotation_table=annotation_table,
        reference=reference,
        source_args=source_args,
    )
