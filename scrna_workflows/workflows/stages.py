"""Stage handlers binding the analysis engines to the executor.

Every handler has the signature ``handler(adata, config, **args)`` and
returns a ``StageOutput``. ``config`` is a resolved ``WorkflowConfig``.
"""

from pathlib import Path
from typing import Any, Optional, Union

import pandas as pd

from ..config.workflow import WorkflowConfig
from ..core.annotation import PseudoBulkClassifier, ReferenceAtlas
from ..core.clustering import ClusteringEngine, MarkerFinder
from ..core.integration import MNNIntegrator
from ..core.preprocessing import (
    CellQC,
    DatasetLoader,
    GeneAnnotator,
    SizeFactorNormalizer,
    VarianceModeler,
)
from ..core.reduction import DimensionalityReducer
from ..pipeline.stage import StageOutput

PathLike = Union[str, Path]


def _config(config: Optional[WorkflowConfig]) -> WorkflowConfig:
    return (config or WorkflowConfig()).resolve()


def load_stage(adata: Any = None, config: Optional[WorkflowConfig] = None, **source_args: Any) -> StageOutput:
    """Load the configured dataset, or validate ``adata`` when one is given."""
    cfg = _config(config)
    loader = DatasetLoader(cfg.preprocessing.loader)
    if adata is not None:
        result = loader.prepare(adata)
    else:
        result = loader.run(**source_args)
    return StageOutput(adata=result.adata, summary=result.to_dict(), result=result)


def annotate_stage(
    adata: Any,
    config: Optional[WorkflowConfig] = None,
    table: Optional[Union[pd.DataFrame, PathLike]] = None,
    key: Optional[str] = None,
) -> StageOutput:
    cfg = _config(config)
    result = GeneAnnotator(cfg.preprocessing.annotation).run(adata, table=table, key=key)
    return StageOutput(adata=result.adata, summary=result.to_dict(), result=result)


def qc_stage(
    adata: Any,
    config: Optional[WorkflowConfig] = None,
    thresholds: Optional[pd.DataFrame] = None,
) -> StageOutput:
    cfg = _config(config)
    result = CellQC(cfg.preprocessing.qc).run(adata, batch_key=cfg.batch_key, thresholds=thresholds)
    tables = {
        "qc_discard_summary": result.discard_summary(),
        "qc_thresholds": result.thresholds,
    }
    return StageOutput(adata=result.adata, summary=result.to_dict(), tables=tables, result=result)


def normalize_stage(adata: Any, config: Optional[WorkflowConfig] = None) -> StageOutput:
    cfg = _config(config)
    normalizer = SizeFactorNormalizer(cfg.preprocessing.normalization)
    result = normalizer.run(adata, layer=cfg.preprocessing.loader.counts_layer)
    tables = {
        "size_factor_summary": pd.DataFrame.from_dict(
            result.summary, orient="index", columns=["size_factor"]
        ).rename_axis("statistic")
    }
    return StageOutput(adata=result.adata, summary=result.to_dict(), tables=tables, result=result)


def variance_stage(adata: Any, config: Optional[WorkflowConfig] = None) -> StageOutput:
    cfg = _config(config)
    result = VarianceModeler(cfg.preprocessing.variance).run(adata)
    tables = {"gene_variance": result.stats}
    return StageOutput(adata=result.adata, summary=result.to_dict(), tables=tables, result=result)


def integrate_stage(adata: Any, config: Optional[WorkflowConfig] = None) -> StageOutput:
    cfg = _config(config)
    result = MNNIntegrator(cfg.integration).run(adata)
    tables = {
        "integration_lost_var": result.lost_var,
        "integration_pairs": pd.DataFrame.from_dict(
            result.pair_counts, orient="index", columns=["n_pairs"]
        ).rename_axis("batch"),
    }
    return StageOutput(adata=result.adata, summary=result.to_dict(), tables=tables, result=result)


def reduce_stage(adata: Any, config: Optional[WorkflowConfig] = None) -> StageOutput:
    cfg = _config(config)
    result = DimensionalityReducer(cfg.reduction).run(adata, use_rep=cfg.reduction.use_rep)
    tables = {}
    if result.variance is not None:
        tables["pca_variance"] = pd.DataFrame(
            {"variance": result.variance},
            index=pd.RangeIndex(1, len(result.variance) + 1, name="pc"),
        )
    return StageOutput(adata=result.adata, summary=result.to_dict(), tables=tables, result=result)


def cluster_stage(adata: Any, config: Optional[WorkflowConfig] = None) -> StageOutput:
    cfg = _config(config)
    result = ClusteringEngine(cfg.clustering).run(adata)
    tables = {"cluster_sizes": result.size_table()}
    return StageOutput(adata=result.adata, summary=result.to_dict(), tables=tables, result=result)


def markers_stage(adata: Any, config: Optional[WorkflowConfig] = None) -> StageOutput:
    cfg = _config(config)
    result = MarkerFinder(cfg.markers).run(adata)
    tables = {"marker_summary": result.summary()}
    for cluster, table in result.markers.items():
        tables[f"markers_{cluster}"] = table
    # Marker detection annotates nothing; the dataset passes through.
    return StageOutput(adata=adata, summary=result.to_dict(), tables=tables, result=result)


def classify_stage(
    adata: Any,
    config: Optional[WorkflowConfig] = None,
    reference: Optional[Union[ReferenceAtlas, Any]] = None,
    reference_path: Optional[PathLike] = None,
    labels_path: Optional[PathLike] = None,
    label_column: str = "label",
) -> StageOutput:
    """Classify clusters against a ReferenceAtlas, a labelled AnnData or CSV files.

    Raises
    ------
    ValueError
        If no reference is given
    """
    cfg = _config(config)
    if reference is None and reference_path is not None:
        if labels_path is None:
            raise ValueError("labels_path is required with reference_path")
        reference = ReferenceAtlas.from_csv(reference_path, labels_path, label_column=label_column)
    elif reference is not None and not isinstance(reference, ReferenceAtlas):
        reference = ReferenceAtlas.from_anndata(reference, label_key=label_column)
    if reference is None:
        raise ValueError("Classification needs a reference atlas")

    result = PseudoBulkClassifier(reference, cfg.classifier).run(adata)
    tables = {"classification": result.table}
    return StageOutput(adata=result.adata, summary=result.to_dict(), tables=tables, result=result)
