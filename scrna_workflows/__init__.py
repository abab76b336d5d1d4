"""scRNA-Workflows: staged single-cell RNA-seq analysis workflows.

This package provides tools for:
- Loading count matrices from named dataset sources and annotating genes
- Batch-aware quality control with robust (MAD-based) outlier thresholds
- Deconvolution and library-size normalization
- Mean-variance trend modelling and highly variable gene selection
- MNN-style batch integration and dimensionality reduction
- Graph-based and k-means clustering with blocked marker detection
- Pseudo-bulk cell-type classification against a labelled reference

Every stage takes an AnnData and returns a result holding a new AnnData;
inputs are never modified in place.

Example usage:
    >>> from scrna_workflows.core.preprocessing import DatasetLoader, CellQC
    >>> from scrna_workflows.core.clustering import ClusteringEngine
    >>>
    >>> adata = DatasetLoader().load("paul15")
    >>> qc = CellQC().run(adata, batch_key="batch")
    >>> clusters = ClusteringEngine().run(qc.adata, use_rep="X_pca")
"""

__version__ = "0.1.0"

from .errors import InsufficientDataError, ScrnaWorkflowError, StageError

__all__ = [
    "__version__",
    "InsufficientDataError",
    "ScrnaWorkflowError",
    "StageError",
]
