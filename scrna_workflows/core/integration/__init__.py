"""Batch integration by mutual nearest neighbours.

Example Usage
-------------
>>> from scrna_workflows.core.integration import MNNIntegrator, IntegrationConfig
>>> result = MNNIntegrator(IntegrationConfig(batch_key="donor")).run(adata)
>>> result.adata.obsm["X_mnn"]
"""

from .config import IntegrationConfig
from .mnn import (
    IntegrationResult,
    MergeStep,
    MNNIntegrator,
    cosine_normalize,
    find_mutual_nn,
    multi_batch_pca,
    smooth_corrections,
)

__all__ = [
    "IntegrationConfig",
    "IntegrationResult",
    "MergeStep",
    "MNNIntegrator",
    "cosine_normalize",
    "find_mutual_nn",
    "multi_batch_pca",
    "smooth_corrections",
]
