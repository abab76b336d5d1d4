"""Clustering module: cell clustering and marker gene detection.

Example Usage
-------------
>>> from scrna_workflows.core.clustering import (
...     ClusteringEngine, ClusteringConfig, MarkerFinder, MarkerConfig,
... )
>>> clustered = ClusteringEngine(ClusteringConfig(method="graph")).run(adata)
>>> markers = MarkerFinder(MarkerConfig(block_key="plate")).run(clustered.adata)
"""

from .config import ClusteringConfig, MarkerConfig

from .engine import (
    ClusteringEngine,
    ClusteringResult,
    centroid_linkage,
    merge_clusters,
    relabel_by_size,
)

from .markers import (
    MarkerFinder,
    MarkerResult,
    combine_comparisons,
    compare_pair,
    rank_within,
    welch_one_sided,
)

__all__ = [
    # Config
    "ClusteringConfig",
    "MarkerConfig",
    # Engine
    "ClusteringEngine",
    "ClusteringResult",
    "centroid_linkage",
    "merge_clusters",
    "relabel_by_size",
    # Markers
    "MarkerFinder",
    "MarkerResult",
    "combine_comparisons",
    "compare_pair",
    "rank_within",
    "welch_one_sided",
]
