"""Configuration classes for clustering and marker detection."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class ClusteringConfig:
    """Configuration for cell clustering.

    Attributes
    ----------
    method : str
        "graph" (nearest-neighbour graph + Leiden) or "kmeans"
    use_rep : str
        ``obsm`` embedding to cluster
    cluster_key : str
        ``obs`` column receiving the labels
    n_neighbors : int
        k of the neighbour graph
    resolution : float
        Leiden resolution
    n_clusters : int
        Number of k-means clusters
    n_init : int
        k-means restarts
    max_iter : int
        k-means iteration cap
    max_graph_cells : int
        Cell count above which graph clustering logs a warning
    linkage_method : str
        scipy linkage method for the centroid dendrogram
    random_seed : int
        Random seed
    """

    method: str = "graph"
    use_rep: str = "X_pca"
    cluster_key: str = "cluster"
    n_neighbors: int = 10
    resolution: float = 1.0
    n_clusters: int = 10
    n_init: int = 10
    max_iter: int = 300
    max_graph_cells: int = 100_000
    linkage_method: str = "ward"
    random_seed: int = 1337


@dataclass
class MarkerConfig:
    """Configuration for pairwise marker detection.

    Attributes
    ----------
    cluster_key : str
        ``obs`` column with cluster labels
    layer : str
        Layer with log-expression (falls back to X)
    direction : str
        "any", "up" or "down"
    lfc : float
        Log-fold-change threshold tested against
    block_key : str, optional
        ``obs`` column to block on (plate, donor)
    pval_type : str
        "all" (rank by worst comparison) or "any" (best comparison)
    top_cutoff : int
        Marker genes are those with ``Top`` at most this value
    n_jobs : int
        Parallel workers over clusters
    """

    cluster_key: str = "cluster"
    layer: str = "logcounts"
    direction: str = "any"
    lfc: float = 0.0
    block_key: Optional[str] = None
    pval_type: str = "all"
    top_cutoff: int = 10
    n_jobs: int = 1
