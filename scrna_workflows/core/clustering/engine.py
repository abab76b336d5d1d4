"""Clustering engine: Leiden on a neighbour graph or k-means.

Labels are relabelled "1".."K" by decreasing cluster size. A ward
dendrogram of cluster centroids is recorded as a diagnostic; merging
clusters along it is an explicit, separate step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import dendrogram, fcluster, linkage

from ...errors import InsufficientDataError
from .config import ClusteringConfig


@dataclass
class ClusteringResult:
    """Result from clustering.

    Attributes
    ----------
    adata : AnnData
        Copy of the input with labels in ``obs[cluster_key]``
    cluster_key : str
        Column holding the labels
    n_clusters : int
        Number of clusters
    cluster_sizes : Dict[str, int]
        Cells per cluster
    linkage : np.ndarray, optional
        Centroid linkage matrix (None with a single cluster)
    order : List[str]
        Cluster labels in dendrogram leaf order
    """

    adata: Any = None
    cluster_key: str = "cluster"
    n_clusters: int = 0
    cluster_sizes: Dict[str, int] = field(default_factory=dict)
    linkage: Optional[np.ndarray] = None
    order: List[str] = field(default_factory=list)

    def size_table(self) -> pd.DataFrame:
        return pd.DataFrame(
            {"n_cells": pd.Series(self.cluster_sizes, dtype=int)}
        ).rename_axis(self.cluster_key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster_key": self.cluster_key,
            "n_clusters": self.n_clusters,
            "min_size": min(self.cluster_sizes.values()) if self.cluster_sizes else 0,
            "max_size": max(self.cluster_sizes.values()) if self.cluster_sizes else 0,
        }


def relabel_by_size(labels: Any) -> pd.Categorical:
    """Relabel clusters "1".."K" by decreasing size, ties by first appearance."""
    labels = pd.Series(np.asarray(labels).astype(str))
    first_seen = {lab: i for i, lab in reversed(list(enumerate(labels)))}
    sizes = labels.value_counts()
    ranked = sorted(sizes.index, key=lambda lab: (-sizes[lab], first_seen[lab]))
    mapping = {old: str(i + 1) for i, old in enumerate(ranked)}
    new = labels.map(mapping)
    return pd.Categorical(new, categories=[str(i + 1) for i in range(len(ranked))])


def centroid_linkage(
    embedding: np.ndarray, labels: Any, method: str = "ward"
) -> tuple:
    """Linkage of cluster centroids and the labels in leaf order."""
    labels = pd.Series(np.asarray(labels).astype(str))
    categories = sorted(labels.unique(), key=lambda x: (len(x), x))
    centroids = np.vstack(
        [embedding[(labels == cat).to_numpy()].mean(axis=0) for cat in categories]
    )
    if len(categories) < 2:
        return None, list(categories)
    Z = linkage(centroids, method=method)
    leaves = dendrogram(Z, no_plot=True)["leaves"]
    return Z, [categories[i] for i in leaves]


def merge_clusters(
    adata: Any,
    n_groups: int,
    cluster_key: str = "cluster",
    key_added: Optional[str] = None,
) -> Any:
    """Cut the centroid dendrogram into ``n_groups`` merged clusters.

    Requires ``adata.uns["cluster_dendrogram"]`` from a clustering run.
    Returns a copy with the merged labels in ``obs[key_added]``
    (default ``<cluster_key>_merged``).
    """
    info = adata.uns.get("cluster_dendrogram")
    if info is None or info.get("linkage") is None:
        raise ValueError("No cluster dendrogram found; run clustering first")
    Z = np.asarray(info["linkage"])
    categories = list(info["categories"])
    groups = fcluster(Z, t=n_groups, criterion="maxclust")
    mapping = {cat: str(g) for cat, g in zip(categories, groups)}

    adata = adata.copy()
    merged = adata.obs[cluster_key].astype(str).map(mapping)
    adata.obs[key_added or f"{cluster_key}_merged"] = relabel_by_size(merged.to_numpy())
    return adata


class ClusteringEngine:
    """Clusters cells on an embedding.

    Parameters
    ----------
    config : ClusteringConfig, optional
        Clustering configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> engine = ClusteringEngine(ClusteringConfig(method="kmeans", n_clusters=20))
    >>> result = engine.run(adata)
    >>> result.cluster_sizes
    """

    def __init__(
        self,
        config: Optional[ClusteringConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ClusteringConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _graph_labels(self, adata: Any) -> np.ndarray:
        import scanpy as sc

        cfg = self.config
        if adata.n_obs > cfg.max_graph_cells:
            self.logger.warning(
                "Graph clustering on %d cells exceeds max_graph_cells=%d; "
                "consider method='kmeans'",
                adata.n_obs,
                cfg.max_graph_cells,
            )
        sc.pp.neighbors(
            adata,
            n_neighbors=min(cfg.n_neighbors, adata.n_obs - 1),
            use_rep=cfg.use_rep,
            random_state=cfg.random_seed,
            key_added="clustering",
        )
        sc.tl.leiden(
            adata,
            resolution=cfg.resolution,
            random_state=cfg.random_seed,
            key_added="_leiden",
            neighbors_key="clustering",
            flavor="igraph",
            n_iterations=2,
            directed=False,
        )
        labels = adata.obs.pop("_leiden").to_numpy()
        return labels

    def _kmeans_labels(self, adata: Any) -> np.ndarray:
        from sklearn.cluster import KMeans

        cfg = self.config
        if cfg.n_clusters > adata.n_obs:
            raise InsufficientDataError(
                "clustering", None, f"n_clusters={cfg.n_clusters} exceeds {adata.n_obs} cells"
            )
        km = KMeans(
            n_clusters=cfg.n_clusters,
            n_init=cfg.n_init,
            max_iter=cfg.max_iter,
            random_state=cfg.random_seed,
        )
        return km.fit_predict(np.asarray(adata.obsm[cfg.use_rep]))

    def run(self, adata: Any) -> ClusteringResult:
        """Cluster cells and record the centroid dendrogram.

        Parameters
        ----------
        adata : AnnData
            Dataset with ``obsm[use_rep]`` (not modified)

        Returns
        -------
        ClusteringResult
        """
        cfg = self.config
        if cfg.use_rep not in adata.obsm:
            raise KeyError(f"Embedding '{cfg.use_rep}' not found in obsm")
        if adata.n_obs < 2:
            raise InsufficientDataError("clustering", None, f"needs >= 2 cells, got {adata.n_obs}")
        adata = adata.copy()

        self.logger.info(
            "Clustering %d cells on '%s' (method=%s)", adata.n_obs, cfg.use_rep, cfg.method
        )
        if cfg.method == "graph":
            raw = self._graph_labels(adata)
        elif cfg.method == "kmeans":
            raw = self._kmeans_labels(adata)
        else:
            raise ValueError(f"Unknown clustering method '{cfg.method}'. Use 'graph' or 'kmeans'.")

        labels = relabel_by_size(raw)
        adata.obs[cfg.cluster_key] = pd.Categorical(
            np.asarray(labels), categories=labels.categories
        )

        result = ClusteringResult(cluster_key=cfg.cluster_key)
        sizes = adata.obs[cfg.cluster_key].value_counts()
        result.cluster_sizes = {str(c): int(sizes[c]) for c in labels.categories}
        result.n_clusters = len(result.cluster_sizes)

        Z, order = centroid_linkage(
            np.asarray(adata.obsm[cfg.use_rep]), adata.obs[cfg.cluster_key], cfg.linkage_method
        )
        result.linkage = Z
        result.order = order
        categories = sorted(result.cluster_sizes, key=lambda x: (len(x), x))
        dendro = {"order": order, "categories": categories, "cluster_key": cfg.cluster_key}
        if Z is not None:
            dendro["linkage"] = Z
        adata.uns["cluster_dendrogram"] = dendro

        self.logger.info("Found %d clusters", result.n_clusters)
        result.adata = adata
        return result
