"""Pairwise marker gene detection between clusters.

Every cluster is compared with every other cluster by Welch t-tests on
log-expression, optionally against a log-fold-change threshold and
within blocks (plates, donors). Per cluster, genes are ranked within each
comparison and the rankings are consolidated into a single ``Top`` value.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import stats

from ...errors import InsufficientDataError
from ...utils.stats import benjamini_hochberg, stouffer_combine
from ..preprocessing.variance import mean_var
from .config import MarkerConfig

# (mean, variance, n_cells) of one cluster within one block
GroupStats = Tuple[np.ndarray, np.ndarray, int]


@dataclass
class MarkerResult:
    """Result from marker detection.

    Attributes
    ----------
    markers : Dict[str, pd.DataFrame]
        Per-cluster tables indexed by gene, sorted by ``Top``
    top_cutoff : int
        ``Top`` threshold defining the marker set
    elapsed_seconds : float
        Time taken
    """

    markers: Dict[str, pd.DataFrame] = field(default_factory=dict)
    top_cutoff: int = 10
    elapsed_seconds: float = 0.0

    def marker_genes(self, cluster: str) -> List[str]:
        """Genes with ``Top`` within the cutoff for one cluster."""
        table = self.markers[str(cluster)]
        return list(table.index[table["Top"] <= self.top_cutoff])

    def summary(self) -> pd.DataFrame:
        rows = []
        for cluster, table in self.markers.items():
            top = table.index[0] if len(table) else None
            rows.append(
                {
                    "cluster": cluster,
                    "n_markers": len(self.marker_genes(cluster)),
                    "top_gene": top,
                    "n_significant": int((table["FDR"] < 0.05).sum()),
                }
            )
        return pd.DataFrame(rows)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_clusters": len(self.markers),
            "top_cutoff": self.top_cutoff,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
        }


def welch_one_sided(
    host: GroupStats,
    other: GroupStats,
    lfc: float,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Welch t-test of host vs other against a log-fold-change threshold.

    The host means are shifted by ``lfc`` so that scipy's one-sided tests
    evaluate ``diff > lfc`` and ``diff < -lfc``.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray, np.ndarray]
        Mean difference, p-value for ``diff > lfc`` and p-value for
        ``diff < -lfc``
    """
    m1, v1, n1 = host
    m2, v2, n2 = other
    s1 = np.sqrt(v1)
    s2 = np.sqrt(v2)
    with np.errstate(divide="ignore", invalid="ignore"):
        up = stats.ttest_ind_from_stats(
            m1 - lfc, s1, n1, m2, s2, n2, equal_var=False, alternative="greater"
        )
        down = stats.ttest_ind_from_stats(
            m1 + lfc, s1, n1, m2, s2, n2, equal_var=False, alternative="less"
        )
    # zero variance with no difference gives nan
    p_up = np.nan_to_num(np.asarray(up.pvalue, dtype=float), nan=1.0)
    p_down = np.nan_to_num(np.asarray(down.pvalue, dtype=float), nan=1.0)
    return m1 - m2, p_up, p_down


def compare_pair(
    host_blocks: Dict[str, GroupStats],
    other_blocks: Dict[str, GroupStats],
    lfc: float,
    direction: str,
    n_genes: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """Log-fold-change and p-value of one ordered cluster pair.

    Blocks where either cluster has fewer than 2 cells are skipped. Block
    results are combined by weighted Stouffer Z, with each block weighted
    by its effective sample size.
    """
    blocks = [
        b
        for b in sorted(host_blocks)
        if b in other_blocks and host_blocks[b][2] >= 2 and other_blocks[b][2] >= 2
    ]
    if not blocks:
        return np.full(n_genes, np.nan), np.ones(n_genes)

    diffs, ups, downs, weights = [], [], [], []
    for b in blocks:
        diff, p_up, p_down = welch_one_sided(host_blocks[b], other_blocks[b], lfc)
        diffs.append(diff)
        ups.append(p_up)
        downs.append(p_down)
        weights.append(1.0 / (1.0 / host_blocks[b][2] + 1.0 / other_blocks[b][2]))

    w = np.asarray(weights)
    logfc = (w[:, None] * np.vstack(diffs)).sum(axis=0) / w.sum()
    p_up = stouffer_combine(np.vstack(ups), w)
    p_down = stouffer_combine(np.vstack(downs), w)
    if direction == "up":
        pval = p_up
    elif direction == "down":
        pval = p_down
    else:
        pval = np.minimum(p_up + p_down, 1.0)
    return logfc, pval


def rank_within(pvalues: np.ndarray, genes: np.ndarray) -> np.ndarray:
    """1-based rank by p-value, ties broken by gene name."""
    order = np.lexsort((genes, pvalues))
    ranks = np.empty(len(order), dtype=int)
    ranks[order] = np.arange(1, len(order) + 1)
    return ranks


def combine_comparisons(
    pvalues: np.ndarray,
    ranks: np.ndarray,
    pval_type: str,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Consolidate per-comparison p-values and ranks (comparisons x genes).

    ``"all"`` keeps the largest p-value and worst rank of each gene.
    ``"any"`` keeps the best rank and the Holm-adjusted smallest p-value,
    which is the smallest p-value times the number of comparisons.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray, np.ndarray]
        ``Top`` values, combined p-values and the comparison each gene's
        combined p-value came from
    """
    if pval_type == "all":
        return ranks.max(axis=0), pvalues.max(axis=0), pvalues.argmax(axis=0)
    combined = np.minimum(pvalues.min(axis=0) * pvalues.shape[0], 1.0)
    return ranks.min(axis=0), combined, pvalues.argmin(axis=0)


def _cluster_table(
    host: str,
    others: List[str],
    group_stats: Dict[str, Dict[str, GroupStats]],
    genes: np.ndarray,
    lfc: float,
    direction: str,
    pval_type: str,
) -> pd.DataFrame:
    """Consolidated marker table of one cluster."""
    n_genes = len(genes)
    logfcs = {}
    pvals = []
    ranks = []
    for other in others:
        logfc, pval = compare_pair(group_stats[host], group_stats[other], lfc, direction, n_genes)
        logfcs[other] = logfc
        pvals.append(pval)
        ranks.append(rank_within(pval, genes))

    L = np.vstack([logfcs[o] for o in others])
    top, combined, pick = combine_comparisons(np.vstack(pvals), np.vstack(ranks), pval_type)

    table = pd.DataFrame(
        {
            "Top": top,
            "p_value": combined,
            "FDR": benjamini_hochberg(combined),
            "summary_logFC": L[pick, np.arange(n_genes)],
        },
        index=pd.Index(genes, name="gene"),
    )
    for other in others:
        table[f"logFC_{other}"] = logfcs[other]
    order = np.lexsort((genes, table["p_value"].to_numpy(), table["Top"].to_numpy()))
    return table.iloc[order]


class MarkerFinder:
    """Finds cluster marker genes by pairwise comparisons.

    Parameters
    ----------
    config : MarkerConfig, optional
        Marker configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> finder = MarkerFinder(MarkerConfig(direction="up", lfc=1, block_key="donor"))
    >>> result = finder.run(adata)
    >>> result.markers["1"].head()
    """

    def __init__(
        self,
        config: Optional[MarkerConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or MarkerConfig()
        self.logger = logger or logging.getLogger(__name__)

    def group_stats(self, adata: Any) -> Dict[str, Dict[str, GroupStats]]:
        """Per-cluster, per-block mean, variance and size of every gene."""
        cfg = self.config
        X = adata.layers[cfg.layer] if cfg.layer in adata.layers else adata.X
        clusters = adata.obs[cfg.cluster_key].astype(str).to_numpy()
        if cfg.block_key is not None:
            if cfg.block_key not in adata.obs:
                raise KeyError(f"Block column '{cfg.block_key}' not found in obs")
            blocks = adata.obs[cfg.block_key].astype(str).to_numpy()
        else:
            blocks = np.full(adata.n_obs, "all", dtype=object)

        out: Dict[str, Dict[str, GroupStats]] = {}
        for cluster in pd.unique(clusters):
            out[cluster] = {}
            for block in pd.unique(blocks[clusters == cluster]):
                idx = np.flatnonzero((clusters == cluster) & (blocks == block))
                mean, var = mean_var(X[idx])
                out[cluster][block] = (mean, var, idx.size)
        return out

    def run(self, adata: Any) -> MarkerResult:
        """Compute marker tables for every cluster.

        Parameters
        ----------
        adata : AnnData
            Clustered, normalized dataset (not modified)

        Returns
        -------
        MarkerResult

        Raises
        ------
        InsufficientDataError
            If there are fewer than 2 clusters or a cluster has fewer than 2 cells
        """
        cfg = self.config
        if cfg.cluster_key not in adata.obs:
            raise KeyError(f"Cluster column '{cfg.cluster_key}' not found in obs")
        if cfg.direction not in ("any", "up", "down"):
            raise ValueError(f"Unknown direction '{cfg.direction}'. Use 'any', 'up' or 'down'.")
        if cfg.pval_type not in ("all", "any"):
            raise ValueError(f"Unknown pval_type '{cfg.pval_type}'. Use 'all' or 'any'.")

        labels = adata.obs[cfg.cluster_key].astype(str)
        sizes = labels.value_counts()
        clusters = sorted(sizes.index, key=lambda x: (len(x), x))
        if len(clusters) < 2:
            raise InsufficientDataError(
                "markers", clusters[0] if clusters else None, "need at least 2 clusters"
            )
        for cluster in clusters:
            if sizes[cluster] < 2:
                raise InsufficientDataError(
                    "markers", cluster, f"{sizes[cluster]} cell(s), need at least 2"
                )

        start = time.time()
        self.logger.info(
            "Finding markers for %d clusters (direction=%s, lfc=%.2f, block=%s, pval_type=%s)",
            len(clusters),
            cfg.direction,
            cfg.lfc,
            cfg.block_key,
            cfg.pval_type,
        )
        group_stats = self.group_stats(adata)
        genes = np.asarray(adata.var_names, dtype=str)

        tables = Parallel(n_jobs=cfg.n_jobs)(
            delayed(_cluster_table)(
                host,
                [c for c in clusters if c != host],
                group_stats,
                genes,
                cfg.lfc,
                cfg.direction,
                cfg.pval_type,
            )
            for host in clusters
        )

        result = MarkerResult(
            markers=dict(zip(clusters, tables)),
            top_cutoff=cfg.top_cutoff,
            elapsed_seconds=time.time() - start,
        )
        self.logger.info("Marker detection finished in %.1fs", result.elapsed_seconds)
        return result
