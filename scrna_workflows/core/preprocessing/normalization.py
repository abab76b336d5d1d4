"""Size-factor normalization and log transform.

Provides pooling-based (deconvolution) size factors that are robust to
composition biases between cell types, library-size factors as the simple
alternative, and the log2 transform of scaled counts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.sparse.linalg import lsqr

from ...errors import InsufficientDataError
from ...utils.stats import compute_percentiles
from .config import NormalizationConfig

# Weight of the single-cell equations added to the pooled system
_SINGLE_CELL_WEIGHT = 1e-3


@dataclass
class NormalizationResult:
    """Result from normalization.

    Attributes
    ----------
    adata : AnnData
        Copy of the input with ``obs["size_factor"]`` and the log layer
    size_factors : np.ndarray
        Per-cell size factors centred to unit median
    method : str
        Method actually used
    n_groups : int
        Number of groups used for deconvolution
    n_fallback : int
        Cells whose deconvolution factor was replaced by the library factor
    summary : Dict[str, float]
        Size-factor summary (min, quartiles, median, max)
    """

    adata: Any = None
    size_factors: Optional[np.ndarray] = None
    method: str = ""
    n_groups: int = 1
    n_fallback: int = 0
    summary: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out = {"method": self.method, "n_groups": self.n_groups, "n_fallback": self.n_fallback}
        out.update({k: round(v, 4) for k, v in self.summary.items()})
        return out


def summarize_size_factors(size_factors: np.ndarray) -> Dict[str, float]:
    """Five-number summary of size factors."""
    values = compute_percentiles(size_factors, [0, 25, 50, 75, 100])
    return dict(zip(["min", "q25", "median", "q75", "max"], map(float, values)))


def log_normalize(
    counts: Any,
    size_factors: np.ndarray,
    base: float = 2.0,
    pseudo_count: float = 1.0,
) -> Any:
    """Compute ``log_base(counts / size_factor + pseudo_count)``.

    Sparse input stays sparse when the pseudo-count is 1.
    """
    inv = 1.0 / np.asarray(size_factors, dtype=float)
    if sparse.issparse(counts) and pseudo_count == 1:
        scaled = sparse.csr_matrix(sparse.diags(inv) @ counts, dtype=np.float64)
        scaled.data = np.log1p(scaled.data) / np.log(base)
        return scaled.astype(np.float32)
    dense = counts.toarray() if sparse.issparse(counts) else np.asarray(counts, dtype=float)
    return (np.log(dense * inv[:, None] + pseudo_count) / np.log(base)).astype(np.float32)


def _ring_order(library_sizes: np.ndarray) -> np.ndarray:
    """Order cells by library size around a ring.

    Odd-ranked cells go up one side and even-ranked cells come down the
    other, so every window of consecutive cells mixes small and large
    libraries.
    """
    order = np.argsort(library_sizes, kind="stable")
    return np.concatenate([order[0::2], order[1::2][::-1]])


def pool_size_factors(
    counts: np.ndarray,
    pool_sizes: Sequence[int],
    min_mean: float = 0.1,
) -> Tuple[np.ndarray, np.ndarray]:
    """Deconvolve per-cell size factors from pooled expression profiles.

    Parameters
    ----------
    counts : np.ndarray
        Dense counts of one group (cells x genes), all cells with nonzero total
    pool_sizes : Sequence[int]
        Pool sizes; capped by the number of cells
    min_mean : float
        Minimum average count of genes used for the ratios

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        Per-cell size factors and the group's average library-normalized
        profile over all genes
    """
    counts = np.asarray(counts, dtype=float)
    n_cells = counts.shape[0]
    lib = counts.sum(axis=1)
    norm = counts / lib[:, None]
    profile = norm.mean(axis=0)

    keep = profile * lib.mean() >= min_mean
    if not keep.any():
        keep = profile > 0
    norm = norm[:, keep]
    ave = profile[keep]

    sizes = sorted({min(int(s), n_cells) for s in pool_sizes if s > 0})
    ring = _ring_order(lib)
    ring2 = np.concatenate([ring, ring])
    cumulative = np.vstack([np.zeros((1, norm.shape[1])), np.cumsum(norm[ring2], axis=0)])

    rows: List[np.ndarray] = []
    cols: List[np.ndarray] = []
    vals: List[np.ndarray] = []
    rhs: List[np.ndarray] = []
    offset = 0
    starts = np.arange(n_cells)
    for size in sizes:
        pooled = cumulative[size : size + n_cells] - cumulative[:n_cells]
        rhs.append(np.median(pooled / ave, axis=1))
        members = ring2[starts[:, None] + np.arange(size)[None, :]]
        rows.append(np.repeat(starts + offset, size))
        cols.append(members.ravel())
        vals.append(np.ones(n_cells * size))
        offset += n_cells

    rows.append(starts + offset)
    cols.append(starts)
    vals.append(np.full(n_cells, _SINGLE_CELL_WEIGHT))
    rhs.append(_SINGLE_CELL_WEIGHT * np.median(norm / ave, axis=1))
    offset += n_cells

    design = sparse.csr_matrix(
        (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
        shape=(offset, n_cells),
    )
    theta = lsqr(design, np.concatenate(rhs))[0]
    return theta * lib, profile


class SizeFactorNormalizer:
    """Computes size factors and log-normalized expression.

    Parameters
    ----------
    config : NormalizationConfig
        Normalization configuration

    Example
    -------
    >>> normalizer = SizeFactorNormalizer(NormalizationConfig(method="deconvolution"))
    >>> result = normalizer.run(adata)
    >>> result.summary["median"]
    1.0
    """

    def __init__(
        self,
        config: Optional[NormalizationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or NormalizationConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _counts(self, adata: Any, layer: str) -> Any:
        return adata.layers[layer] if layer in adata.layers else adata.X

    def library_size_factors(self, adata: Any, layer: str = "counts") -> np.ndarray:
        """Factors proportional to per-cell totals (not centred)."""
        key = self.config.library_key
        if key in adata.obs:
            return adata.obs[key].to_numpy(dtype=float)
        counts = self._counts(adata, layer)
        return np.asarray(counts.sum(axis=1)).ravel().astype(float)

    def _groups(self, adata: Any, counts: Any) -> np.ndarray:
        cfg = self.config
        if cfg.clusters_key is not None:
            if cfg.clusters_key not in adata.obs:
                raise KeyError(f"Cluster column '{cfg.clusters_key}' not found in obs")
            return adata.obs[cfg.clusters_key].astype(str).to_numpy()

        n_groups = adata.n_obs // max(cfg.min_cluster_size, 1)
        if not cfg.pre_cluster or n_groups < 2:
            return np.zeros(adata.n_obs, dtype=int).astype(str)
        return self.quick_cluster(counts, n_groups)

    def quick_cluster(self, counts: Any, n_groups: int) -> np.ndarray:
        """Coarse k-means groups on PCs of library-normalized log counts."""
        import anndata as ad
        import scanpy as sc
        from sklearn.cluster import KMeans

        tmp = ad.AnnData(X=counts.copy())
        sc.pp.normalize_total(tmp)
        sc.pp.log1p(tmp)
        n_comps = int(min(10, tmp.n_obs - 1, tmp.n_vars - 1))
        sc.tl.pca(tmp, n_comps=n_comps, random_state=self.config.random_seed)
        km = KMeans(n_clusters=n_groups, n_init=10, random_state=self.config.random_seed)
        labels = km.fit_predict(tmp.obsm["X_pca"])
        self.logger.info("Pre-clustered %d cells into %d groups", tmp.n_obs, n_groups)
        return labels.astype(str)

    def deconvolution_size_factors(
        self, adata: Any, layer: str = "counts"
    ) -> Tuple[np.ndarray, int]:
        """Pooled size factors, rescaled across groups (not centred)."""
        cfg = self.config
        counts = self._counts(adata, layer)
        groups = self._groups(adata, counts)
        levels, sizes = np.unique(groups, return_counts=True)
        reference = levels[np.argmax(sizes)]

        factors = np.zeros(adata.n_obs)
        profiles = {}
        for level in levels:
            idx = np.flatnonzero(groups == level)
            block = counts[idx]
            block = block.toarray() if sparse.issparse(block) else np.asarray(block)
            factors[idx], profiles[level] = pool_size_factors(
                block, cfg.pool_sizes, cfg.min_mean
            )

        ref_profile = profiles[reference]
        for level in levels:
            if level == reference:
                continue
            shared = (profiles[level] > 0) & (ref_profile > 0)
            if not shared.any():
                raise InsufficientDataError(
                    "normalization", str(level), "no genes expressed in common with the reference group"
                )
            scale = float(np.median(profiles[level][shared] / ref_profile[shared]))
            factors[groups == level] *= scale
        return factors, len(levels)

    def run(self, adata: Any, layer: str = "counts") -> NormalizationResult:
        """Compute size factors and the log-normalized layer.

        Parameters
        ----------
        adata : AnnData
            Input dataset with raw counts (not modified)
        layer : str
            Layer holding raw counts (falls back to X)

        Returns
        -------
        NormalizationResult

        Raises
        ------
        InsufficientDataError
            If a cell has zero total count
        """
        cfg = self.config
        adata = adata.copy()
        result = NormalizationResult(method=cfg.method)
        counts = self._counts(adata, layer)

        totals = np.asarray(counts.sum(axis=1)).ravel()
        empty = np.flatnonzero(totals <= 0)
        if empty.size:
            raise InsufficientDataError(
                "normalization",
                str(adata.obs_names[empty[0]]),
                f"{empty.size} cells have zero total count; run QC first",
            )

        library = self.library_size_factors(adata, layer)
        if cfg.method == "library":
            factors = library
        elif cfg.method == "deconvolution":
            factors, result.n_groups = self.deconvolution_size_factors(adata, layer)
            bad = ~(factors > 0)
            if bad.any():
                positive = ~bad
                scale = float(np.median(factors[positive] / library[positive])) if positive.any() else 1.0
                factors[bad] = library[bad] * scale
                result.n_fallback = int(bad.sum())
                self.logger.warning(
                    "%d non-positive deconvolution factors replaced by library-size factors",
                    result.n_fallback,
                )
        else:
            raise ValueError(
                f"Unknown normalization method '{cfg.method}'. Use 'deconvolution' or 'library'."
            )

        factors = factors / np.median(factors)
        result.size_factors = factors
        result.summary = summarize_size_factors(factors)

        adata.obs["size_factor"] = factors
        logcounts = log_normalize(counts, factors, cfg.log_base, cfg.pseudo_count)
        adata.layers["logcounts"] = logcounts
        adata.X = logcounts.copy()
        adata.uns["normalization"] = {
            "method": cfg.method,
            "log_base": cfg.log_base,
            "pseudo_count": cfg.pseudo_count,
        }

        self.logger.info(
            "Size factors (%s): min=%.3f median=%.3f max=%.3f",
            cfg.method,
            result.summary["min"],
            result.summary["median"],
            result.summary["max"],
        )
        result.adata = adata
        return result
