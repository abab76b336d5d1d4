"""Mean-variance modelling and highly variable gene selection.

Per-gene variance of log-expression is decomposed into a technical part,
read off a LOWESS trend of variance against mean, and a biological part
(the residual). The trend is fitted to the genes themselves or to
simulated Poisson counts, optionally separately per batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import sparse
from statsmodels.nonparametric.smoothers_lowess import lowess

from ...errors import InsufficientDataError
from .config import VarianceConfig
from .normalization import log_normalize


@dataclass
class TrendFunction:
    """Variance trend as a piecewise-linear function of mean log-expression.

    Linear interpolation between fitted points, a straight line through
    the origin below the fitted range and a constant above it.
    """

    x: np.ndarray
    y: np.ndarray

    def __call__(self, mean: Any) -> np.ndarray:
        mean = np.atleast_1d(np.asarray(mean, dtype=float))
        out = np.interp(mean, self.x, self.y)
        x0, y0 = self.x[0], self.y[0]
        below = mean < x0
        if x0 > 0:
            out[below] = y0 * np.maximum(mean[below], 0.0) / x0
        return np.maximum(out, 0.0)

    def residual(self, mean: Any, variance: Any) -> np.ndarray:
        """Variance above the trend."""
        return np.asarray(variance, dtype=float) - self(mean)


def mean_var(matrix: Any) -> Tuple[np.ndarray, np.ndarray]:
    """Per-column mean and unbiased variance (dense or sparse)."""
    n = matrix.shape[0]
    if sparse.issparse(matrix):
        mean = np.asarray(matrix.mean(axis=0)).ravel()
        sq = np.asarray(matrix.multiply(matrix).mean(axis=0)).ravel()
    else:
        matrix = np.asarray(matrix, dtype=float)
        mean = matrix.mean(axis=0)
        sq = (matrix**2).mean(axis=0)
    var = (sq - mean**2) * n / max(n - 1, 1)
    return mean.astype(float), np.maximum(var, 0.0).astype(float)


def fit_trend(mean: np.ndarray, variance: np.ndarray, frac: float = 0.3) -> TrendFunction:
    """Fit a LOWESS trend of variance on mean."""
    mean = np.asarray(mean, dtype=float)
    variance = np.asarray(variance, dtype=float)
    ok = np.isfinite(mean) & np.isfinite(variance)
    mean, variance = mean[ok], variance[ok]
    if mean.size < 3 or np.ptp(mean) == 0:
        order = np.argsort(mean)
        return TrendFunction(x=mean[order], y=variance[order])

    fitted = lowess(variance, mean, frac=frac, it=3, return_sorted=True)
    x, y = fitted[:, 0], np.maximum(fitted[:, 1], 0.0)
    # Collapse duplicated x so interpolation is well defined
    ux, inverse = np.unique(x, return_inverse=True)
    uy = np.bincount(inverse, weights=y) / np.bincount(inverse)
    return TrendFunction(x=ux, y=uy)


def _block_stats(
    block: str,
    logcounts: Any,
    counts: Any,
    size_factors: np.ndarray,
    method: str,
    min_mean: float,
    frac: float,
    n_grid: int,
    log_base: float,
    pseudo_count: float,
    seed: int,
) -> Tuple[pd.DataFrame, TrendFunction]:
    """Per-gene statistics and trend for one block of cells."""
    n_cells = logcounts.shape[0]
    if n_cells < 2:
        raise InsufficientDataError("variance", block, f"needs >= 2 cells, got {n_cells}")

    mean, total = mean_var(logcounts)
    if method == "empirical":
        use = mean >= min_mean
        if use.sum() < 3:
            use = mean > 0
        trend = fit_trend(mean[use], total[use], frac)
    elif method == "poisson":
        rng = np.random.default_rng(seed)
        scaled = counts.multiply(1.0 / size_factors[:, None]) if sparse.issparse(counts) else (
            np.asarray(counts, dtype=float) / size_factors[:, None]
        )
        count_means = np.asarray(scaled.mean(axis=0)).ravel()
        positive = count_means[count_means > 0]
        if positive.size == 0:
            raise InsufficientDataError("variance", block, "no expressed genes")
        grid = np.geomspace(max(positive.min(), 1e-3), max(positive.max(), 1e-2), n_grid)
        simulated = rng.poisson(grid[None, :] * size_factors[:, None])
        sim_log = log_normalize(simulated, size_factors, log_base, pseudo_count)
        sim_mean, sim_var = mean_var(sim_log)
        trend = fit_trend(sim_mean, sim_var, frac)
    else:
        raise ValueError(f"Unknown variance method '{method}'. Use 'empirical' or 'poisson'.")

    tech = trend(mean)
    stats = pd.DataFrame({"mean": mean, "total": total, "tech": tech, "bio": total - tech})
    return stats, trend


def select_hvgs(
    stats: pd.DataFrame,
    prop: Optional[float] = 0.1,
    n_top: Optional[int] = None,
) -> List[str]:
    """Top genes by biological variance.

    Only genes with positive biological component are eligible. Ties are
    broken by gene name so the selection is deterministic.

    Parameters
    ----------
    stats : pd.DataFrame
        Gene statistics indexed by gene name with a ``bio`` column
    prop : float, optional
        Fraction of all genes to select
    n_top : int, optional
        Number of genes to select (takes precedence over ``prop``)
    """
    if n_top is None:
        if prop is None:
            raise ValueError("Either prop or n_top must be given")
        n_top = int(np.ceil(prop * len(stats)))
    bio = stats["bio"].to_numpy(dtype=float)
    names = np.asarray(stats.index, dtype=str)
    eligible = np.flatnonzero(bio > 0)
    order = eligible[np.lexsort((names[eligible], -bio[eligible]))]
    return list(names[order[:n_top]])


@dataclass
class VarianceResult:
    """Result from variance modelling.

    Attributes
    ----------
    adata : AnnData
        Copy of the input with gene statistics and ``highly_variable`` in ``var``
    stats : pd.DataFrame
        Combined per-gene ``mean``, ``total``, ``tech``, ``bio``
    per_block : Dict[str, pd.DataFrame]
        Per-batch statistics (single entry without blocking)
    trends : Dict[str, TrendFunction]
        Fitted trend per batch
    hvgs : List[str]
        Selected highly variable genes, best first
    """

    adata: Any = None
    stats: Optional[pd.DataFrame] = None
    per_block: Dict[str, pd.DataFrame] = field(default_factory=dict)
    trends: Dict[str, TrendFunction] = field(default_factory=dict)
    hvgs: List[str] = field(default_factory=list)

    @property
    def total_tech(self) -> float:
        """Summed technical variance over the HVGs."""
        if self.stats is None or not self.hvgs:
            return 0.0
        return float(self.stats.loc[self.hvgs, "tech"].sum())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_blocks": len(self.per_block),
            "n_hvgs": len(self.hvgs),
            "total_tech_hvg": round(self.total_tech, 4),
        }


class VarianceModeler:
    """Decomposes per-gene variance and selects HVGs.

    Parameters
    ----------
    config : VarianceConfig
        Variance modelling configuration
    """

    def __init__(
        self,
        config: Optional[VarianceConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or VarianceConfig()
        self.logger = logger or logging.getLogger(__name__)

    def model_variance(self, adata: Any) -> Tuple[pd.DataFrame, Dict[str, pd.DataFrame], Dict[str, TrendFunction]]:
        """Per-gene statistics, per block and combined.

        Raises
        ------
        InsufficientDataError
            If a block has fewer than 2 cells
        """
        cfg = self.config
        logcounts = adata.layers["logcounts"] if "logcounts" in adata.layers else adata.X
        counts = adata.layers["counts"] if "counts" in adata.layers else None
        if "size_factor" in adata.obs:
            size_factors = adata.obs["size_factor"].to_numpy(dtype=float)
        else:
            size_factors = np.ones(adata.n_obs)
        if cfg.method == "poisson" and counts is None:
            raise KeyError("Poisson trend requires a 'counts' layer")
        norm_meta = adata.uns.get("normalization", {})
        log_base = float(norm_meta.get("log_base", 2.0))
        pseudo = float(norm_meta.get("pseudo_count", 1.0))

        if cfg.batch_key is not None:
            if cfg.batch_key not in adata.obs:
                raise KeyError(f"Batch column '{cfg.batch_key}' not found in obs")
            batches = adata.obs[cfg.batch_key].astype(str).to_numpy()
        else:
            batches = np.full(adata.n_obs, "all", dtype=object)
        levels = sorted(pd.unique(batches))

        jobs = []
        for i, level in enumerate(levels):
            idx = np.flatnonzero(batches == level)
            jobs.append(
                delayed(_block_stats)(
                    level,
                    logcounts[idx],
                    counts[idx] if counts is not None else None,
                    size_factors[idx],
                    cfg.method,
                    cfg.min_mean,
                    cfg.lowess_frac,
                    cfg.n_grid,
                    log_base,
                    pseudo,
                    cfg.random_seed + i,
                )
            )
        outputs = Parallel(n_jobs=cfg.n_jobs)(jobs)

        per_block = {}
        trends = {}
        for level, (stats, trend) in zip(levels, outputs):
            stats.index = adata.var_names
            per_block[level] = stats
            trends[level] = trend

        if cfg.weighting == "equal":
            weights = np.ones(len(levels))
        elif cfg.weighting == "n_cells":
            weights = np.array([np.sum(batches == level) for level in levels], dtype=float)
        else:
            raise ValueError(f"Unknown weighting '{cfg.weighting}'. Use 'equal' or 'n_cells'.")
        weights = weights / weights.sum()

        combined = sum(w * per_block[level] for w, level in zip(weights, levels))
        combined["bio"] = combined["total"] - combined["tech"]
        return combined, per_block, trends

    def run(self, adata: Any) -> VarianceResult:
        """Model variance and flag HVGs.

        Parameters
        ----------
        adata : AnnData
            Normalized dataset (not modified)

        Returns
        -------
        VarianceResult
        """
        cfg = self.config
        adata = adata.copy()
        stats, per_block, trends = self.model_variance(adata)
        hvgs = select_hvgs(stats, prop=cfg.hvg_prop, n_top=cfg.n_top)

        for column in ("mean", "total", "tech", "bio"):
            adata.var[column] = stats[column].to_numpy()
        adata.var["highly_variable"] = adata.var_names.isin(hvgs)
        adata.uns["variance"] = {
            "method": cfg.method,
            "blocks": list(per_block),
            "hvgs": list(hvgs),
        }

        self.logger.info(
            "Variance modelled (%s, %d blocks); %d HVGs selected",
            cfg.method,
            len(per_block),
            len(hvgs),
        )
        return VarianceResult(
            adata=adata, stats=stats, per_block=per_block, trends=trends, hvgs=hvgs
        )
