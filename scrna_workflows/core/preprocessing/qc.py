"""Cell-level quality control.

Computes per-cell QC metrics with scanpy and flags outlier cells with
MAD-based thresholds, derived independently per batch. Batches whose
lower thresholds are implausibly low (e.g. a failed plate where most
cells are damaged) receive thresholds borrowed from the other batches.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from ...utils.stats import outlier_bounds
from .config import QCConfig

# Label used for the single batch when no batch column is given
ALL_CELLS = "all"

THRESHOLD_COLUMNS = ["batch", "metric", "lower", "upper", "rescued"]

# (metric, log scale, check lower side, check upper side)
MetricSpec = Tuple[str, bool, bool, bool]


@dataclass
class QCResult:
    """Result from cell QC.

    Attributes
    ----------
    adata : AnnData
        Copy of the input with QC metrics and ``discard`` in ``obs``,
        filtered to retained cells when filtering is enabled
    metrics : pd.DataFrame
        Per-cell QC metrics of all input cells
    batches : pd.Series
        Batch label of every input cell ("all" without a batch column)
    flags : pd.DataFrame
        Per-cell boolean outlier flags (one column per metric side) plus
        ``discard``; covers all input cells
    thresholds : pd.DataFrame
        One row per (batch, metric) with ``lower``, ``upper``, ``rescued``
    reason_counts : Dict[str, int]
        Cells flagged per reason, plus the total under ``discard``
    flagged_batches : List[str]
        Batches whose pass-one thresholds were implausible
    cells_total : int
        Cells before filtering
    cells_removed : int
        Cells discarded
    """

    adata: Any = None
    metrics: Optional[pd.DataFrame] = None
    batches: Optional[pd.Series] = None
    flags: Optional[pd.DataFrame] = None
    thresholds: Optional[pd.DataFrame] = None
    reason_counts: Dict[str, int] = field(default_factory=dict)
    flagged_batches: List[str] = field(default_factory=list)
    cells_total: int = 0
    cells_removed: int = 0

    @property
    def removal_fraction(self) -> float:
        return self.cells_removed / self.cells_total if self.cells_total else 0.0

    def discard_summary(self) -> pd.DataFrame:
        """Discard counts by reason as a one-column table."""
        return pd.DataFrame.from_dict(
            self.reason_counts, orient="index", columns=["n_cells"]
        ).rename_axis("reason")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        result = {
            "cells_total": self.cells_total,
            "cells_removed": self.cells_removed,
            "removal_fraction": round(self.removal_fraction, 4),
            "flagged_batches": ";".join(self.flagged_batches),
        }
        for reason, count in self.reason_counts.items():
            result[f"removed_{reason}"] = count
        return result


def _batch_thresholds(
    batch: str,
    metrics: pd.DataFrame,
    specs: Sequence[MetricSpec],
    nmads: float,
    min_diff: Optional[float],
) -> List[Dict[str, Any]]:
    """Thresholds for every metric of one batch."""
    rows = []
    for metric, log, lower, upper in specs:
        lo, hi = outlier_bounds(
            metrics[metric].to_numpy(),
            nmads,
            log=log,
            lower=lower,
            upper=upper,
            min_diff=min_diff,
        )
        rows.append(
            {"batch": batch, "metric": metric, "lower": lo, "upper": hi, "rescued": False}
        )
    return rows


class CellQC:
    """Flags low-quality cells with per-batch MAD thresholds.

    Parameters
    ----------
    config : QCConfig
        QC configuration

    Example
    -------
    >>> qc = CellQC(QCConfig(nmads=3))
    >>> result = qc.run(adata, batch_key="plate")
    >>> result.reason_counts
    """

    def __init__(
        self,
        config: Optional[QCConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or QCConfig()
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def compute_metrics(self, adata: Any, layer: Optional[str] = "counts") -> pd.DataFrame:
        """Per-cell QC metrics: total counts, detected genes, subset percentages."""
        import scanpy as sc

        qc_vars = []
        for name in self.config.qc_vars:
            if name in adata.var.columns:
                qc_vars.append(name)
            else:
                self.logger.warning("Gene subset '%s' not in var; metric skipped", name)

        use_layer = layer if layer is not None and layer in adata.layers else None
        view = adata.copy()
        for name in qc_vars:
            view.var[name] = view.var[name].fillna(False).astype(bool)
        obs_metrics, _ = sc.pp.calculate_qc_metrics(
            view,
            qc_vars=qc_vars,
            percent_top=None,
            log1p=False,
            inplace=False,
            layer=use_layer,
        )
        metrics = pd.DataFrame(index=adata.obs_names)
        metrics["total_counts"] = obs_metrics["total_counts"].to_numpy(dtype=float)
        metrics["n_genes"] = obs_metrics["n_genes_by_counts"].to_numpy(dtype=float)
        for name in qc_vars:
            metrics[f"pct_counts_{name}"] = obs_metrics[f"pct_counts_{name}"].to_numpy(
                dtype=float
            )
        return metrics

    def _metric_specs(self, metrics: pd.DataFrame) -> List[MetricSpec]:
        cfg = self.config
        specs = []
        for metric in metrics.columns:
            lower = metric in cfg.lower_metrics
            upper = metric in cfg.upper_metrics
            if lower or upper:
                specs.append((metric, metric in cfg.log_metrics, lower, upper))
        return specs

    # ------------------------------------------------------------------
    # Thresholds
    # ------------------------------------------------------------------

    def compute_thresholds(
        self, metrics: pd.DataFrame, batches: pd.Series
    ) -> Tuple[pd.DataFrame, List[str]]:
        """Per-batch thresholds with the two-pass rescue of implausible batches.

        Returns
        -------
        Tuple[pd.DataFrame, List[str]]
            Thresholds table and the batches flagged in pass one
        """
        cfg = self.config
        specs = self._metric_specs(metrics)
        levels = sorted(pd.unique(batches))

        per_batch = Parallel(n_jobs=cfg.n_jobs)(
            delayed(_batch_thresholds)(
                level, metrics.loc[(batches == level).to_numpy()], specs, cfg.nmads, cfg.min_diff
            )
            for level in levels
        )
        thresholds = pd.DataFrame(
            [row for rows in per_batch for row in rows], columns=THRESHOLD_COLUMNS
        )

        flagged = self._implausible_batches(thresholds)
        if not flagged or not cfg.two_pass:
            return thresholds, flagged

        if len(flagged) == len(levels):
            self.logger.warning(
                "All %d batches have implausible lower thresholds; "
                "keeping per-batch thresholds",
                len(levels),
            )
            return thresholds, flagged

        self.logger.warning(
            "Batches with implausible thresholds: %s (rescue_mode=%s)",
            ", ".join(flagged),
            cfg.rescue_mode,
        )
        good = [b for b in levels if b not in flagged]
        if cfg.rescue_mode == "shared":
            good_rows = thresholds[thresholds["batch"].isin(good)]
            shared = good_rows.groupby("metric", sort=False)[["lower", "upper"]].median()
        elif cfg.rescue_mode == "global":
            pooled = metrics.loc[batches.isin(good).to_numpy()]
            shared = pd.DataFrame(
                _batch_thresholds("pooled", pooled, specs, cfg.nmads, cfg.min_diff)
            ).set_index("metric")[["lower", "upper"]]
        else:
            raise ValueError(
                f"Unknown rescue_mode '{cfg.rescue_mode}'. Use 'shared' or 'global'."
            )

        rescue = thresholds["batch"].isin(flagged)
        thresholds.loc[rescue, "lower"] = thresholds.loc[rescue, "metric"].map(shared["lower"])
        thresholds.loc[rescue, "upper"] = thresholds.loc[rescue, "metric"].map(shared["upper"])
        thresholds.loc[rescue, "rescued"] = True
        return thresholds, flagged

    def _implausible_batches(self, thresholds: pd.DataFrame) -> List[str]:
        floors = self.config.min_plausible_lower
        flagged = []
        for batch, rows in thresholds.groupby("batch", sort=True):
            for _, row in rows.iterrows():
                floor = floors.get(row["metric"])
                if floor is None or row["metric"] not in self.config.lower_metrics:
                    continue
                if np.isfinite(row["lower"]) and row["lower"] < floor:
                    flagged.append(str(batch))
                    break
        return flagged

    def apply_thresholds(
        self,
        metrics: pd.DataFrame,
        batches: pd.Series,
        thresholds: pd.DataFrame,
    ) -> pd.DataFrame:
        """Flag cells strictly outside their batch's thresholds.

        Raises
        ------
        KeyError
            If a batch has no thresholds
        """
        missing = sorted(set(pd.unique(batches)) - set(thresholds["batch"]))
        if missing:
            raise KeyError(f"No QC thresholds for batches: {', '.join(map(str, missing))}")

        flags = pd.DataFrame(index=metrics.index)
        for metric, log, lower, upper in self._metric_specs(metrics):
            rows = thresholds[thresholds["metric"] == metric].set_index("batch")
            if rows.empty:
                continue
            values = metrics[metric].to_numpy()
            if lower:
                lo = batches.map(rows["lower"]).to_numpy(dtype=float)
                flags[f"low_{metric}"] = values < lo
            if upper:
                hi = batches.map(rows["upper"]).to_numpy(dtype=float)
                flags[f"high_{metric}"] = values > hi
        flags["discard"] = flags.any(axis=1) if flags.shape[1] else False
        return flags

    # ------------------------------------------------------------------
    # Stage entry point
    # ------------------------------------------------------------------

    def run(
        self,
        adata: Any,
        batch_key: Optional[str] = None,
        thresholds: Optional[pd.DataFrame] = None,
    ) -> QCResult:
        """Compute metrics, flag outliers and optionally filter cells.

        Parameters
        ----------
        adata : AnnData
            Input dataset with raw counts (not modified)
        batch_key : str, optional
            ``obs`` column with batch labels
        thresholds : pd.DataFrame, optional
            Re-use thresholds from a previous run instead of deriving them

        Returns
        -------
        QCResult
        """
        cfg = self.config
        adata = adata.copy()
        result = QCResult(cells_total=adata.n_obs)

        metrics = self.compute_metrics(adata)
        for column in metrics.columns:
            adata.obs[column] = metrics[column].to_numpy()

        if batch_key is not None:
            if batch_key not in adata.obs:
                raise KeyError(f"Batch column '{batch_key}' not found in obs")
            batches = adata.obs[batch_key].astype(str)
        else:
            batches = pd.Series(ALL_CELLS, index=adata.obs_names)

        if thresholds is None:
            thresholds, flagged = self.compute_thresholds(metrics, batches)
        else:
            thresholds, flagged = thresholds.copy(), []

        flags = self.apply_thresholds(metrics, batches, thresholds)
        adata.obs["discard"] = flags["discard"].to_numpy()

        result.metrics = metrics
        result.batches = batches
        result.flags = flags
        result.thresholds = thresholds
        result.flagged_batches = flagged
        result.reason_counts = {
            column: int(flags[column].sum()) for column in flags.columns
        }
        result.cells_removed = result.reason_counts["discard"]

        for reason, count in result.reason_counts.items():
            if reason != "discard" and count:
                self.logger.info("  %s: %d cells", reason, count)
        self.logger.info(
            "QC flagged %d/%d cells (%.1f%%)",
            result.cells_removed,
            result.cells_total,
            100 * result.removal_fraction,
        )

        adata.uns["qc"] = {
            "nmads": cfg.nmads,
            "flagged_batches": list(flagged),
            "n_discarded": result.cells_removed,
        }
        if cfg.filter_cells:
            adata = adata[~flags["discard"].to_numpy()].copy()
        result.adata = adata
        return result
