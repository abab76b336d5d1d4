"""Diagnostic plots for the workflow stages.

Each function returns the matplotlib Figure, or saves it and returns the
written path when ``output_path`` is given.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from scipy import sparse
from scipy.cluster.hierarchy import dendrogram

from .style import (
    DISCARD_COLORS,
    HVG_COLOR,
    TREND_COLOR,
    PathLike,
    save_figure,
    set_plot_style,
)

logger = logging.getLogger(__name__)

FigureOrPath = Union[plt.Figure, Path]


def _finish(fig: plt.Figure, output_path: Optional[PathLike], dpi: int) -> FigureOrPath:
    fig.tight_layout()
    if output_path is None:
        return fig
    return save_figure(fig, output_path, dpi=dpi)


def plot_qc_metrics(
    metrics: pd.DataFrame,
    discard: Optional[Union[pd.Series, np.ndarray]] = None,
    batches: Optional[Union[pd.Series, np.ndarray]] = None,
    columns: Optional[Sequence[str]] = None,
    log_columns: Sequence[str] = ("total_counts", "n_genes"),
    output_path: Optional[PathLike] = None,
    figsize_per_panel: Tuple[float, float] = (4.0, 4.0),
    dpi: int = 200,
) -> FigureOrPath:
    """Strip plots of QC metrics per batch, coloured by discard status.

    Parameters
    ----------
    metrics : pd.DataFrame
        Per-cell metrics (``QCResult.metrics``)
    discard : array-like, optional
        Per-cell discard flag (``QCResult.flags["discard"]``)
    batches : array-like, optional
        Per-cell batch labels
    columns : Sequence[str], optional
        Metrics to plot (default: all columns)
    log_columns : Sequence[str]
        Metrics drawn on a log axis
    """
    set_plot_style()
    columns = list(columns or metrics.columns)
    data = metrics[columns].copy()
    data["discard"] = (
        np.zeros(len(data), dtype=bool) if discard is None else np.asarray(discard, dtype=bool)
    )
    data["batch"] = "all" if batches is None else np.asarray(batches).astype(str)

    fig, axes = plt.subplots(
        1,
        len(columns),
        figsize=(figsize_per_panel[0] * len(columns), figsize_per_panel[1]),
        squeeze=False,
    )
    for ax, column in zip(axes[0], columns):
        sns.boxplot(data=data, x="batch", y=column, ax=ax, color="white", showfliers=False)
        sns.stripplot(
            data=data,
            x="batch",
            y=column,
            hue="discard",
            palette=DISCARD_COLORS,
            hue_order=[False, True],
            ax=ax,
            size=2,
            alpha=0.6,
            jitter=0.3,
        )
        if column in log_columns:
            ax.set_yscale("log")
        ax.set_title(column)
        ax.set_xlabel("")
        if ax is not axes[0][-1] and ax.get_legend() is not None:
            ax.get_legend().remove()
    return _finish(fig, output_path, dpi)


def plot_mean_variance(
    stats: pd.DataFrame,
    trend: Optional[Any] = None,
    hvgs: Optional[Sequence[str]] = None,
    output_path: Optional[PathLike] = None,
    figsize: Tuple[float, float] = (6.0, 5.0),
    dpi: int = 200,
    title: str = "Mean-variance trend",
) -> FigureOrPath:
    """Per-gene variance against mean with the fitted trend.

    Parameters
    ----------
    stats : pd.DataFrame
        Per-gene ``mean`` and ``total`` (``VarianceResult.stats``)
    trend : callable, optional
        Fitted trend (``VarianceResult.trends[...]``)
    hvgs : Sequence[str], optional
        Genes highlighted as highly variable
    """
    set_plot_style()
    fig, ax = plt.subplots(figsize=figsize)
    is_hvg = stats.index.isin(list(hvgs or []))
    ax.scatter(stats.loc[~is_hvg, "mean"], stats.loc[~is_hvg, "total"], s=4, color="grey", alpha=0.5)
    if is_hvg.any():
        ax.scatter(
            stats.loc[is_hvg, "mean"],
            stats.loc[is_hvg, "total"],
            s=6,
            color=HVG_COLOR,
            label=f"HVGs ({int(is_hvg.sum())})",
        )
    if trend is not None and len(stats):
        grid = np.linspace(0, float(stats["mean"].max()), 200)
        ax.plot(grid, trend(grid), color=TREND_COLOR, linewidth=1.5, label="trend")
    ax.set_xlabel("Mean log-expression")
    ax.set_ylabel("Variance of log-expression")
    ax.set_title(title)
    ax.legend(loc="upper right")
    return _finish(fig, output_path, dpi)


def plot_embedding(
    adata: Any,
    basis: str = "X_tsne",
    color: Optional[str] = None,
    output_path: Optional[PathLike] = None,
    figsize: Tuple[float, float] = (6.0, 5.0),
    dpi: int = 200,
    point_size: float = 6.0,
) -> FigureOrPath:
    """Scatter of the first two embedding dimensions coloured by an obs column.

    Raises
    ------
    KeyError
        If the embedding or the colour column is missing
    """
    if basis not in adata.obsm:
        raise KeyError(f"Embedding '{basis}' not found in obsm")
    if color is not None and color not in adata.obs:
        raise KeyError(f"Column '{color}' not found in obs")

    set_plot_style()
    coords = np.asarray(adata.obsm[basis])[:, :2]
    data = pd.DataFrame(coords, columns=["dim1", "dim2"])
    fig, ax = plt.subplots(figsize=figsize)
    if color is None:
        ax.scatter(data["dim1"], data["dim2"], s=point_size, color="steelblue")
    else:
        values = adata.obs[color]
        if pd.api.types.is_numeric_dtype(values) and not isinstance(values.dtype, pd.CategoricalDtype):
            points = ax.scatter(data["dim1"], data["dim2"], s=point_size, c=values.to_numpy(), cmap="viridis")
            fig.colorbar(points, ax=ax, label=color)
        else:
            data[color] = values.astype(str).to_numpy()
            sns.scatterplot(
                data=data, x="dim1", y="dim2", hue=color, s=point_size, linewidth=0, ax=ax
            )
            ax.legend(loc="center left", bbox_to_anchor=(1.0, 0.5), markerscale=2)
    label = basis.replace("X_", "").upper()
    ax.set_xlabel(f"{label} 1")
    ax.set_ylabel(f"{label} 2")
    ax.set_title(f"{label}" + (f" coloured by {color}" if color else ""))
    return _finish(fig, output_path, dpi)


def marker_heatmap_data(
    adata: Any,
    markers: Dict[str, pd.DataFrame],
    cluster_key: str = "cluster",
    layer: Optional[str] = "logcounts",
    n_genes: int = 5,
) -> pd.DataFrame:
    """Mean expression of each cluster's top markers (genes x clusters)."""
    genes: List[str] = []
    for table in markers.values():
        for gene in table.sort_values("Top").index[:n_genes]:
            if gene not in genes:
                genes.append(gene)
    X = adata.layers[layer] if layer is not None and layer in adata.layers else adata.X
    idx = adata.var_names.get_indexer(genes)
    sub = X[:, idx]
    sub = sub.toarray() if sparse.issparse(sub) else np.asarray(sub)
    frame = pd.DataFrame(sub, columns=genes)
    frame["cluster"] = adata.obs[cluster_key].astype(str).to_numpy()
    means = frame.groupby("cluster").mean().T
    order = sorted(means.columns, key=lambda x: (len(x), x))
    return means[order]


def plot_marker_heatmap(
    adata: Any,
    markers: Dict[str, pd.DataFrame],
    cluster_key: str = "cluster",
    layer: Optional[str] = "logcounts",
    n_genes: int = 5,
    output_path: Optional[PathLike] = None,
    dpi: int = 200,
    cmap: str = "viridis",
) -> FigureOrPath:
    """Heatmap of mean log-expression of top markers per cluster."""
    data = marker_heatmap_data(adata, markers, cluster_key, layer, n_genes)
    set_plot_style()
    height = max(3.0, 0.25 * len(data))
    width = max(4.0, 0.5 * data.shape[1] + 2)
    fig, ax = plt.subplots(figsize=(width, height))
    sns.heatmap(
        data,
        cmap=cmap,
        ax=ax,
        xticklabels=True,
        yticklabels=True,
        cbar_kws={"label": "Mean log-expression"},
    )
    ax.set_xlabel("Cluster")
    ax.set_ylabel("")
    ax.set_title("Top markers per cluster")
    return _finish(fig, output_path, dpi)


def plot_cluster_dendrogram(
    adata: Any,
    output_path: Optional[PathLike] = None,
    figsize: Tuple[float, float] = (6.0, 4.0),
    dpi: int = 200,
) -> FigureOrPath:
    """Dendrogram of cluster centroids from a clustering run.

    Raises
    ------
    KeyError
        If the dataset has no dendrogram with a linkage matrix
    """
    dendro = adata.uns.get("cluster_dendrogram", {})
    if "linkage" not in dendro:
        raise KeyError("No cluster linkage in uns['cluster_dendrogram']")
    set_plot_style()
    fig, ax = plt.subplots(figsize=figsize)
    dendrogram(
        np.asarray(dendro["linkage"]),
        labels=[str(c) for c in dendro["categories"]],
        ax=ax,
        color_threshold=0,
        above_threshold_color=TREND_COLOR,
    )
    ax.set_xlabel("Cluster")
    ax.set_ylabel("Merge height")
    ax.set_title("Cluster centroid dendrogram")
    ax.grid(False)
    return _finish(fig, output_path, dpi)


def save_workflow_figures(report: Any, output_dir: PathLike) -> Dict[str, Path]:
    """Write every diagnostic plot a workflow report supports.

    Parameters
    ----------
    report : WorkflowReport
        Finished workflow report
    output_dir : PathLike
        Directory receiving PNG files

    Returns
    -------
    Dict[str, Path]
        Written figure per plot name
    """
    out_dir = Path(output_dir)
    outputs = report.run.outputs if report.run is not None else {}
    written: Dict[str, Path] = {}

    if "qc" in outputs:
        qc = outputs["qc"].result
        written["qc_metrics"] = plot_qc_metrics(
            qc.metrics,
            discard=qc.flags["discard"],
            batches=qc.batches,
            output_path=out_dir / "qc_metrics.png",
        )
    if "variance" in outputs:
        var = outputs["variance"].result
        block = next(iter(var.trends)) if var.trends else None
        stats = var.per_block.get(block, var.stats) if block is not None else var.stats
        written["mean_variance"] = plot_mean_variance(
            stats,
            trend=var.trends.get(block) if block is not None else None,
            hvgs=var.hvgs,
            output_path=out_dir / "mean_variance.png",
        )

    adata = report.adata
    cluster_key = None
    if "cluster" in outputs:
        cluster_key = outputs["cluster"].result.cluster_key
    for basis in ("X_tsne", "X_umap"):
        if adata is not None and basis in adata.obsm:
            name = basis.replace("X_", "")
            written[name] = plot_embedding(
                adata, basis, color=cluster_key, output_path=out_dir / f"{name}.png"
            )
    if "markers" in outputs and cluster_key is not None:
        written["marker_heatmap"] = plot_marker_heatmap(
            adata,
            outputs["markers"].result.markers,
            cluster_key=cluster_key,
            output_path=out_dir / "marker_heatmap.png",
        )
    if adata is not None and "linkage" in adata.uns.get("cluster_dendrogram", {}):
        written["cluster_dendrogram"] = plot_cluster_dendrogram(
            adata, output_path=out_dir / "cluster_dendrogram.png"
        )

    logger.info("Wrote %d diagnostic figures to %s", len(written), out_dir)
    return written
