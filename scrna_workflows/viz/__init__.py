"""Visualization module for scRNA-Workflows.

Provides diagnostic plots for the workflow stages: QC metrics by
discard status, the mean-variance trend, 2-D embeddings, marker
heatmaps and the cluster centroid dendrogram. Built on matplotlib and
seaborn.
"""

from .style import ensure_parent, save_figure, set_plot_style
from .diagnostics import (
    marker_heatmap_data,
    plot_cluster_dendrogram,
    plot_embedding,
    plot_marker_heatmap,
    plot_mean_variance,
    plot_qc_metrics,
    save_workflow_figures,
)

__all__ = [
    "ensure_parent",
    "save_figure",
    "set_plot_style",
    "marker_heatmap_data",
    "plot_cluster_dendrogram",
    "plot_embedding",
    "plot_marker_heatmap",
    "plot_mean_variance",
    "plot_qc_metrics",
    "save_workflow_figures",
]
