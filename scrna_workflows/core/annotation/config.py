"""Configuration for reference-based cell-type classification."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class ClassifierConfig:
    """Configuration for pseudo-bulk classification.

    Attributes
    ----------
    cluster_key : str
        ``obs`` column with cluster labels to aggregate over
    counts_layer : str
        Layer with raw counts (falls back to X)
    quantile : float
        Quantile of per-sample correlations used as the label score
    de_n : int, optional
        Marker genes per label pair (default scales with label count)
    fine_tune : bool
        Re-score close labels on their own markers
    tune_thresh : float
        Score margin below the best label that keeps a label in fine-tuning
    label_key : str
        ``obs`` column receiving the per-cell label
    """

    cluster_key: str = "cluster"
    counts_layer: str = "counts"
    quantile: float = 0.8
    de_n: Optional[int] = None
    fine_tune: bool = True
    tune_thresh: float = 0.05
    label_key: str = "predicted_label"
