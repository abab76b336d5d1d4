"""Utility functions for scRNA-Workflows.

Provides statistical helpers and common utilities used across modules.
"""

from .stats import (
    benjamini_hochberg,
    compute_percentiles,
    find_elbow_point,
    outlier_bounds,
    stouffer_combine,
)

__all__ = [
    "benjamini_hochberg",
    "compute_percentiles",
    "find_elbow_point",
    "outlier_bounds",
    "stouffer_combine",
]
