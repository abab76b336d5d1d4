"""Dimensionality reduction: PCA component choice and 2-D layouts."""

from .config import ReductionConfig
from .engine import (
    DimensionalityReducer,
    ReductionResult,
    choose_n_pcs_denoise,
)

__all__ = [
    "ReductionConfig",
    "DimensionalityReducer",
    "ReductionResult",
    "choose_n_pcs_denoise",
]
