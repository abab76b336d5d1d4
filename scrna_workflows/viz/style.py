"""Shared styling and figure helpers for diagnostic plots."""

from __future__ import annotations

from pathlib import Path
from typing import Union

import matplotlib.pyplot as plt

PathLike = Union[str, Path]

DISCARD_COLORS = {
    False: "#3498db",  # Blue - retained
    True: "#e74c3c",   # Red - discarded
}

TREND_COLOR = "#2c3e50"
HVG_COLOR = "#e67e22"

_DEFAULT_STYLE = {
    "axes.titlesize": 12,
    "axes.labelsize": 11,
    "axes.grid": True,
    "grid.alpha": 0.3,
    "legend.frameon": False,
}


def set_plot_style() -> None:
    """Apply a lightweight matplotlib style suitable for reports."""
    plt.style.use("seaborn-v0_8" if "seaborn-v0_8" in plt.style.available else "default")
    plt.rcParams.update(_DEFAULT_STYLE)


def ensure_parent(path: PathLike) -> Path:
    """Ensure parent directory exists and return Path object."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def save_figure(fig: plt.Figure, path: PathLike, *, dpi: int = 200) -> Path:
    """Save figure to disk and close it."""
    path = ensure_parent(path)
    fig.savefig(path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return path
