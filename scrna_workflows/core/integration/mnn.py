"""Mutual-nearest-neighbour batch integration in a shared PCA space.

Batches are projected onto a PCA basis fitted with every batch weighted
equally, then merged one at a time. At each step, pairs of cells that are
mutual nearest neighbours across the running reference and the incoming
batch define correction vectors, which are smoothed onto all incoming
cells with a Gaussian kernel.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import sparse
from sklearn.metrics.pairwise import euclidean_distances
from sklearn.neighbors import NearestNeighbors
from sklearn.utils.extmath import randomized_svd

from ...errors import InsufficientDataError
from .config import IntegrationConfig


@dataclass
class MergeStep:
    """Diagnostics of one merge step."""

    step: int
    batch: str
    n_pairs: int
    lost_var: Dict[str, float] = field(default_factory=dict)


@dataclass
class IntegrationResult:
    """Result from MNN integration.

    Attributes
    ----------
    adata : AnnData
        Copy of the input with the corrected embedding in ``obsm``
    merge_order : List[str]
        Order in which batches were merged
    steps : List[MergeStep]
        Per-step diagnostics
    n_components : int
        Dimensions of the corrected embedding
    """

    adata: Any = None
    merge_order: List[str] = field(default_factory=list)
    steps: List[MergeStep] = field(default_factory=list)
    n_components: int = 0

    @property
    def lost_var(self) -> pd.DataFrame:
        """Fraction of each batch's variance lost per merge step."""
        rows = {s.step: s.lost_var for s in self.steps}
        table = pd.DataFrame.from_dict(rows, orient="index", columns=self.merge_order)
        table.index.name = "step"
        return table

    @property
    def pair_counts(self) -> Dict[str, int]:
        return {s.batch: s.n_pairs for s in self.steps}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_batches": len(self.merge_order),
            "n_components": self.n_components,
            "merge_order": ";".join(self.merge_order),
            "min_pairs": min(self.pair_counts.values()) if self.steps else 0,
        }


def cosine_normalize(matrix: np.ndarray) -> np.ndarray:
    """Scale each row to unit L2 norm (zero rows left unchanged)."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def multi_batch_pca(
    matrix: np.ndarray,
    batches: np.ndarray,
    n_components: int,
    random_state: int = 42,
) -> np.ndarray:
    """PCA with equal batch weighting.

    The basis is fitted on per-batch centred data scaled so every batch
    contributes the same total weight. All cells are then projected after
    centring on the average of the batch means, which keeps the batch
    differences for the merge to correct.
    """
    levels = pd.unique(batches)
    centres = []
    weighted = np.empty_like(matrix)
    for level in levels:
        idx = batches == level
        centre = matrix[idx].mean(axis=0)
        centres.append(centre)
        weighted[idx] = (matrix[idx] - centre) / np.sqrt(idx.sum())
    _, _, vt = randomized_svd(weighted, n_components=n_components, random_state=random_state)
    grand_centre = np.mean(centres, axis=0)
    return (matrix - grand_centre) @ vt.T


def find_mutual_nn(
    ref: np.ndarray,
    target: np.ndarray,
    k: int,
    n_jobs: int = 1,
) -> Tuple[np.ndarray, np.ndarray]:
    """Index pairs (ref, target) that are within each other's k nearest neighbours."""
    k_ref = min(k, ref.shape[0])
    k_tgt = min(k, target.shape[0])
    nn_ref = NearestNeighbors(n_neighbors=k_ref, n_jobs=n_jobs).fit(ref)
    nn_tgt = NearestNeighbors(n_neighbors=k_tgt, n_jobs=n_jobs).fit(target)
    tgt_to_ref = nn_ref.kneighbors(target, return_distance=False)
    ref_to_tgt = nn_tgt.kneighbors(ref, return_distance=False)

    forward = {(int(r), t) for t, row in enumerate(tgt_to_ref) for r in row}
    mutual = sorted((r, int(t)) for r, row in enumerate(ref_to_tgt) for t in row if (r, int(t)) in forward)
    if not mutual:
        return np.empty(0, dtype=int), np.empty(0, dtype=int)
    pairs = np.asarray(mutual, dtype=int)
    return pairs[:, 0], pairs[:, 1]


def smooth_corrections(
    target: np.ndarray,
    mnn_target: np.ndarray,
    vectors: np.ndarray,
    sigma: float,
) -> np.ndarray:
    """Gaussian-kernel average of correction vectors onto every target cell.

    Parameters
    ----------
    target : np.ndarray
        Coordinates of the incoming batch
    mnn_target : np.ndarray
        Indices of target cells involved in MNN pairs
    vectors : np.ndarray
        Correction vector of each pair (same length as ``mnn_target``)
    sigma : float
        Kernel bandwidth on squared distances
    """
    cells, inverse = np.unique(mnn_target, return_inverse=True)
    averaged = np.zeros((cells.size, vectors.shape[1]))
    np.add.at(averaged, inverse, vectors)
    averaged /= np.bincount(inverse)[:, None]

    log_w = -euclidean_distances(target, target[cells], squared=True) / sigma
    log_w -= log_w.max(axis=1, keepdims=True)
    weights = np.exp(log_w)
    weights /= weights.sum(axis=1, keepdims=True)
    return weights @ averaged


def _center_along(matrix: np.ndarray, direction: np.ndarray) -> Tuple[np.ndarray, float]:
    """Remove within-batch variation along a unit direction.

    Returns the centred matrix and the fraction of total variance removed.
    """
    proj = matrix @ direction
    removed = proj - proj.mean()
    total = float(matrix.var(axis=0).sum())
    lost = float(removed.var()) / total if total > 0 else 0.0
    return matrix - np.outer(removed, direction), lost


class MNNIntegrator:
    """Sequential mutual-nearest-neighbour batch correction.

    Parameters
    ----------
    config : IntegrationConfig
        Integration configuration

    Example
    -------
    >>> integrator = MNNIntegrator(IntegrationConfig(batch_key="donor", n_components=50))
    >>> result = integrator.run(adata)
    >>> result.lost_var
    """

    def __init__(
        self,
        config: Optional[IntegrationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or IntegrationConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _expression(self, adata: Any) -> np.ndarray:
        X = adata.layers["logcounts"] if "logcounts" in adata.layers else adata.X
        if self.config.use_hvgs and "highly_variable" in adata.var:
            mask = adata.var["highly_variable"].to_numpy(dtype=bool)
            if mask.any():
                X = X[:, mask]
        dense = X.toarray() if sparse.issparse(X) else X
        return np.asarray(dense, dtype=float)

    def _merge_order(self, sizes: pd.Series) -> List[str]:
        if self.config.merge_order is not None:
            order = [str(b) for b in self.config.merge_order]
            unknown = sorted(set(order) - set(sizes.index))
            missing = sorted(set(sizes.index) - set(order))
            if unknown or missing:
                raise ValueError(
                    f"merge_order must list every batch exactly once "
                    f"(unknown: {unknown}, missing: {missing})"
                )
            return order
        ranked = sorted(sizes.items(), key=lambda item: (-item[1], item[0]))
        return [batch for batch, _ in ranked]

    def run(self, adata: Any) -> IntegrationResult:
        """Integrate batches into a shared corrected embedding.

        Parameters
        ----------
        adata : AnnData
            Normalized dataset with a batch column (not modified)

        Returns
        -------
        IntegrationResult

        Raises
        ------
        InsufficientDataError
            If a batch is smaller than ``n_components + 1`` or ``k`` cells,
            or a merge step finds no MNN pairs
        """
        cfg = self.config
        if cfg.batch_key not in adata.obs:
            raise KeyError(f"Batch column '{cfg.batch_key}' not found in obs")
        adata = adata.copy()
        batches = adata.obs[cfg.batch_key].astype(str).to_numpy()
        sizes = pd.Series(batches).value_counts()

        expr = self._expression(adata)
        d = int(min(cfg.n_components, expr.shape[1]))
        for batch, n in sizes.items():
            if n < d + 1:
                raise InsufficientDataError(
                    "integration", batch, f"{n} cells, need at least {d + 1} for {d} components"
                )
            if n < cfg.k:
                raise InsufficientDataError("integration", batch, f"{n} cells, fewer than k={cfg.k}")

        order = self._merge_order(sizes)
        result = IntegrationResult(merge_order=order, n_components=d)
        self.logger.info(
            "Integrating %d batches with %d components (k=%d); order: %s",
            len(order),
            d,
            cfg.k,
            ", ".join(order),
        )

        coords = multi_batch_pca(expr, batches, d, random_state=cfg.random_seed)
        if cfg.cos_norm:
            coords = cosine_normalize(coords)

        corrected = np.zeros_like(coords)
        first = np.flatnonzero(batches == order[0])
        merged_idx = [first]
        merged = coords[first]
        corrected[first] = merged

        for step, batch in enumerate(order[1:], start=1):
            idx = np.flatnonzero(batches == batch)
            target = coords[idx]
            ref_i, tgt_i = find_mutual_nn(merged, target, cfg.k, n_jobs=cfg.n_threads)
            if ref_i.size == 0:
                raise InsufficientDataError(
                    "integration", batch, "no mutual nearest neighbours with merged batches"
                )

            direction = (merged[ref_i] - target[tgt_i]).mean(axis=0)
            lost: Dict[str, float] = {}
            norm = np.linalg.norm(direction)
            if norm > 0:
                direction = direction / norm
                offset = 0
                parts = []
                for prev_batch, prev_idx in zip(order[:step], merged_idx):
                    part, lost[prev_batch] = _center_along(
                        merged[offset : offset + prev_idx.size], direction
                    )
                    parts.append(part)
                    offset += prev_idx.size
                merged = np.vstack(parts)
                target, lost[batch] = _center_along(target, direction)
            else:
                lost = {b: 0.0 for b in order[: step + 1]}

            vectors = merged[ref_i] - target[tgt_i]
            target = target + smooth_corrections(target, tgt_i, vectors, cfg.sigma)

            merged = np.vstack([merged, target])
            merged_idx.append(idx)
            result.steps.append(
                MergeStep(step=step, batch=batch, n_pairs=int(ref_i.size), lost_var=lost)
            )
            self.logger.info(
                "  step %d: merged %s (%d cells, %d MNN pairs)", step, batch, idx.size, ref_i.size
            )

        corrected[np.concatenate(merged_idx)] = merged
        adata.obsm[cfg.embedding_key] = corrected.astype(np.float32)
        adata.uns["integration"] = {
            "batch_key": cfg.batch_key,
            "merge_order": order,
            "n_components": d,
            "pairs": [s.n_pairs for s in result.steps],
        }
        result.adata = adata
        return result
