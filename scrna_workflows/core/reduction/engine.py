"""PCA with data-driven component choice, plus t-SNE and UMAP layouts."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from ...errors import InsufficientDataError
from ...utils.stats import find_elbow_point
from ..preprocessing.variance import mean_var
from .config import ReductionConfig


@dataclass
class ReductionResult:
    """Result from dimensionality reduction.

    Attributes
    ----------
    adata : AnnData
        Copy of the input with new embeddings in ``obsm``
    n_pcs : int
        Retained principal components (0 when PCA was skipped)
    n_pcs_method : str
        How the component count was chosen
    variance : np.ndarray
        Variance of every computed component
    total_var : float
        Total variance of the PCA input
    tech_var : float
        Technical variance used by the denoising choice
    layouts : List[str]
        ``obsm`` keys of computed 2-D layouts
    """

    adata: Any = None
    n_pcs: int = 0
    n_pcs_method: str = ""
    variance: Optional[np.ndarray] = None
    total_var: float = 0.0
    tech_var: float = 0.0
    layouts: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_pcs": self.n_pcs,
            "n_pcs_method": self.n_pcs_method,
            "total_var": round(self.total_var, 4),
            "tech_var": round(self.tech_var, 4),
            "layouts": ";".join(self.layouts),
        }


def choose_n_pcs_denoise(variance: np.ndarray, total_var: float, tech_var: float) -> int:
    """Smallest number of PCs whose discarded variance is within the technical variance."""
    discarded = total_var - np.cumsum(variance)
    ok = np.flatnonzero(discarded <= tech_var)
    return int(ok[0]) + 1 if ok.size else int(variance.size)


class DimensionalityReducer:
    """Runs PCA and nonlinear layouts on a normalized dataset.

    Parameters
    ----------
    config : ReductionConfig
        Reduction configuration

    Example
    -------
    >>> reducer = DimensionalityReducer(ReductionConfig(n_pcs="denoise", tsne=True))
    >>> result = reducer.run(adata)
    >>> result.adata.obsm["X_tsne"]
    """

    def __init__(
        self,
        config: Optional[ReductionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ReductionConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _pca_input(self, adata: Any) -> Any:
        subset = adata
        if self.config.use_hvgs and "highly_variable" in adata.var:
            mask = adata.var["highly_variable"].to_numpy(dtype=bool)
            if mask.any():
                subset = adata[:, mask]
        subset = subset.copy()
        # scanpy restricts PCA to this column whenever it is present
        subset.var = subset.var.drop(columns=["highly_variable"], errors="ignore")
        if "logcounts" in subset.layers:
            subset.X = subset.layers["logcounts"].copy()
        return subset

    def _tech_var(self, subset: Any, tech_var: Optional[float]) -> Optional[float]:
        if tech_var is not None:
            return float(tech_var)
        if "tech" in subset.var:
            return float(subset.var["tech"].sum())
        return None

    def run_pca(self, adata: Any, tech_var: Optional[float] = None) -> Tuple[Any, ReductionResult]:
        """Compute PCA and keep the chosen number of components.

        Parameters
        ----------
        adata : AnnData
            Dataset to modify in place (callers pass a copy)
        tech_var : float, optional
            Total technical variance of the PCA genes (default: ``var["tech"]`` sum)
        """
        import scanpy as sc

        cfg = self.config
        result = ReductionResult()
        subset = self._pca_input(adata)
        if subset.n_obs < 3:
            raise InsufficientDataError("reduction", None, f"PCA needs >= 3 cells, got {subset.n_obs}")

        n_comps = int(min(cfg.max_rank, subset.n_obs - 1, subset.n_vars - 1))
        sc.tl.pca(
            subset,
            n_comps=n_comps,
            svd_solver=cfg.svd_solver,
            random_state=cfg.random_seed,
        )
        variance = np.asarray(subset.uns["pca"]["variance"], dtype=float)
        _, gene_var = mean_var(subset.X)
        result.variance = variance
        result.total_var = float(gene_var.sum())

        choice = cfg.n_pcs
        if choice == "denoise":
            tech = self._tech_var(subset, tech_var)
            if tech is None:
                self.logger.warning("No technical variance available; using elbow instead")
                choice = "elbow"
            else:
                result.tech_var = tech
                n_pcs = choose_n_pcs_denoise(variance, result.total_var, tech)
        if choice == "elbow":
            n_pcs = find_elbow_point(variance)
        elif not isinstance(choice, str):
            n_pcs = int(choice)
        elif choice != "denoise":
            raise ValueError(f"Unknown n_pcs '{choice}'. Use 'denoise', 'elbow' or an integer.")
        result.n_pcs_method = str(choice)

        n_pcs = int(np.clip(n_pcs, cfg.min_rank, cfg.max_rank))
        n_pcs = min(n_pcs, n_comps)
        result.n_pcs = n_pcs

        adata.obsm["X_pca"] = subset.obsm["X_pca"][:, :n_pcs].copy()
        adata.uns["pca"] = {
            "variance": variance[:n_pcs],
            "variance_ratio": np.asarray(subset.uns["pca"]["variance_ratio"])[:n_pcs],
            "n_pcs": n_pcs,
            "method": result.n_pcs_method,
        }
        self.logger.info(
            "PCA: %d components computed, %d retained (%s)", n_comps, n_pcs, result.n_pcs_method
        )
        return adata, result

    def run_tsne(self, adata: Any, use_rep: str) -> None:
        """t-SNE layout into ``obsm["X_tsne"]``.

        Raises
        ------
        InsufficientDataError
            If there are too few cells for the perplexity
        """
        import scanpy as sc

        cfg = self.config
        n = adata.n_obs
        if n < 3:
            raise InsufficientDataError("reduction", None, f"t-SNE needs >= 3 cells, got {n}")
        if 3 * cfg.perplexity > n - 1:
            raise InsufficientDataError(
                "reduction", None, f"perplexity {cfg.perplexity} too large for {n} cells"
            )
        sc.tl.tsne(
            adata,
            use_rep=use_rep,
            perplexity=cfg.perplexity,
            random_state=cfg.random_seed,
            n_jobs=cfg.n_threads,
        )

    def neighbor_transformer(self, n_obs: int) -> Any:
        """Neighbour search for the UMAP graph, using ``n_threads`` workers."""
        cfg = self.config
        n_neighbors = min(cfg.n_neighbors, n_obs - 1)
        if cfg.approximate:
            from pynndescent import PyNNDescentTransformer

            return PyNNDescentTransformer(
                n_neighbors=n_neighbors,
                n_jobs=cfg.n_threads,
                random_state=cfg.random_seed,
            )
        from sklearn.neighbors import KNeighborsTransformer

        # the exact search does not count the query cell itself
        return KNeighborsTransformer(
            n_neighbors=n_neighbors - 1,
            algorithm="brute",
            n_jobs=cfg.n_threads,
        )

    def run_umap(self, adata: Any, use_rep: str) -> None:
        """UMAP layout into ``obsm["X_umap"]`` from its own neighbour graph."""
        import scanpy as sc

        cfg = self.config
        n = adata.n_obs
        if n < 3:
            raise InsufficientDataError("reduction", None, f"UMAP needs >= 3 cells, got {n}")
        sc.pp.neighbors(
            adata,
            n_neighbors=min(cfg.n_neighbors, n - 1),
            use_rep=use_rep,
            transformer=self.neighbor_transformer(n),
            key_added="umap",
        )
        sc.tl.umap(
            adata,
            min_dist=cfg.min_dist,
            random_state=cfg.random_seed,
            neighbors_key="umap",
        )

    def run(
        self,
        adata: Any,
        use_rep: Optional[str] = None,
        tech_var: Optional[float] = None,
    ) -> ReductionResult:
        """Compute PCA (unless another embedding is used) and layouts.

        Parameters
        ----------
        adata : AnnData
            Normalized dataset (not modified)
        use_rep : str, optional
            Embedding used for layouts (default from config)
        tech_var : float, optional
            Technical variance for the denoising choice

        Returns
        -------
        ReductionResult
        """
        cfg = self.config
        use_rep = use_rep or cfg.use_rep
        adata = adata.copy()

        if use_rep == "X_pca":
            adata, result = self.run_pca(adata, tech_var)
        elif use_rep in adata.obsm:
            result = ReductionResult(n_pcs_method="skipped")
            self.logger.info("Using existing embedding '%s' for layouts", use_rep)
        else:
            raise KeyError(f"Embedding '{use_rep}' not found in obsm")

        if cfg.tsne:
            self.run_tsne(adata, use_rep)
            result.layouts.append("X_tsne")
        if cfg.umap:
            self.run_umap(adata, use_rep)
            result.layouts.append("X_umap")
        if result.layouts:
            self.logger.info("Computed layouts: %s", ", ".join(result.layouts))

        result.adata = adata
        return result
