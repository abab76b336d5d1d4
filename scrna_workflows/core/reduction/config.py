"""Configuration for dimensionality reduction."""

from dataclasses import dataclass
from typing import Union


@dataclass
class ReductionConfig:
    """Configuration for PCA and 2-D layouts.

    Attributes
    ----------
    n_pcs : str or int
        "denoise", "elbow" or a fixed number of components
    min_rank : int
        Lower clamp on the number of retained PCs
    max_rank : int
        Components computed, and upper clamp on the number retained
    use_hvgs : bool
        Run PCA on ``var["highly_variable"]`` genes when available
    svd_solver : str
        scanpy PCA solver
    use_rep : str
        ``obsm`` embedding used as layout input ("X_pca" computes PCA)
    tsne : bool
        Compute a t-SNE layout
    perplexity : float
        t-SNE perplexity
    umap : bool
        Compute a UMAP layout
    n_neighbors : int
        Neighbours of the UMAP graph
    approximate : bool
        Use approximate nearest neighbours (pynndescent) for UMAP, otherwise
        an exact scikit-learn search
    min_dist : float
        UMAP minimum distance
    random_seed : int
        Seed for PCA, t-SNE and UMAP
    n_threads : int
        Threads for t-SNE and for the neighbour search behind UMAP
    """

    n_pcs: Union[str, int] = "denoise"
    min_rank: int = 5
    max_rank: int = 50
    use_hvgs: bool = True
    svd_solver: str = "arpack"
    use_rep: str = "X_pca"
    tsne: bool = False
    perplexity: float = 30.0
    umap: bool = False
    n_neighbors: int = 15
    approximate: bool = True
    min_dist: float = 0.5
    random_seed: int = 100
    n_threads: int = 1
