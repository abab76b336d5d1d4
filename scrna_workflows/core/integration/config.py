"""Configuration for batch integration."""

from dataclasses import dataclass
from typing import List, Optional


@dataclass
class IntegrationConfig:
    """Configuration for MNN integration.

    Attributes
    ----------
    batch_key : str
        ``obs`` column with batch labels
    n_components : int
        Principal components of the multi-batch PCA (``d``)
    k : int
        Neighbours searched when finding mutual nearest neighbours
    sigma : float
        Bandwidth of the Gaussian kernel smoothing the correction vectors
        (squared distance, cosine-normalized scale)
    merge_order : List[str], optional
        Batch merge order (default: largest batch first)
    use_hvgs : bool
        Restrict to ``var["highly_variable"]`` genes when available
    cos_norm : bool
        Cosine-normalize cells in PC space before merging
    embedding_key : str
        ``obsm`` key for the corrected embedding
    n_threads : int
        Threads for the nearest-neighbour search
    random_seed : int
        Seed for the randomized SVD
    """

    batch_key: str = "batch"
    n_components: int = 50
    k: int = 20
    sigma: float = 0.1
    merge_order: Optional[List[str]] = None
    use_hvgs: bool = True
    cos_norm: bool = True
    embedding_key: str = "X_mnn"
    n_threads: int = 1
    random_seed: int = 42
