"""Configuration classes for preprocessing stages.

All preprocessing parameters are configurable via YAML so the same
stages serve plate-based and droplet-based datasets.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


@dataclass
class LoaderConfig:
    """Configuration for dataset loading.

    Attributes
    ----------
    source : str
        Registered dataset source name (e.g. "paul15", "h5ad", "synthetic")
    source_args : Dict[str, Any]
        Keyword arguments forwarded to the source (e.g. ``path``)
    batch_key : str, optional
        Per-cell metadata column identifying the batch (plate, donor)
    make_unique : bool
        Make duplicated gene names unique
    counts_layer : str
        Layer that keeps the raw counts for the rest of the run
    """

    source: str = "synthetic"
    source_args: Dict[str, Any] = field(default_factory=dict)
    batch_key: Optional[str] = None
    make_unique: bool = True
    counts_layer: str = "counts"


@dataclass
class AnnotationConfig:
    """Configuration for gene annotation.

    Attributes
    ----------
    key_column : str
        Annotation-table column holding gene identifiers
    symbol_column : str
        Annotation-table column holding gene symbols
    chromosome_column : str
        Annotation-table column holding chromosome names
    use_symbols_as_names : bool
        Replace gene identifiers by symbols where available
    mito_chromosome : str
        Chromosome name marking mitochondrial genes
    mito_prefixes : List[str]
        Symbol prefixes marking mitochondrial genes
    """

    key_column: str = "gene_id"
    symbol_column: str = "symbol"
    chromosome_column: str = "chromosome"
    use_symbols_as_names: bool = False
    mito_chromosome: str = "MT"
    mito_prefixes: List[str] = field(default_factory=lambda: ["MT-", "mt-"])


@dataclass
class QCConfig:
    """Configuration for cell QC.

    Attributes
    ----------
    nmads : float
        Number of MADs from the median defining an outlier
    qc_vars : List[str]
        Boolean ``var`` columns whose count percentage is a QC metric
    lower_metrics : List[str]
        Metrics checked for low outliers
    upper_metrics : List[str]
        Metrics checked for high outliers
    log_metrics : List[str]
        Metrics whose thresholds are derived on log scale
    min_diff : float, optional
        Minimum distance of a threshold from the median
    two_pass : bool
        Re-derive thresholds for batches with implausible lower thresholds
    min_plausible_lower : Dict[str, float]
        Per-metric floor below which a batch's lower threshold is implausible
    rescue_mode : str
        "shared" (median of good batches' thresholds) or "global"
        (thresholds from the pooled cells of good batches)
    filter_cells : bool
        Remove discarded cells from the returned dataset
    n_jobs : int
        Parallel workers for per-batch threshold computation
    """

    nmads: float = 3.0
    qc_vars: List[str] = field(default_factory=lambda: ["mito"])
    lower_metrics: List[str] = field(default_factory=lambda: ["total_counts", "n_genes"])
    upper_metrics: List[str] = field(default_factory=lambda: ["pct_counts_mito"])
    log_metrics: List[str] = field(default_factory=lambda: ["total_counts", "n_genes"])
    min_diff: Optional[float] = None
    two_pass: bool = True
    min_plausible_lower: Dict[str, float] = field(
        default_factory=lambda: {"total_counts": 100.0, "n_genes": 50.0}
    )
    rescue_mode: str = "shared"
    filter_cells: bool = True
    n_jobs: int = 1


@dataclass
class NormalizationConfig:
    """Configuration for size-factor normalization.

    Attributes
    ----------
    method : str
        "deconvolution" (pooled size factors) or "library"
    library_key : str
        ``obs`` column with per-cell totals for the "library" method
    pool_sizes : List[int]
        Pool sizes for deconvolution
    clusters_key : str, optional
        ``obs`` column with pre-computed groups for deconvolution
    pre_cluster : bool
        Group cells by a quick k-means pre-clustering when no groups are given
    min_cluster_size : int
        Target minimum group size for pre-clustering
    min_mean : float
        Minimum average count for genes used in deconvolution
    log_base : float
        Base of the log transform
    pseudo_count : float
        Pseudo-count added before the log transform
    random_seed : int
        Random seed for pre-clustering
    """

    method: str = "deconvolution"
    library_key: str = "total_counts"
    pool_sizes: List[int] = field(default_factory=lambda: list(range(21, 102, 5)))
    clusters_key: Optional[str] = None
    pre_cluster: bool = True
    min_cluster_size: int = 100
    min_mean: float = 0.1
    log_base: float = 2.0
    pseudo_count: float = 1.0
    random_seed: int = 100


@dataclass
class VarianceConfig:
    """Configuration for mean-variance modelling and HVG selection.

    Attributes
    ----------
    method : str
        "empirical" (trend over genes) or "poisson" (simulated Poisson noise)
    batch_key : str, optional
        Fit one trend per batch and combine
    weighting : str
        "equal" or "n_cells" weights when combining batches
    min_mean : float
        Minimum mean log-expression for genes used to fit the trend
    lowess_frac : float
        Fraction of points used by each LOWESS local fit
    n_grid : int
        Grid size for the Poisson simulation
    hvg_prop : float, optional
        Fraction of genes to select as HVGs
    n_top : int, optional
        Fixed number of HVGs (overrides hvg_prop)
    random_seed : int
        Random seed for the Poisson simulation
    n_jobs : int
        Parallel workers for per-batch fitting
    """

    method: str = "empirical"
    batch_key: Optional[str] = None
    weighting: str = "equal"
    min_mean: float = 0.1
    lowess_frac: float = 0.3
    n_grid: int = 100
    hvg_prop: Optional[float] = 0.1
    n_top: Optional[int] = None
    random_seed: int = 42
    n_jobs: int = 1


@dataclass
class PreprocessingConfig:
    """Master configuration for the preprocessing stages."""

    loader: LoaderConfig = field(default_factory=LoaderConfig)
    annotation: AnnotationConfig = field(default_factory=AnnotationConfig)
    qc: QCConfig = field(default_factory=QCConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    variance: VarianceConfig = field(default_factory=VarianceConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreprocessingConfig":
        """Build from a nested dictionary (missing sections use defaults)."""
        return cls(
            loader=LoaderConfig(**data.get("loader", {})),
            annotation=AnnotationConfig(**data.get("annotation", {})),
            qc=QCConfig(**data.get("qc", {})),
            normalization=NormalizationConfig(**data.get("normalization", {})),
            variance=VarianceConfig(**data.get("variance", {})),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "PreprocessingConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested preprocessing section
        if "preprocessing" in data:
            data = data["preprocessing"]

        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "PreprocessingConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "loader": asdict(self.loader),
            "annotation": asdict(self.annotation),
            "qc": asdict(self.qc),
            "normalization": asdict(self.normalization),
            "variance": asdict(self.variance),
        }
