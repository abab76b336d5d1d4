"""Preprocessing module: loading, annotation, QC, normalization, variance.

Pipeline Stages
---------------
- Loader: named dataset sources to an AnnData of raw counts
- Annotator: gene symbols, chromosomes and mitochondrial flag
- QC: per-batch MAD outlier thresholds with two-pass rescue
- Normalization: deconvolution or library-size factors, log2 transform
- Variance: mean-variance trend, biological component, HVG selection

Example Usage
-------------
>>> from scrna_workflows.core.preprocessing import (
...     DatasetLoader, LoaderConfig,
...     CellQC, QCConfig,
...     SizeFactorNormalizer, NormalizationConfig,
...     VarianceModeler, VarianceConfig,
... )
>>> adata = DatasetLoader(LoaderConfig(source="paul15")).load()
>>> qc_result = CellQC(QCConfig()).run(adata)
>>> norm_result = SizeFactorNormalizer().run(qc_result.adata)
>>> var_result = VarianceModeler().run(norm_result.adata)
"""

# Configuration classes
from .config import (
    LoaderConfig,
    AnnotationConfig,
    QCConfig,
    NormalizationConfig,
    VarianceConfig,
    PreprocessingConfig,
)

# Loading
from .loader import (
    DatasetLoader,
    LoadResult,
    get_source,
    list_sources,
    register_source,
    simulate_counts,
)

# Annotation
from .annotation import (
    GeneAnnotator,
    AnnotationResult,
    uniquify_names,
)

# Cell QC
from .qc import (
    CellQC,
    QCResult,
)

# Normalization
from .normalization import (
    SizeFactorNormalizer,
    NormalizationResult,
    log_normalize,
    pool_size_factors,
)

# Variance modelling
from .variance import (
    VarianceModeler,
    VarianceResult,
    TrendFunction,
    fit_trend,
    select_hvgs,
)

__all__ = [
    # Config
    "LoaderConfig",
    "AnnotationConfig",
    "QCConfig",
    "NormalizationConfig",
    "VarianceConfig",
    "PreprocessingConfig",
    # Loader
    "DatasetLoader",
    "LoadResult",
    "get_source",
    "list_sources",
    "register_source",
    "simulate_counts",
    # Annotation
    "GeneAnnotator",
    "AnnotationResult",
    "uniquify_names",
    # QC
    "CellQC",
    "QCResult",
    # Normalization
    "SizeFactorNormalizer",
    "NormalizationResult",
    "log_normalize",
    "pool_size_factors",
    # Variance
    "VarianceModeler",
    "VarianceResult",
    "TrendFunction",
    "fit_trend",
    "select_hvgs",
]
