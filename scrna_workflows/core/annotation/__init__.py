"""Annotation module: reference-based cell-type classification.

Example Usage
-------------
>>> from scrna_workflows.core.annotation import (
...     PseudoBulkClassifier, ReferenceAtlas, ClassifierConfig,
... )
>>> atlas = ReferenceAtlas.from_anndata(ref_adata, label_key="cell_type")
>>> result = PseudoBulkClassifier(atlas, ClassifierConfig()).run(adata)
"""

from .config import ClassifierConfig
from .reference import ReferenceAtlas, default_de_n
from .classifier import (
    ClassificationResult,
    PseudoBulkClassifier,
    pseudo_bulk,
    spearman_to_columns,
)

__all__ = [
    "ClassifierConfig",
    "ReferenceAtlas",
    "default_de_n",
    "ClassificationResult",
    "PseudoBulkClassifier",
    "pseudo_bulk",
    "spearman_to_columns",
]
