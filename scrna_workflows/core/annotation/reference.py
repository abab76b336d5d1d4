"""Reference atlas of labelled expression profiles.

A reference is a genes x samples log-expression table with one label per
sample. Marker genes between every pair of labels are precomputed from
per-label medians.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import numpy as np
import pandas as pd
from scipy import sparse

logger = logging.getLogger(__name__)


def default_de_n(n_labels: int) -> int:
    """Markers per label pair, decreasing as the number of labels grows."""
    return int(round(500 * (2.0 / 3.0) ** np.log2(max(n_labels, 1))))


@dataclass
class ReferenceAtlas:
    """Labelled reference expression profiles.

    Attributes
    ----------
    expression : pd.DataFrame
        Log-expression, genes as rows and samples as columns
    labels : pd.Series
        Label per sample, indexed like the expression columns
    name : str
        Reference name for reporting
    """

    expression: pd.DataFrame
    labels: pd.Series
    name: str = "reference"
    _medians: Optional[pd.DataFrame] = field(default=None, repr=False)

    def __post_init__(self):
        self.labels = self.labels.astype(str)
        missing = self.expression.columns.difference(self.labels.index)
        if len(missing):
            raise ValueError(f"{len(missing)} reference samples have no label")
        self.labels = self.labels.reindex(self.expression.columns)
        if self.expression.index.has_duplicates:
            self.expression = self.expression[~self.expression.index.duplicated(keep="first")]
        self.expression.index = self.expression.index.astype(str)

    @classmethod
    def from_dataframes(
        cls, expression: pd.DataFrame, labels: Union[pd.Series, Iterable[str]], name: str = "reference"
    ) -> "ReferenceAtlas":
        """Build from an expression table and per-sample labels."""
        if not isinstance(labels, pd.Series):
            labels = pd.Series(list(labels), index=expression.columns)
        return cls(expression=expression.astype(float), labels=labels, name=name)

    @classmethod
    def from_csv(
        cls,
        expression_path: Union[str, Path],
        labels_path: Union[str, Path],
        label_column: str = "label",
        name: Optional[str] = None,
    ) -> "ReferenceAtlas":
        """Load a reference from an expression CSV and a sample-label CSV."""
        from ...io.csv import load_cell_metadata, load_count_matrix

        expression = load_count_matrix(expression_path, genes_as_rows=True, require_counts=False).T
        meta = load_cell_metadata(labels_path)
        if label_column not in meta.columns:
            raise KeyError(f"Label column '{label_column}' not found in {labels_path}")
        return cls.from_dataframes(
            expression, meta[label_column], name=name or Path(expression_path).stem
        )

    @classmethod
    def from_anndata(
        cls,
        adata: Any,
        label_key: str,
        layer: Optional[str] = None,
        name: str = "reference",
    ) -> "ReferenceAtlas":
        """Build from an AnnData of log-expression (samples as observations)."""
        if label_key not in adata.obs:
            raise KeyError(f"Label column '{label_key}' not found in obs")
        X = adata.layers[layer] if layer is not None else adata.X
        X = X.toarray() if sparse.issparse(X) else np.asarray(X)
        expression = pd.DataFrame(
            X.T, index=adata.var_names.astype(str), columns=adata.obs_names.astype(str)
        )
        labels = pd.Series(adata.obs[label_key].to_numpy(), index=expression.columns)
        return cls.from_dataframes(expression, labels, name=name)

    @property
    def genes(self) -> pd.Index:
        return self.expression.index

    @property
    def label_names(self) -> List[str]:
        return sorted(self.labels.unique())

    @property
    def medians(self) -> pd.DataFrame:
        """Per-label median expression (genes x labels)."""
        if self._medians is None:
            self._medians = self.expression.T.groupby(self.labels.to_numpy()).median().T
        return self._medians

    def subset_genes(self, genes: Iterable[str]) -> "ReferenceAtlas":
        """Reference restricted to the given genes (order of the reference kept)."""
        keep = self.expression.index.isin(list(genes))
        return ReferenceAtlas(
            expression=self.expression.loc[keep], labels=self.labels, name=self.name
        )

    def pairwise_markers(self, de_n: Optional[int] = None) -> Dict[str, Dict[str, List[str]]]:
        """Top genes up in each label relative to each other label.

        Genes are ranked by median difference, ties by gene name; only
        genes with a positive difference are kept.
        """
        labels = self.label_names
        n = de_n if de_n is not None else default_de_n(len(labels))
        medians = self.medians
        genes = np.asarray(medians.index, dtype=str)
        markers: Dict[str, Dict[str, List[str]]] = {}
        for a in labels:
            markers[a] = {}
            for b in labels:
                if a == b:
                    continue
                diff = (medians[a] - medians[b]).to_numpy()
                positive = np.flatnonzero(diff > 0)
                order = positive[np.lexsort((genes[positive], -diff[positive]))]
                markers[a][b] = list(genes[order[:n]])
        return markers
