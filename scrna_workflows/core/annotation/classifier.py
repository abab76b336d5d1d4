"""Cell-type classification of clusters against a reference atlas.

Raw counts are summed per cluster into pseudo-bulk profiles. Each profile
is correlated (Spearman) with every reference sample over marker genes of
the reference labels; a label's score is a high quantile of its samples'
correlations. Close-scoring labels are optionally re-scored on the
markers that separate them until one remains.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.stats import rankdata

from ...errors import InsufficientDataError
from .config import ClassifierConfig
from .reference import ReferenceAtlas


@dataclass
class ClassificationResult:
    """Result from pseudo-bulk classification.

    Attributes
    ----------
    adata : AnnData
        Copy of the input with the per-cell label column
    table : pd.DataFrame
        Per-cluster ``score_<label>`` columns, ``first_label``, ``label``
        and ``delta_next``
    pseudo_bulk : pd.DataFrame
        Summed counts, genes x clusters
    n_shared_genes : int
        Genes shared between dataset and reference
    """

    adata: Any = None
    table: Optional[pd.DataFrame] = None
    pseudo_bulk: Optional[pd.DataFrame] = None
    n_shared_genes: int = 0

    @property
    def labels(self) -> Dict[str, str]:
        return self.table["label"].to_dict() if self.table is not None else {}

    def to_dict(self) -> Dict[str, Any]:
        n_tuned = 0
        if self.table is not None:
            n_tuned = int((self.table["label"] != self.table["first_label"]).sum())
        return {
            "n_clusters": 0 if self.table is None else len(self.table),
            "n_shared_genes": self.n_shared_genes,
            "n_changed_by_tuning": n_tuned,
        }


def pseudo_bulk(adata: Any, group_key: str, layer: Optional[str] = "counts") -> pd.DataFrame:
    """Sum raw counts per group (genes x groups)."""
    X = adata.layers[layer] if layer is not None and layer in adata.layers else adata.X
    groups = adata.obs[group_key].astype(str)
    levels = sorted(groups.unique(), key=lambda x: (len(x), x))
    columns = {}
    for level in levels:
        idx = np.flatnonzero(groups.to_numpy() == level)
        columns[level] = np.asarray(X[idx].sum(axis=0)).ravel()
    return pd.DataFrame(columns, index=adata.var_names.astype(str))


def spearman_to_columns(profile: np.ndarray, reference: np.ndarray) -> np.ndarray:
    """Spearman correlation of one profile with every reference column."""
    rp = rankdata(profile)
    rr = np.apply_along_axis(rankdata, 0, reference)
    rp = rp - rp.mean()
    rr = rr - rr.mean(axis=0)
    denom = np.sqrt((rp**2).sum() * (rr**2).sum(axis=0))
    with np.errstate(divide="ignore", invalid="ignore"):
        corr = (rp[:, None] * rr).sum(axis=0) / denom
    return np.nan_to_num(corr, nan=0.0)


class PseudoBulkClassifier:
    """Assigns reference labels to clusters from pseudo-bulk profiles.

    Parameters
    ----------
    reference : ReferenceAtlas
        Labelled reference profiles
    config : ClassifierConfig, optional
        Classifier configuration. If None, uses defaults.

    Example
    -------
    >>> atlas = ReferenceAtlas.from_csv("ref_expr.csv", "ref_labels.csv")
    >>> result = PseudoBulkClassifier(atlas).run(adata)
    >>> result.table[["label", "delta_next"]]
    """

    def __init__(
        self,
        reference: ReferenceAtlas,
        config: Optional[ClassifierConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.reference = reference
        self.config = config or ClassifierConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _scores(
        self,
        profile: pd.Series,
        labels: Sequence[str],
        markers: Dict[str, Dict[str, List[str]]],
    ) -> Dict[str, float]:
        genes = sorted(
            {g for a in labels for b in labels if a != b for g in markers[a][b]}
        )
        if len(genes) < 2:
            genes = list(profile.index)
        ref = self.reference.expression.loc[genes]
        corr = spearman_to_columns(profile.loc[genes].to_numpy(dtype=float), ref.to_numpy())
        corr = pd.Series(corr, index=ref.columns)
        sample_labels = self.reference.labels
        return {
            label: float(np.quantile(corr[(sample_labels == label).to_numpy()], self.config.quantile))
            for label in labels
        }

    def _fine_tune(
        self,
        profile: pd.Series,
        scores: Dict[str, float],
        markers: Dict[str, Dict[str, List[str]]],
    ) -> str:
        thresh = self.config.tune_thresh
        best = max(scores.values())
        candidates = sorted(l for l, s in scores.items() if s >= best - thresh)
        while len(candidates) > 1:
            tuned = self._scores(profile, candidates, markers)
            best = max(tuned.values())
            kept = sorted(l for l, s in tuned.items() if s >= best - thresh)
            if kept == candidates:
                return max(sorted(tuned), key=lambda l: tuned[l])
            candidates = kept
        return candidates[0]

    def run(self, adata: Any) -> ClassificationResult:
        """Classify every cluster and label cells.

        Parameters
        ----------
        adata : AnnData
            Clustered dataset with raw counts (not modified)

        Returns
        -------
        ClassificationResult

        Raises
        ------
        InsufficientDataError
            If the dataset shares no genes with the reference
        """
        cfg = self.config
        if cfg.cluster_key not in adata.obs:
            raise KeyError(f"Cluster column '{cfg.cluster_key}' not found in obs")
        adata = adata.copy()
        result = ClassificationResult()

        bulk = pseudo_bulk(adata, cfg.cluster_key, cfg.counts_layer)
        shared = bulk.index.intersection(self.reference.genes)
        result.n_shared_genes = len(shared)
        if result.n_shared_genes == 0:
            raise InsufficientDataError(
                "classification", self.reference.name, "no genes shared with the reference"
            )
        self.logger.info(
            "Classifying %d clusters against '%s' (%d shared genes, %d labels)",
            bulk.shape[1],
            self.reference.name,
            result.n_shared_genes,
            len(self.reference.label_names),
        )

        reference = self.reference.subset_genes(shared)
        classifier = PseudoBulkClassifier(reference, cfg, self.logger)
        markers = reference.pairwise_markers(cfg.de_n)
        labels = reference.label_names
        log_bulk = np.log2(bulk.loc[reference.genes] / bulk.sum(axis=0) * 1e6 + 1)

        rows = []
        for cluster in log_bulk.columns:
            profile = log_bulk[cluster]
            scores = classifier._scores(profile, labels, markers)
            ranked = sorted(scores, key=lambda l: (-scores[l], l))
            first = ranked[0]
            delta = scores[first] - scores[ranked[1]] if len(ranked) > 1 else np.nan
            label = first
            if cfg.fine_tune and len(ranked) > 1:
                label = classifier._fine_tune(profile, scores, markers)
            row = {f"score_{l}": scores[l] for l in labels}
            row.update({"first_label": first, "label": label, "delta_next": delta})
            rows.append(pd.Series(row, name=cluster))

        table = pd.DataFrame(rows)
        table.index.name = cfg.cluster_key
        result.table = table
        result.pseudo_bulk = bulk

        mapping = table["label"].to_dict()
        adata.obs[cfg.label_key] = pd.Categorical(
            adata.obs[cfg.cluster_key].astype(str).map(mapping)
        )
        for cluster, row in table.iterrows():
            self.logger.info(
                "  cluster %s -> %s (delta_next=%.3f)", cluster, row["label"], row["delta_next"]
            )
        result.adata = adata
        return result
