"""Gene annotation by exact identifier lookup.

Maps gene identifiers to symbols and chromosome names using an
annotation table (e.g. an Ensembl BioMart export). Identifiers missing
from the table get missing values rather than an error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np
import pandas as pd

from .config import AnnotationConfig


@dataclass
class AnnotationResult:
    """Result from gene annotation.

    Attributes
    ----------
    adata : AnnData
        Annotated copy of the input
    n_genes : int
        Number of genes
    n_matched : int
        Genes found in the annotation table
    match_rate : float
        Fraction of genes found
    n_mito : int
        Genes marked mitochondrial
    """

    adata: Any = None
    n_genes: int = 0
    n_matched: int = 0
    match_rate: float = 0.0
    n_mito: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_genes": self.n_genes,
            "n_matched": self.n_matched,
            "match_rate": round(self.match_rate, 4),
            "n_mito": self.n_mito,
        }


def uniquify_names(names: pd.Index, fallback: pd.Index) -> pd.Index:
    """Make names unique by suffixing duplicates with their fallback identifier.

    A name shared by several genes becomes ``name_identifier`` for each of
    them; unique names are left unchanged.
    """
    names = pd.Index(names.astype(str))
    dup = names.duplicated(keep=False)
    out = np.where(dup, names + "_" + pd.Index(fallback.astype(str)), names)
    return pd.Index(out)


class GeneAnnotator:
    """Adds gene symbols, chromosomes and a mitochondrial flag to ``var``.

    Parameters
    ----------
    config : AnnotationConfig
        Annotation configuration
    """

    def __init__(
        self,
        config: Optional[AnnotationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or AnnotationConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _load_table(self, table: Union[pd.DataFrame, str, Path]) -> pd.DataFrame:
        from ...io.csv import load_annotation_table

        if isinstance(table, pd.DataFrame):
            df = table
            if self.config.key_column in df.columns:
                df = df.drop_duplicates(subset=self.config.key_column, keep="first")
                df = df.set_index(self.config.key_column)
            else:
                df = df[~df.index.duplicated(keep="first")]
            return df
        return load_annotation_table(table, key_column=self.config.key_column)

    def mark_mito(
        self,
        var: pd.DataFrame,
        symbol_column: str = "symbol",
        chromosome_column: str = "chromosome",
    ) -> pd.Series:
        """Flag mitochondrial genes by chromosome or symbol prefix.

        Genes without a symbol are matched on their ``var`` name.
        """
        cfg = self.config
        mito = pd.Series(False, index=var.index)
        if chromosome_column in var.columns:
            chrom = var[chromosome_column].astype("string")
            mito |= (chrom == cfg.mito_chromosome).fillna(False).astype(bool)
        names = pd.Series(var.index.astype(str), index=var.index, dtype="string")
        if symbol_column in var.columns:
            symbols = var[symbol_column].astype("string").fillna(names)
        else:
            symbols = names
        prefixes = tuple(cfg.mito_prefixes)
        if prefixes:
            mito |= symbols.str.startswith(prefixes).fillna(False).astype(bool)
        return mito

    def annotate(
        self,
        adata: Any,
        table: Optional[Union[pd.DataFrame, str, Path]] = None,
        key: Optional[str] = None,
    ) -> Any:
        """Annotate and return the AnnData only."""
        return self.run(adata, table, key).adata

    def run(
        self,
        adata: Any,
        table: Optional[Union[pd.DataFrame, str, Path]] = None,
        key: Optional[str] = None,
    ) -> AnnotationResult:
        """Annotate genes of a dataset.

        Parameters
        ----------
        adata : AnnData
            Input dataset (not modified)
        table : DataFrame or path, optional
            Annotation table; without one only the mitochondrial flag is set
        key : str, optional
            ``var`` column holding identifiers (default: ``var_names``)

        Returns
        -------
        AnnotationResult
        """
        cfg = self.config
        adata = adata.copy()
        result = AnnotationResult(n_genes=adata.n_vars)

        if key is not None and key in adata.var.columns:
            ids = pd.Index(adata.var[key].astype(str))
        else:
            ids = pd.Index(adata.var_names.astype(str))

        if table is not None:
            annot = self._load_table(table)
            annot.index = annot.index.astype(str)
            matched = ids.isin(annot.index)
            for src, dest in (
                (cfg.symbol_column, "symbol"),
                (cfg.chromosome_column, "chromosome"),
            ):
                if src in annot.columns:
                    adata.var[dest] = annot[src].reindex(ids).to_numpy()
                else:
                    self.logger.warning("Annotation table has no '%s' column", src)
                    adata.var[dest] = np.nan
            result.n_matched = int(matched.sum())
            result.match_rate = result.n_matched / max(adata.n_vars, 1)
            self.logger.info(
                "Annotated %d/%d genes (%.1f%%)",
                result.n_matched,
                adata.n_vars,
                100 * result.match_rate,
            )

            if cfg.use_symbols_as_names and "symbol" in adata.var.columns:
                symbols = adata.var["symbol"]
                has_symbol = symbols.notna() & (symbols.astype(str) != "")
                names = pd.Index(np.where(has_symbol, symbols.astype(str), ids))
                adata.var["gene_id"] = ids.to_numpy()
                adata.var_names = uniquify_names(names, ids)

        if table is None:
            mito = self.mark_mito(adata.var, cfg.symbol_column, cfg.chromosome_column)
        else:
            mito = self.mark_mito(adata.var)
        adata.var["mito"] = mito.to_numpy()
        result.n_mito = int(adata.var["mito"].sum())
        if result.n_mito == 0:
            self.logger.warning("No mitochondrial genes identified")

        result.adata = adata
        return result
