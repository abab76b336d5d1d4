"""CSV I/O utilities for scRNA-Workflows.

Provides functions for loading count matrices, cell metadata and gene
annotation tables, and for exporting diagnostic summary tables.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def ensure_output_dir(path: PathLike) -> Path:
    """Create the directory at path if it does not exist and return it.

    Parameters
    ----------
    path : PathLike
        Directory path to create.

    Returns
    -------
    Path
        The created/existing directory path.
    """
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _read_table(path: PathLike, what: str) -> pd.DataFrame:
    """Read a CSV/TSV table, raising a descriptive error if missing."""
    table_path = Path(path)
    if not table_path.exists():
        raise FileNotFoundError(f"{what} not found: {table_path}")
    sep = "\t" if table_path.suffix.lower() in {".tsv", ".txt"} else ","
    df = pd.read_csv(table_path, sep=sep)
    if df.empty:
        raise ValueError(f"{what} {table_path} is empty")
    return df


def load_count_matrix(
    path: PathLike,
    genes_as_rows: bool = True,
    require_counts: bool = True,
) -> pd.DataFrame:
    """Read a count matrix with identifiers in the first column.

    Parameters
    ----------
    path : PathLike
        Path to CSV/TSV file.
    genes_as_rows : bool
        If True (the usual export layout), rows are genes and columns are
        cells, and the result is transposed to cells x genes.
    require_counts : bool
        Reject negative values (disable for log-expression tables).

    Returns
    -------
    pd.DataFrame
        Cells x genes count table with string indices.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the table is empty or contains negative or non-numeric counts.
    """
    df = _read_table(path, "Count matrix")
    df = df.set_index(df.columns[0])
    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)

    numeric = df.apply(pd.to_numeric, errors="coerce")
    if numeric.isna().any().any():
        raise ValueError(f"Count matrix {path} contains non-numeric values")
    if require_counts and (numeric < 0).any().any():
        raise ValueError(f"Count matrix {path} contains negative counts")

    if genes_as_rows:
        numeric = numeric.T
    return numeric


def load_cell_metadata(
    path: PathLike,
    id_column: Optional[str] = None,
) -> pd.DataFrame:
    """Read a cell-level metadata table indexed by cell identifier.

    Parameters
    ----------
    path : PathLike
        Path to cell metadata CSV file.
    id_column : str, optional
        Cell identifier column (default: first column).

    Returns
    -------
    pd.DataFrame
        Cell metadata indexed by string cell IDs.
    """
    df = _read_table(path, "Cell metadata table")
    id_column = id_column or df.columns[0]
    if id_column not in df.columns:
        raise ValueError(f"Cell ID column '{id_column}' not found in {path}")
    df[id_column] = df[id_column].astype(str)
    return df.set_index(id_column)


def load_annotation_table(
    path: PathLike,
    key_column: str = "gene_id",
    columns: Optional[List[str]] = None,
) -> pd.DataFrame:
    """Read a gene annotation table (e.g. an Ensembl BioMart export).

    Duplicate keys keep their first occurrence, mirroring an exact
    one-to-one key lookup.

    Parameters
    ----------
    path : PathLike
        Path to CSV/TSV file.
    key_column : str
        Column holding the gene identifiers used as lookup keys.
    columns : List[str], optional
        Annotation columns to keep (default: all).

    Returns
    -------
    pd.DataFrame
        Annotation table indexed by gene identifier.
    """
    df = _read_table(path, "Annotation table")
    if key_column not in df.columns:
        raise ValueError(f"Key column '{key_column}' not found in {path}")
    df[key_column] = df[key_column].astype(str)
    df = df.drop_duplicates(subset=[key_column], keep="first").set_index(key_column)
    if columns is not None:
        df = df[[c for c in columns if c in df.columns]]
    return df


def write_dataframe(df: pd.DataFrame, path: PathLike, *, index: bool = False) -> Path:
    """Write DataFrame to path ensuring the parent directory exists.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame to write.
    path : PathLike
        Output path.
    index : bool
        Whether to write row index (default: False).

    Returns
    -------
    Path
        The output path.
    """
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=index)
    return output_path


def write_tables(
    tables: Dict[str, pd.DataFrame],
    output_dir: PathLike,
    *,
    index: bool = True,
) -> Dict[str, Path]:
    """Write a set of named summary tables as ``<name>.csv`` files."""
    out_dir = ensure_output_dir(output_dir)
    written = {}
    for name, df in tables.items():
        written[name] = write_dataframe(df, out_dir / f"{name}.csv", index=index)
        logger.debug("Wrote table %s (%d rows)", name, len(df))
    return written
