"""I/O utilities for scRNA-Workflows.

Provides logging, CSV I/O for count matrices and lookup tables, and
summary-table export.
"""

from .logging import get_logger, get_timestamped_log_path, log_json, log_yaml
from .csv import (
    ensure_output_dir,
    load_annotation_table,
    load_cell_metadata,
    load_count_matrix,
    write_dataframe,
    write_tables,
)

__all__ = [
    # Logging
    "get_logger",
    "get_timestamped_log_path",
    "log_json",
    "log_yaml",
    # CSV I/O
    "ensure_output_dir",
    "load_annotation_table",
    "load_cell_metadata",
    "load_count_matrix",
    "write_dataframe",
    "write_tables",
]
