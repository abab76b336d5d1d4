"""Test fixtures for scRNA-Workflows.

Provides mock data generators and test utilities.
"""

from .mock_adata import (
    create_count_adata,
    create_normalized_adata,
    create_clustered_adata,
    create_qc_adata_with_failed_batch,
    create_reference_expression,
)

__all__ = [
    "create_count_adata",
    "create_normalized_adata",
    "create_clustered_adata",
    "create_qc_adata_with_failed_batch",
    "create_reference_expression",
]
