"""Pytest configuration and shared fixtures for scRNA-Workflows tests."""

import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Import mock data generators
from tests.fixtures import (
    create_count_adata,
    create_normalized_adata,
    create_clustered_adata,
    create_qc_adata_with_failed_batch,
    create_reference_expression,
)


# ============================================================================
# AnnData Fixtures
# ============================================================================


@pytest.fixture
def count_adata():
    """Raw counts: 100 cells x 50 genes, 2 types, 2 batches."""
    return create_count_adata()


@pytest.fixture
def mito_adata():
    """Raw counts with 5 trailing mitochondrial genes."""
    return create_count_adata(n_cells=80, n_genes=40, n_mito=5, seed=3)


@pytest.fixture
def normalized_adata():
    """Library-size normalized counts with counts and logcounts layers."""
    return create_normalized_adata()


@pytest.fixture
def clustered_adata():
    """Normalized data with ``obs["cluster"]`` set to the true types."""
    return create_clustered_adata()


@pytest.fixture
def three_type_adata():
    """Normalized data with three clusters across two batches."""
    return create_clustered_adata(n_cells=120, n_genes=60, n_types=3, seed=5)


@pytest.fixture
def failed_batch_adata():
    """Three batches where B3 holds mostly damaged cells."""
    return create_qc_adata_with_failed_batch()


@pytest.fixture
def reference_tables():
    """Reference expression (genes x samples) and labels."""
    return create_reference_expression()


@pytest.fixture
def annotation_table() -> pd.DataFrame:
    """Annotation table for the simulated ``ENSG`` identifiers."""
    ids = [f"ENSG{i:08d}" for i in range(50)]
    symbols = [f"SYM{i}" for i in range(48)] + ["MT-CO1", "MT-ND1"]
    chromosomes = ["1"] * 48 + ["MT", "MT"]
    return pd.DataFrame({"gene_id": ids, "symbol": symbols, "chromosome": chromosomes})


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def sample_pipeline_config(tmp_path) -> Path:
    """Create sample pipeline configuration file."""
    import yaml

    config = {
        "pipeline": {
            "name": "test_pipeline",
            "version": "1.0",
        },
        "global": {
            "batch_key": "batch",
            "n_jobs": 1,
            "random_seed": 0,
            "output_dir": str(tmp_path / "output"),
            "n_cells": 100,
        },
        "workflow": {
            "preprocessing": {
                "normalization": {"method": "library"},
                "variance": {"hvg_prop": 0.5},
            },
            "reduction": {"n_pcs": 5, "min_rank": 2, "max_rank": 10},
            "clustering": {"method": "kmeans", "n_clusters": 2},
        },
        "stages": {
            "load": {
                "name": "Load dataset",
                "handler": "load",
                "args": {"source": "synthetic", "n_cells": "{global.n_cells}", "n_genes": 50},
            },
            "annotate": {"handler": "annotate", "depends_on": ["load"]},
            "qc": {"handler": "qc", "depends_on": ["annotate"]},
            "normalize": {"handler": "normalize", "depends_on": ["qc"]},
            "variance": {"handler": "variance", "depends_on": ["normalize"]},
            "reduce": {"handler": "reduce", "depends_on": ["variance"]},
            "cluster": {"handler": "cluster", "depends_on": ["reduce"]},
        },
    }

    path = tmp_path / "pipeline.yaml"
    with open(path, "w") as f:
        yaml.dump(config, f, sort_keys=False)

    return path


@pytest.fixture
def sample_workflow_yaml(tmp_path) -> Path:
    """Create sample workflow configuration file with a nested section."""
    content = """
workflow:
  name: yaml_workflow
  batch_key: plate
  n_jobs: 2
  random_seed: 11
  preprocessing:
    qc:
      nmads: 4
  clustering:
    method: kmeans
    n_clusters: 7
"""
    path = tmp_path / "workflow.yaml"
    path.write_text(content)
    return path


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(0)
