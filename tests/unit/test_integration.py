"""Unit tests for MNN batch integration."""

import numpy as np
import pandas as pd
import pytest
from sklearn.cluster import KMeans

from scrna_workflows.errors import InsufficientDataError
from scrna_workflows.core.integration import (
    IntegrationConfig,
    MNNIntegrator,
    cosine_normalize,
    find_mutual_nn,
    multi_batch_pca,
    smooth_corrections,
)


@pytest.fixture
def shifted_adata(normalized_adata):
    """Normalized data with an additive shift on batch B2."""
    adata = normalized_adata.copy()
    rng = np.random.default_rng(11)
    shift = rng.normal(0.0, 0.5, size=adata.n_vars).astype(np.float32)
    b2 = (adata.obs["batch"] == "B2").to_numpy()
    logcounts = np.asarray(adata.layers["logcounts"]).copy()
    logcounts[b2] += shift
    adata.layers["logcounts"] = logcounts
    adata.X = logcounts.copy()
    return adata


def _batch_distance(coords, batches):
    return float(
        np.linalg.norm(coords[batches == "B1"].mean(axis=0) - coords[batches == "B2"].mean(axis=0))
    )


class TestHelpers:
    """Tests for integration building blocks."""

    def test_cosine_normalize(self):
        matrix = np.array([[3.0, 4.0], [0.0, 0.0], [1.0, 0.0]])
        out = cosine_normalize(matrix)
        np.testing.assert_allclose(out[0], [0.6, 0.8])
        np.testing.assert_array_equal(out[1], [0.0, 0.0])
        np.testing.assert_allclose(np.linalg.norm(out[[0, 2]], axis=1), 1.0)

    def test_multi_batch_pca_shape(self, rng):
        matrix = rng.normal(size=(40, 12))
        batches = np.repeat(["a", "b"], 20)
        coords = multi_batch_pca(matrix, batches, n_components=5, random_state=0)
        assert coords.shape == (40, 5)

    def test_mutual_pairs(self):
        ref = np.array([[0.0, 0.0], [10.0, 0.0]])
        target = np.array([[0.1, 0.0], [10.2, 0.0], [50.0, 0.0]])
        ref_i, tgt_i = find_mutual_nn(ref, target, k=1)
        assert list(zip(ref_i, tgt_i)) == [(0, 0), (1, 1)]

    def test_k_capped_by_batch_size(self):
        ref = np.array([[0.0, 0.0]])
        target = np.array([[1.0, 1.0], [2.0, 2.0]])
        ref_i, tgt_i = find_mutual_nn(ref, target, k=5)
        assert list(zip(ref_i, tgt_i)) == [(0, 0), (0, 1)]

    def test_single_vector_applies_everywhere(self):
        target = np.array([[0.0, 0.0], [1.0, 0.0], [5.0, 5.0]])
        vectors = np.array([[2.0, -1.0]])
        corrections = smooth_corrections(target, np.array([1]), vectors, sigma=0.1)
        np.testing.assert_allclose(corrections, np.tile([2.0, -1.0], (3, 1)))

    def test_nearby_vectors_dominate(self):
        target = np.array([[0.0, 0.0], [1.0, 0.0]])
        vectors = np.array([[1.0, 0.0], [0.0, 1.0]])
        corrections = smooth_corrections(target, np.array([0, 1]), vectors, sigma=0.05)
        np.testing.assert_allclose(corrections[0], [1.0, 0.0], atol=1e-6)
        np.testing.assert_allclose(corrections[1], [0.0, 1.0], atol=1e-6)


class TestMNNIntegrator:
    """Tests for MNNIntegrator."""

    def test_removes_batch_shift(self, shifted_adata):
        config = IntegrationConfig(batch_key="batch", n_components=10, k=15, random_seed=0)
        result = MNNIntegrator(config).run(shifted_adata)
        corrected = result.adata.obsm["X_mnn"]
        assert corrected.shape == (shifted_adata.n_obs, 10)

        batches = shifted_adata.obs["batch"].astype(str).to_numpy()
        expr = np.asarray(shifted_adata.layers["logcounts"], dtype=float)
        before = cosine_normalize(multi_batch_pca(expr, batches, 10, random_state=0))
        assert _batch_distance(corrected, batches) < 0.5 * _batch_distance(before, batches)

    def test_preserves_cell_types(self, shifted_adata):
        config = IntegrationConfig(batch_key="batch", n_components=10, k=15)
        result = MNNIntegrator(config).run(shifted_adata)
        labels = KMeans(n_clusters=2, n_init=10, random_state=0).fit_predict(
            result.adata.obsm["X_mnn"]
        )
        table = pd.crosstab(labels, shifted_adata.obs["true_type"].to_numpy())
        agreement = table.max(axis=1).sum() / shifted_adata.n_obs
        assert agreement >= 0.9

    def test_diagnostics(self, shifted_adata):
        config = IntegrationConfig(batch_key="batch", n_components=10, k=15)
        result = MNNIntegrator(config).run(shifted_adata)
        assert result.merge_order == ["B1", "B2"]
        assert len(result.steps) == 1
        assert result.pair_counts["B2"] > 0
        lost = result.lost_var
        assert list(lost.columns) == ["B1", "B2"]
        assert ((lost.to_numpy() >= 0) & (lost.to_numpy() <= 1)).all()
        assert result.to_dict()["n_batches"] == 2
        assert "X_mnn" not in shifted_adata.obsm

    def test_lost_variance_per_merge_step(self, shifted_adata):
        adata = shifted_adata.copy()
        batches = adata.obs["batch"].astype(str).to_numpy()
        b1 = np.flatnonzero(batches == "B1")
        batches[b1[::2]] = "B3"
        adata.obs["batch"] = pd.Categorical(batches)

        config = IntegrationConfig(n_components=10, k=10, merge_order=["B1", "B2", "B3"])
        result = MNNIntegrator(config).run(adata)
        lost = result.lost_var
        assert list(lost.index) == [1, 2]
        assert list(lost.columns) == ["B1", "B2", "B3"]
        # a batch only appears once it has been merged
        assert np.isnan(lost.loc[1, "B3"])
        assert lost.loc[1, ["B1", "B2"]].notna().all()
        assert lost.loc[2].notna().all()
        assert adata.obsm.get("X_mnn") is None
        assert result.adata.obsm["X_mnn"].shape == (adata.n_obs, 10)

    def test_largest_batch_first(self, shifted_adata):
        adata = shifted_adata[10:].copy()
        result = MNNIntegrator(IntegrationConfig(n_components=10, k=15)).run(adata)
        assert result.merge_order == ["B2", "B1"]

    def test_explicit_merge_order(self, shifted_adata):
        config = IntegrationConfig(n_components=10, k=15, merge_order=["B2", "B1"])
        result = MNNIntegrator(config).run(shifted_adata)
        assert result.merge_order == ["B2", "B1"]

    def test_invalid_merge_order(self, shifted_adata):
        config = IntegrationConfig(n_components=10, k=15, merge_order=["B1", "B9"])
        with pytest.raises(ValueError, match="merge_order"):
            MNNIntegrator(config).run(shifted_adata)

    def test_batch_too_small_for_components(self, shifted_adata):
        adata = shifted_adata[:60].copy()
        with pytest.raises(InsufficientDataError) as excinfo:
            MNNIntegrator(IntegrationConfig(n_components=10, k=5)).run(adata)
        assert excinfo.value.entity == "B2"
        assert excinfo.value.stage == "integration"

    def test_batch_smaller_than_k(self, shifted_adata):
        with pytest.raises(InsufficientDataError, match="k=60"):
            MNNIntegrator(IntegrationConfig(n_components=10, k=60)).run(shifted_adata)

    def test_missing_batch_column(self, shifted_adata):
        with pytest.raises(KeyError, match="donor"):
            MNNIntegrator(IntegrationConfig(batch_key="donor")).run(shifted_adata)

    def test_hvg_subset(self, shifted_adata):
        adata = shifted_adata.copy()
        mask = np.zeros(adata.n_vars, dtype=bool)
        mask[:20] = True
        adata.var["highly_variable"] = mask
        result = MNNIntegrator(IntegrationConfig(n_components=30, k=15)).run(adata)
        assert result.n_components == 20
