"""Unit tests for clustering module."""

import numpy as np
import pandas as pd
import pytest

from scrna_workflows.errors import InsufficientDataError
from scrna_workflows.core.clustering import (
    ClusteringConfig,
    ClusteringEngine,
    ClusteringResult,
    MarkerConfig,
    MarkerFinder,
    centroid_linkage,
    combine_comparisons,
    merge_clusters,
    rank_within,
    relabel_by_size,
    welch_one_sided,
)


def _agreement(labels, truth) -> float:
    table = pd.crosstab(np.asarray(labels), np.asarray(truth))
    return table.max(axis=1).sum() / len(labels)


class TestClusteringConfig:
    """Tests for ClusteringConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = ClusteringConfig()
        assert config.method == "graph"
        assert config.use_rep == "X_pca"
        assert config.n_neighbors == 10
        assert config.resolution == 1.0
        assert config.linkage_method == "ward"
        assert config.random_seed == 1337

    def test_custom_values(self):
        config = ClusteringConfig(method="kmeans", n_clusters=20)
        assert config.method == "kmeans"
        assert config.n_clusters == 20


class TestRelabelling:
    """Tests for size-ordered relabelling and centroid linkage."""

    def test_largest_first(self):
        labels = relabel_by_size(["a", "b", "b", "c", "b", "c"])
        assert list(labels) == ["3", "1", "1", "2", "1", "2"]
        assert list(labels.categories) == ["1", "2", "3"]

    def test_ties_by_first_appearance(self):
        labels = relabel_by_size([7, 7, 3, 3, 5])
        assert list(labels) == ["1", "1", "2", "2", "3"]

    def test_centroid_linkage_order(self):
        emb = np.array([[0.0], [0.1], [10.0], [10.1], [0.5], [0.6]])
        Z, order = centroid_linkage(emb, ["1", "1", "2", "2", "3", "3"])
        assert Z.shape == (2, 4)
        assert set(order) == {"1", "2", "3"}
        # 1 and 3 are siblings, so they sit next to each other
        assert abs(order.index("1") - order.index("3")) == 1

    def test_centroid_linkage_single_cluster(self):
        Z, order = centroid_linkage(np.zeros((3, 2)), ["1", "1", "1"])
        assert Z is None
        assert order == ["1"]


class TestClusteringEngine:
    """Tests for ClusteringEngine."""

    def test_kmeans_recovers_types(self, clustered_adata):
        config = ClusteringConfig(method="kmeans", n_clusters=2, cluster_key="km")
        result = ClusteringEngine(config).run(clustered_adata)
        assert isinstance(result, ClusteringResult)
        assert result.n_clusters == 2
        assert sum(result.cluster_sizes.values()) == clustered_adata.n_obs
        assert _agreement(result.adata.obs["km"], clustered_adata.obs["true_type"]) >= 0.9
        assert "km" not in clustered_adata.obs

    def test_kmeans_seeded(self, three_type_adata):
        config = ClusteringConfig(method="kmeans", n_clusters=3, random_seed=4)
        a = ClusteringEngine(config).run(three_type_adata).adata.obs["cluster"]
        b = ClusteringEngine(config).run(three_type_adata).adata.obs["cluster"]
        assert (a.to_numpy() == b.to_numpy()).all()

    def test_labels_sorted_by_size(self, three_type_adata):
        config = ClusteringConfig(method="kmeans", n_clusters=3)
        result = ClusteringEngine(config).run(three_type_adata)
        sizes = [result.cluster_sizes[str(i)] for i in range(1, 4)]
        assert sizes == sorted(sizes, reverse=True)
        table = result.size_table()
        assert table.index.name == "cluster"
        assert table["n_cells"].sum() == three_type_adata.n_obs

    def test_graph_clustering(self, three_type_adata):
        config = ClusteringConfig(method="graph", n_neighbors=10, resolution=0.5)
        result = ClusteringEngine(config).run(three_type_adata)
        assert result.n_clusters >= 2
        categories = list(result.adata.obs["cluster"].cat.categories)
        assert categories == [str(i) for i in range(1, result.n_clusters + 1)]

    def test_dendrogram_recorded(self, three_type_adata):
        config = ClusteringConfig(method="kmeans", n_clusters=3)
        result = ClusteringEngine(config).run(three_type_adata)
        info = result.adata.uns["cluster_dendrogram"]
        assert info["cluster_key"] == "cluster"
        assert sorted(info["order"]) == ["1", "2", "3"]
        assert info["categories"] == ["1", "2", "3"]
        assert np.asarray(info["linkage"]).shape == (2, 4)
        assert result.order == info["order"]

    def test_merge_clusters(self, three_type_adata):
        config = ClusteringConfig(method="kmeans", n_clusters=3)
        clustered = ClusteringEngine(config).run(three_type_adata).adata
        merged = merge_clusters(clustered, n_groups=2)
        assert merged.obs["cluster_merged"].nunique() == 2
        # each original cluster maps to exactly one merged group
        pairs = merged.obs.groupby("cluster", observed=True)["cluster_merged"].nunique()
        assert (pairs == 1).all()
        assert "cluster_merged" not in clustered.obs

    def test_merge_requires_dendrogram(self, clustered_adata):
        with pytest.raises(ValueError, match="dendrogram"):
            merge_clusters(clustered_adata, n_groups=1)

    def test_missing_embedding(self, normalized_adata):
        with pytest.raises(KeyError, match="X_pca"):
            ClusteringEngine().run(normalized_adata)

    def test_too_many_kmeans_clusters(self, clustered_adata):
        config = ClusteringConfig(method="kmeans", n_clusters=500)
        with pytest.raises(InsufficientDataError):
            ClusteringEngine(config).run(clustered_adata)

    def test_single_cell(self, clustered_adata):
        with pytest.raises(InsufficientDataError):
            ClusteringEngine().run(clustered_adata[:1].copy())

    def test_unknown_method(self, clustered_adata):
        with pytest.raises(ValueError, match="Unknown clustering method"):
            ClusteringEngine(ClusteringConfig(method="spectral")).run(clustered_adata)


class TestWelch:
    """Tests for the Welch t-test helpers."""

    def test_directions(self):
        host = (np.array([5.0, 1.0]), np.array([1.0, 1.0]), 20)
        other = (np.array([1.0, 5.0]), np.array([1.0, 1.0]), 20)
        diff, p_up, p_down = welch_one_sided(host, other, lfc=0.0)
        np.testing.assert_allclose(diff, [4.0, -4.0])
        assert p_up[0] < 1e-6 and p_up[1] > 0.99
        assert p_down[1] < 1e-6 and p_down[0] > 0.99

    def test_lfc_threshold(self):
        host = (np.array([2.0]), np.array([0.5]), 30)
        other = (np.array([1.0]), np.array([0.5]), 30)
        _, p_plain, _ = welch_one_sided(host, other, lfc=0.0)
        _, p_thresh, _ = welch_one_sided(host, other, lfc=1.0)
        assert p_plain[0] < 0.01
        assert p_thresh[0] == pytest.approx(0.5)

    def test_matches_welch_on_raw_values(self):
        from scipy import stats

        rng = np.random.default_rng(3)
        x = rng.normal(2.0, 1.0, size=(15, 3))
        y = rng.normal(1.0, 2.0, size=(25, 3))
        host = (x.mean(axis=0), x.var(axis=0, ddof=1), 15)
        other = (y.mean(axis=0), y.var(axis=0, ddof=1), 25)

        _, p_up, p_down = welch_one_sided(host, other, lfc=0.5)
        expected_up = stats.ttest_ind(x - 0.5, y, equal_var=False, alternative="greater").pvalue
        expected_down = stats.ttest_ind(x + 0.5, y, equal_var=False, alternative="less").pvalue
        np.testing.assert_allclose(p_up, expected_up)
        np.testing.assert_allclose(p_down, expected_down)

    def test_constant_genes(self):
        host = (np.array([1.0, 2.0]), np.zeros(2), 10)
        other = (np.array([1.0, 1.0]), np.zeros(2), 10)
        _, p_up, p_down = welch_one_sided(host, other, lfc=0.0)
        assert p_up[0] == 1.0 and p_down[0] == 1.0
        assert p_up[1] == 0.0

    def test_combine_any_is_holm_min(self):
        from statsmodels.stats.multitest import multipletests

        pvalues = np.array([[0.01, 0.4, 0.2], [0.03, 0.5, 0.9], [0.02, 0.6, 0.05]])
        ranks = np.array([[1, 3, 2], [1, 2, 3], [1, 3, 2]])
        top, combined, pick = combine_comparisons(pvalues, ranks, "any")
        holm = [multipletests(pvalues[:, g], method="holm")[1].min() for g in range(3)]
        np.testing.assert_allclose(combined, holm)
        np.testing.assert_array_equal(top, [1, 2, 2])
        np.testing.assert_array_equal(pick, [0, 0, 2])

    def test_combine_all(self):
        pvalues = np.array([[0.01, 0.4], [0.03, 0.5]])
        ranks = np.array([[1, 2], [2, 1]])
        top, combined, pick = combine_comparisons(pvalues, ranks, "all")
        np.testing.assert_allclose(combined, [0.03, 0.5])
        np.testing.assert_array_equal(top, [2, 2])
        np.testing.assert_array_equal(pick, [1, 1])

    def test_rank_within_ties(self):
        p = np.array([0.5, 0.01, 0.5, 0.2])
        genes = np.array(["d", "c", "a", "b"])
        np.testing.assert_array_equal(rank_within(p, genes), [4, 1, 3, 2])


class TestMarkerFinder:
    """Tests for MarkerFinder."""

    def test_table_layout(self, three_type_adata):
        result = MarkerFinder(MarkerConfig()).run(three_type_adata)
        assert sorted(result.markers) == ["1", "2", "3"]
        table = result.markers["1"]
        assert table.index.name == "gene"
        assert list(table.columns[:4]) == ["Top", "p_value", "FDR", "summary_logFC"]
        assert {"logFC_2", "logFC_3"} <= set(table.columns)
        assert table["Top"].is_monotonic_increasing
        assert len(table) == three_type_adata.n_vars

    def test_logfc_antisymmetric(self, three_type_adata):
        markers = MarkerFinder(MarkerConfig()).run(three_type_adata).markers
        forward = markers["1"]["logFC_2"]
        backward = markers["2"]["logFC_1"].reindex(forward.index)
        np.testing.assert_allclose(forward.to_numpy(), -backward.to_numpy())

    def test_markers_are_type_genes(self, clustered_adata):
        config = MarkerConfig(direction="up", top_cutoff=5)
        result = MarkerFinder(config).run(clustered_adata)
        # type_1 (cluster "1") over-expresses the first half of the genes
        first_half = {f"Gene_{i}" for i in range(25)}
        top = result.marker_genes("1")
        assert len(top) == 5
        assert set(top) <= first_half
        assert (result.markers["1"].loc[top, "summary_logFC"] > 0).all()

    def test_direction_down(self, clustered_adata):
        result = MarkerFinder(MarkerConfig(direction="down", top_cutoff=5)).run(clustered_adata)
        second_half = {f"Gene_{i}" for i in range(25, 50)}
        assert set(result.marker_genes("1")) <= second_half

    def test_pval_type_any(self, three_type_adata):
        all_ = MarkerFinder(MarkerConfig(pval_type="all")).run(three_type_adata).markers["1"]
        any_ = MarkerFinder(MarkerConfig(pval_type="any")).run(three_type_adata).markers["1"]
        joined = all_["Top"].to_frame("all").join(any_["Top"].to_frame("any"))
        assert (joined["any"] <= joined["all"]).all()

    def test_blocking(self, clustered_adata):
        plain = MarkerFinder(MarkerConfig()).run(clustered_adata)
        blocked = MarkerFinder(MarkerConfig(block_key="batch")).run(clustered_adata)
        assert list(blocked.markers["1"].columns) == list(plain.markers["1"].columns)
        assert blocked.marker_genes("1")
        assert np.isfinite(blocked.markers["1"]["logFC_2"]).all()

    def test_n_jobs_invariance(self, three_type_adata):
        serial = MarkerFinder(MarkerConfig(n_jobs=1)).run(three_type_adata)
        parallel = MarkerFinder(MarkerConfig(n_jobs=2)).run(three_type_adata)
        for cluster in serial.markers:
            pd.testing.assert_frame_equal(serial.markers[cluster], parallel.markers[cluster])

    def test_summary(self, three_type_adata):
        config = MarkerConfig(top_cutoff=3, pval_type="any")
        result = MarkerFinder(config).run(three_type_adata)
        summary = result.summary()
        assert list(summary["cluster"]) == ["1", "2", "3"]
        assert (summary["n_markers"] >= 3).all()
        assert result.to_dict()["n_clusters"] == 3

    def test_single_cluster(self, clustered_adata):
        adata = clustered_adata[clustered_adata.obs["cluster"] == "1"].copy()
        with pytest.raises(InsufficientDataError):
            MarkerFinder().run(adata)

    def test_tiny_cluster(self, clustered_adata):
        adata = clustered_adata.copy()
        labels = adata.obs["cluster"].astype(str).to_numpy()
        labels[0] = "3"
        adata.obs["cluster"] = labels
        with pytest.raises(InsufficientDataError) as excinfo:
            MarkerFinder().run(adata)
        assert excinfo.value.entity == "3"

    def test_missing_columns(self, clustered_adata):
        with pytest.raises(KeyError, match="leiden"):
            MarkerFinder(MarkerConfig(cluster_key="leiden")).run(clustered_adata)
        with pytest.raises(KeyError, match="donor"):
            MarkerFinder(MarkerConfig(block_key="donor")).run(clustered_adata)

    def test_invalid_options(self, clustered_adata):
        with pytest.raises(ValueError, match="direction"):
            MarkerFinder(MarkerConfig(direction="sideways")).run(clustered_adata)
        with pytest.raises(ValueError, match="pval_type"):
            MarkerFinder(MarkerConfig(pval_type="some")).run(clustered_adata)
