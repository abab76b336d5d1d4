"""Unit tests for reference-based classification."""

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from scrna_workflows.errors import InsufficientDataError
from scrna_workflows.core.annotation import (
    ClassifierConfig,
    PseudoBulkClassifier,
    ReferenceAtlas,
    default_de_n,
    pseudo_bulk,
    spearman_to_columns,
)


@pytest.fixture
def atlas(reference_tables):
    expression, labels = reference_tables
    return ReferenceAtlas.from_dataframes(expression, labels, name="toy")


class TestReferenceAtlas:
    """Tests for ReferenceAtlas."""

    def test_default_de_n(self):
        assert default_de_n(1) == 500
        assert default_de_n(2) == 333
        assert default_de_n(4) == 222

    def test_labels_aligned(self, atlas):
        assert atlas.label_names == ["type_1", "type_2"]
        assert list(atlas.labels.index) == list(atlas.expression.columns)
        assert atlas.medians.shape == (50, 2)

    def test_unlabelled_sample_rejected(self, reference_tables):
        expression, labels = reference_tables
        with pytest.raises(ValueError, match="no label"):
            ReferenceAtlas.from_dataframes(expression, labels.iloc[1:])

    def test_labels_as_list(self, reference_tables):
        expression, labels = reference_tables
        atlas = ReferenceAtlas.from_dataframes(expression, list(labels))
        assert atlas.label_names == ["type_1", "type_2"]

    def test_pairwise_markers(self, atlas):
        markers = atlas.pairwise_markers(de_n=10)
        up_in_1 = markers["type_1"]["type_2"]
        assert len(up_in_1) == 10
        assert set(up_in_1) <= {f"Gene_{i}" for i in range(25)}
        assert set(markers["type_2"]["type_1"]) <= {f"Gene_{i}" for i in range(25, 50)}

    def test_subset_genes(self, atlas):
        subset = atlas.subset_genes(["Gene_3", "Gene_1", "missing"])
        assert list(subset.genes) == ["Gene_1", "Gene_3"]
        assert subset.label_names == atlas.label_names

    def test_from_csv(self, reference_tables, tmp_path):
        expression, labels = reference_tables
        expr_path = tmp_path / "ref_expr.csv"
        labels_path = tmp_path / "ref_labels.csv"
        expression.rename_axis("gene").to_csv(expr_path)
        labels.rename("label").rename_axis("sample").to_frame().to_csv(labels_path)
        atlas = ReferenceAtlas.from_csv(expr_path, labels_path)
        assert atlas.name == "ref_expr"
        assert atlas.expression.shape == expression.shape
        assert atlas.label_names == ["type_1", "type_2"]

    def test_from_csv_missing_label_column(self, reference_tables, tmp_path):
        expression, labels = reference_tables
        expression.rename_axis("gene").to_csv(tmp_path / "e.csv")
        labels.rename("cell_type").rename_axis("sample").to_frame().to_csv(tmp_path / "l.csv")
        with pytest.raises(KeyError, match="label"):
            ReferenceAtlas.from_csv(tmp_path / "e.csv", tmp_path / "l.csv")

    def test_from_anndata(self, reference_tables):
        expression, labels = reference_tables
        ref = ad.AnnData(
            X=expression.T.to_numpy(),
            obs=pd.DataFrame({"cell_type": labels.to_numpy()}, index=expression.columns),
            var=pd.DataFrame(index=expression.index),
        )
        atlas = ReferenceAtlas.from_anndata(ref, label_key="cell_type")
        pd.testing.assert_frame_equal(atlas.expression, expression, check_names=False)
        with pytest.raises(KeyError):
            ReferenceAtlas.from_anndata(ref, label_key="missing")


class TestHelpers:
    """Tests for pseudo-bulk aggregation and correlation."""

    def test_pseudo_bulk_sums_counts(self, clustered_adata):
        bulk = pseudo_bulk(clustered_adata, "cluster")
        assert list(bulk.columns) == ["1", "2"]
        total = np.asarray(clustered_adata.layers["counts"]).sum()
        assert bulk.to_numpy().sum() == pytest.approx(total)

    def test_spearman(self):
        profile = np.array([1.0, 2.0, 3.0, 4.0])
        reference = np.column_stack([profile * 10, profile[::-1], np.ones(4)])
        corr = spearman_to_columns(profile, reference)
        np.testing.assert_allclose(corr, [1.0, -1.0, 0.0])


class TestPseudoBulkClassifier:
    """Tests for PseudoBulkClassifier."""

    def test_clusters_match_types(self, clustered_adata, atlas):
        result = PseudoBulkClassifier(atlas).run(clustered_adata)
        assert result.labels == {"1": "type_1", "2": "type_2"}
        table = result.table
        assert {"score_type_1", "score_type_2", "first_label", "delta_next"} <= set(table.columns)
        assert (table["delta_next"] > 0).all()
        assert result.n_shared_genes == 50

        predicted = result.adata.obs["predicted_label"].astype(str)
        truth = clustered_adata.obs["true_type"].astype(str)
        assert (predicted == truth).all()
        assert "predicted_label" not in clustered_adata.obs

    def test_without_fine_tuning(self, clustered_adata, atlas):
        config = ClassifierConfig(fine_tune=False, label_key="celltype")
        result = PseudoBulkClassifier(atlas, config).run(clustered_adata)
        assert (result.table["label"] == result.table["first_label"]).all()
        assert "celltype" in result.adata.obs
        assert result.to_dict()["n_changed_by_tuning"] == 0

    def test_partial_gene_overlap(self, clustered_adata, atlas):
        adata = clustered_adata[:, 10:40].copy()
        result = PseudoBulkClassifier(atlas).run(adata)
        assert result.n_shared_genes == 30
        assert result.labels == {"1": "type_1", "2": "type_2"}

    def test_no_shared_genes(self, clustered_adata, atlas):
        adata = clustered_adata.copy()
        adata.var_names = [f"Other_{i}" for i in range(adata.n_vars)]
        with pytest.raises(InsufficientDataError) as excinfo:
            PseudoBulkClassifier(atlas).run(adata)
        assert excinfo.value.stage == "classification"

    def test_missing_cluster_column(self, clustered_adata, atlas):
        config = ClassifierConfig(cluster_key="leiden")
        with pytest.raises(KeyError, match="leiden"):
            PseudoBulkClassifier(atlas, config).run(clustered_adata)
