"""Unit tests for statistical utilities."""

import numpy as np
import pytest

from scrna_workflows.utils.stats import (
    MAD_SCALE,
    benjamini_hochberg,
    compute_percentiles,
    find_elbow_point,
    outlier_bounds,
    stouffer_combine,
)


class TestOutlierBounds:
    """Tests for MAD-based outlier bounds."""

    def test_symmetric_bounds(self):
        values = np.array([1.0, 2.0, 3.0, 4.0, 5.0])
        lo, hi = outlier_bounds(values, nmads=2)
        mad = 1.0 * MAD_SCALE
        assert lo == pytest.approx(3.0 - 2 * mad)
        assert hi == pytest.approx(3.0 + 2 * mad)

    def test_disabled_sides_are_infinite(self):
        lo, hi = outlier_bounds([1, 2, 3, 4, 5], lower=False)
        assert lo == -np.inf
        assert np.isfinite(hi)

        lo, hi = outlier_bounds([1, 2, 3, 4, 5], upper=False)
        assert np.isfinite(lo)
        assert hi == np.inf

    def test_log_scale_transforms_back(self):
        values = np.array([100.0, 200.0, 400.0, 800.0, 1600.0])
        lo, hi = outlier_bounds(values, nmads=1, log=True)
        logged = np.log1p(values)
        median = np.median(logged)
        mad = np.median(np.abs(logged - median)) * MAD_SCALE
        assert lo == pytest.approx(np.expm1(median - mad))
        assert hi == pytest.approx(np.expm1(median + mad))

    def test_zero_spread_returns_median(self):
        lo, hi = outlier_bounds([50.0] * 10, log=True)
        assert lo == 50.0
        assert hi == 50.0

    def test_min_diff_widens_bounds(self):
        lo, hi = outlier_bounds([10.0] * 5, min_diff=2.0)
        assert lo == pytest.approx(8.0)
        assert hi == pytest.approx(12.0)

    def test_empty_returns_nan(self):
        lo, hi = outlier_bounds([np.nan, np.inf])
        assert np.isnan(lo) and np.isnan(hi)


class TestStouffer:
    """Tests for weighted Stouffer combination."""

    def test_single_block_unchanged(self):
        p = np.array([[0.01, 0.5, 0.9]])
        np.testing.assert_allclose(stouffer_combine(p), p[0])

    def test_identical_blocks_strengthen_evidence(self):
        p = np.array([[0.05], [0.05]])
        combined = stouffer_combine(p)
        assert combined[0] < 0.05

    def test_opposite_blocks_cancel(self):
        p = np.array([[0.1], [0.9]])
        combined = stouffer_combine(p)
        assert combined[0] == pytest.approx(0.5)

    def test_weights(self):
        p = np.array([[0.001], [0.9]])
        heavy_first = stouffer_combine(p, weights=[10.0, 1.0])
        heavy_second = stouffer_combine(p, weights=[1.0, 10.0])
        assert heavy_first[0] < heavy_second[0]


class TestMultipleTesting:
    """Tests for BH correction."""

    def test_matches_manual(self):
        p = np.array([0.01, 0.04, 0.03, 0.2])
        adjusted = benjamini_hochberg(p)
        # sorted: 0.01, 0.03, 0.04, 0.2 -> 0.04, 0.0533, 0.0533, 0.2
        np.testing.assert_allclose(adjusted, [0.04, 0.04 * 4 / 3, 0.04 * 4 / 3, 0.2])

    def test_nan_preserved(self):
        adjusted = benjamini_hochberg([0.01, np.nan, 0.02])
        assert np.isnan(adjusted[1])
        assert np.isfinite(adjusted[[0, 2]]).all()


class TestHelpers:
    """Tests for percentile and elbow helpers."""

    def test_percentiles_ignore_nan(self):
        result = compute_percentiles([1.0, 2.0, np.nan, 3.0], [0, 50, 100])
        np.testing.assert_allclose(result, [1.0, 2.0, 3.0])

    def test_percentiles_empty(self):
        assert np.isnan(compute_percentiles([], [50])).all()

    def test_elbow_of_sharp_drop(self):
        values = [10.0, 9.0, 8.0, 1.0, 0.9, 0.8, 0.7, 0.6]
        assert find_elbow_point(values) == 4

    def test_elbow_short_input(self):
        assert find_elbow_point([3.0, 1.0]) == 2
