"""Tests for sample alignment, size factors and the VST views."""

from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest

from rnaseq_de.align import align_counts, check_aligned
from rnaseq_de.errors import AlignmentError, NormalizationError, ShapeError
from rnaseq_de.model import CountMatrix
from rnaseq_de.normalization import (
    check_against_median_of_ratios,
    median_of_ratios,
    normalize_counts,
)
from rnaseq_de.transform import (
    pca_coordinates,
    sample_correlation,
    top_variable_genes,
    variance_stabilize,
)


class TestAlignCounts:

    def test_reorders_to_metadata(self, toy_counts, toy_metadata):
        shuffled = toy_counts.select_samples(list(reversed(toy_counts.samples)))
        aligned = align_counts(shuffled, toy_metadata)
        assert aligned.samples == toy_metadata.sample_ids
        pd.testing.assert_frame_equal(aligned.to_frame(), toy_counts.to_frame())

    def test_idempotent(self, toy_counts, toy_metadata):
        once = align_counts(toy_counts, toy_metadata)
        twice = align_counts(once, toy_metadata)
        pd.testing.assert_frame_equal(once.to_frame(), twice.to_frame())

    def test_extra_sample_in_counts(self, toy_counts, toy_metadata):
        frame = toy_counts.to_frame()
        frame["stray"] = 1
        with pytest.raises(AlignmentError, match="stray"):
            align_counts(CountMatrix(frame), toy_metadata)

    def test_missing_sample_in_counts(self, toy_counts, toy_metadata):
        trimmed = toy_counts.select_samples(toy_counts.samples[:3])
        with pytest.raises(AlignmentError, match="fibrosis_2"):
            align_counts(trimmed, toy_metadata)

    def test_check_aligned(self, toy_counts, toy_metadata):
        check_aligned(toy_counts, toy_metadata, stage="test")
        shuffled = toy_counts.select_samples(list(reversed(toy_counts.samples)))
        with pytest.raises(AlignmentError):
            check_aligned(shuffled, toy_metadata, stage="test")


class TestMedianOfRatios:

    def test_scaled_library(self):
        base = np.array([[10, 20], [30, 60], [5, 10]], dtype=float)
        factors = median_of_ratios(base)
        assert factors[1] / factors[0] == pytest.approx(2.0)
        assert np.prod(factors) == pytest.approx(1.0)

    def test_genes_with_zeros_ignored(self):
        values = np.array([[10, 20], [0, 500], [4, 8]], dtype=float)
        factors = median_of_ratios(values)
        assert factors[1] / factors[0] == pytest.approx(2.0)

    def test_no_usable_gene(self):
        with pytest.raises(NormalizationError):
            median_of_ratios(np.array([[0, 1], [1, 0]]))


class TestNormalizeCounts:

    def test_positive_and_exact(self, toy_counts, engine):
        size_factors, normalized = normalize_counts(toy_counts, engine)
        assert (size_factors.to_series() > 0).all()
        raw = toy_counts.to_frame()
        for sample in toy_counts.samples:
            expected = raw[sample] / size_factors[sample]
            np.testing.assert_array_equal(normalized.to_frame()[sample].values, expected.values)

    def test_toy_size_factors(self, toy_counts, engine):
        size_factors, normalized = normalize_counts(toy_counts, engine)
        assert size_factors["normal_2"] / size_factors["normal_1"] == pytest.approx(2.0)
        # the null genes become flat after normalization
        np.testing.assert_allclose(normalized.to_frame().loc["null_a"], 100 / size_factors["normal_1"])

    def test_zero_gene_kept(self, engine):
        frame = pd.DataFrame(
            {"s1": [10, 0, 5], "s2": [20, 0, 10]}, index=["a", "zero", "b"]
        )
        _, normalized = normalize_counts(CountMatrix(frame), engine)
        assert normalized.to_frame().loc["zero"].tolist() == [0.0, 0.0]

    def test_non_positive_factor_rejected(self, toy_counts):
        bad = MagicMock()
        bad.estimate_size_factors.return_value = pd.Series(
            [1.0, 0.0, 1.0, 1.0], index=toy_counts.samples
        )
        with pytest.raises(NormalizationError):
            normalize_counts(toy_counts, bad)

    def test_wrong_samples_rejected(self, toy_counts):
        bad = MagicMock()
        bad.estimate_size_factors.return_value = pd.Series([1.0, 1.0], index=["x", "y"])
        with pytest.raises(ShapeError):
            normalize_counts(toy_counts, bad)

    def test_factor_order_follows_counts(self, toy_counts):
        engine = MagicMock()
        engine.estimate_size_factors.return_value = pd.Series(
            [4.0, 3.0, 2.0, 1.0], index=list(reversed(toy_counts.samples))
        )
        size_factors, _ = normalize_counts(toy_counts, engine)
        assert size_factors.samples == toy_counts.samples
        assert size_factors["normal_1"] == 1.0

    def test_engine_factors_match_median_of_ratios(self, toy_counts, engine):
        size_factors, _ = normalize_counts(toy_counts, engine)
        assert check_against_median_of_ratios(size_factors, toy_counts)

    def test_rescaled_factors_agree(self, toy_counts):
        reference = median_of_ratios(toy_counts.values)
        scaled = MagicMock()
        scaled.estimate_size_factors.return_value = pd.Series(
            reference * 3.0, index=toy_counts.samples
        )
        size_factors, _ = normalize_counts(toy_counts, scaled)
        assert check_against_median_of_ratios(size_factors, toy_counts)

    def test_disagreeing_factors_warn(self, toy_counts, caplog):
        skewed = MagicMock()
        skewed.estimate_size_factors.return_value = pd.Series(
            [1.0, 1.0, 1.0, 1.0], index=toy_counts.samples
        )
        with caplog.at_level("WARNING", logger="rnaseq_de.normalization"):
            size_factors, normalized = normalize_counts(toy_counts, skewed)
        assert "median-of-ratios" in caplog.text
        assert not check_against_median_of_ratios(size_factors, toy_counts)
        # the engine's factors are still the ones applied
        assert normalized.to_frame().loc["null_a", "normal_2"] == 200.0


class TestTransform:

    def test_vst_shape(self, toy_counts, toy_metadata, engine):
        transformed = variance_stabilize(toy_counts, toy_metadata, engine)
        assert transformed.shape == toy_counts.shape
        assert transformed.blind

    def test_vst_shape_mismatch(self, toy_counts, toy_metadata):
        engine = MagicMock()
        engine.variance_stabilize.return_value = pd.DataFrame(
            np.zeros((2, 4)), index=["null_a", "induced"], columns=toy_counts.samples
        )
        with pytest.raises(ShapeError):
            variance_stabilize(toy_counts, toy_metadata, engine)

    def test_correlation_symmetric(self, simulated_counts, simulated_metadata, engine):
        transformed = variance_stabilize(simulated_counts, simulated_metadata, engine)
        corr = sample_correlation(transformed)
        assert corr.shape == (12, 12)
        np.testing.assert_allclose(np.diag(corr), 1.0)
        np.testing.assert_allclose(corr.values, corr.values.T)

    def test_top_variable(self, simulated_counts, simulated_metadata, engine):
        transformed = variance_stabilize(simulated_counts, simulated_metadata, engine)
        top = top_variable_genes(transformed, n=15)
        assert len(top) == 15
        # the simulated effects dominate the variance
        assert len(set(top.index) & {f"GENE{i:03d}" for i in range(15)}) >= 12

    def test_pca_separates_conditions(self, simulated_counts, simulated_metadata, engine):
        transformed = variance_stabilize(simulated_counts, simulated_metadata, engine)
        pca = pca_coordinates(transformed, simulated_metadata, n_top=60)
        coords = pca.coordinates
        assert list(coords.columns[:2]) == ["PC1", "PC2"]
        assert "condition" in coords.columns
        fibrosis = coords.loc[coords["condition"] == "fibrosis", "PC1"]
        normal = coords.loc[coords["condition"] == "normal", "PC1"]
        assert fibrosis.max() < normal.min() or fibrosis.min() > normal.max()
        assert pca.explained_variance_ratio["PC1"] > 0.5
