"""Tests for the PyDESeq2 backend (skipped when pydeseq2 is not installed)."""

import inspect

import numpy as np
import pytest

pytest.importorskip("pydeseq2")

from rnaseq_de.config import PipelineConfig
from rnaseq_de.de_analysis import fit_model, run_wald_test
from rnaseq_de.errors import ContrastError
from rnaseq_de.model import ContrastSpec
from rnaseq_de.pipeline import DEPipeline
from rnaseq_de.pydeseq2_engine import PyDESeq2Engine, find_coefficient

FIBROSIS_VS_NORMAL = ContrastSpec("condition", "fibrosis", "normal")


@pytest.fixture(scope="module")
def pydeseq2_engine():
    return PyDESeq2Engine(n_cpus=1)


class TestFindCoefficient:

    def test_formula_style(self):
        columns = ["Intercept", "condition[T.fibrosis]"]
        assert find_coefficient(columns, "condition", "fibrosis") == "condition[T.fibrosis]"

    def test_legacy_style(self):
        columns = ["Intercept", "condition_fibrosis_vs_normal"]
        assert find_coefficient(columns, "condition", "fibrosis") == "condition_fibrosis_vs_normal"

    def test_missing(self):
        with pytest.raises(ContrastError):
            find_coefficient(["Intercept"], "condition", "fibrosis")


class TestPyDESeq2Engine:

    def test_size_factors(self, pydeseq2_engine, simulated_counts):
        factors = pydeseq2_engine.estimate_size_factors(simulated_counts)
        assert list(factors.index) == simulated_counts.samples
        assert (factors > 0).all()

    def test_recovers_simulated_effects(
        self, pydeseq2_engine, simulated_counts, simulated_metadata
    ):
        model = fit_model(
            simulated_counts, simulated_metadata, pydeseq2_engine, reference_level="normal"
        )
        results = run_wald_test(model, FIBROSIS_VS_NORMAL, pydeseq2_engine)
        frame = results.to_frame()

        up = [f"GENE{i:03d}" for i in range(10)]
        down = [f"GENE{i:03d}" for i in range(10, 15)]
        assert (frame.loc[up, "log2FoldChange"] > 2).all()
        assert (frame.loc[down, "log2FoldChange"] < -2).all()
        assert (frame.loc[up + down, "padj"] < 0.05).all()
        assert results.padj_violations() == []

    def test_pipeline(self, pydeseq2_engine, simulated_counts, simulated_metadata):
        result = DEPipeline(PipelineConfig(), engine=pydeseq2_engine).run(
            simulated_counts, simulated_metadata
        )
        contrast = result["condition_fibrosis_vs_normal"]
        raw = contrast.results.column("log2FoldChange")
        shrunk = contrast.shrunken.column("log2FoldChange")
        assert (shrunk.abs() <= raw.abs() + 1e-12).all()
        assert np.sign(shrunk["GENE000"]) == np.sign(raw["GENE000"])
        assert result.transformed.shape == simulated_counts.shape

    def test_reversed_contrast_shrinks_with_flipped_sign(
        self, pydeseq2_engine, simulated_counts, simulated_metadata
    ):
        config = PipelineConfig(contrasts=[["condition", "normal", "fibrosis"]])
        result = DEPipeline(config, engine=pydeseq2_engine).run(
            simulated_counts, simulated_metadata
        )
        assert result.model.reference_level == "fibrosis"
        shrunk = result["condition_normal_vs_fibrosis"].shrunken
        assert shrunk.column("log2FoldChange")["GENE000"] < 0

    def test_toy_scenario(self, pydeseq2_engine, toy_counts, toy_metadata):
        config = PipelineConfig(lfc_threshold=0.0)
        result = DEPipeline(config, engine=pydeseq2_engine).run(toy_counts, toy_metadata)
        frame = result["condition_fibrosis_vs_normal"].results.to_frame()

        assert frame.loc["induced", "padj"] < 0.05
        assert frame.loc["induced", "log2FoldChange"] > 0
        # null genes are either tested non-significant or filtered out (NaN)
        for gene in ("null_a", "null_b"):
            assert not frame.loc[gene, "padj"] < 0.05

        factors = result.size_factors
        assert factors["normal_2"] / factors["normal_1"] == pytest.approx(2.0, rel=1e-6)


def test_dataset_accepts_formula_design():
    from pydeseq2.dds import DeseqDataSet

    assert "design" in inspect.signature(DeseqDataSet.__init__).parameters
