"""Tests for the rnaseq-de command line."""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from rnaseq_de.cli import cli, contrast_from_filename
from rnaseq_de.model import ContrastSpec

LABEL = "condition_fibrosis_vs_normal"


@pytest.fixture
def inputs(tmp_path, simulated_counts, simulated_metadata):
    counts_path = tmp_path / "counts.csv"
    simulated_counts.to_frame().to_csv(counts_path, index_label="gene_id")
    metadata_path = tmp_path / "metadata.csv"
    simulated_metadata.to_frame().to_csv(metadata_path, index_label="sample")
    return counts_path, metadata_path


@pytest.fixture
def fake_engine(engine):
    with patch("rnaseq_de.cli.build_engine", return_value=engine) as mock_build:
        yield mock_build


class TestRunCommand:

    def test_run(self, tmp_path, inputs, fake_engine):
        counts_path, metadata_path = inputs
        out = tmp_path / "out"
        result = CliRunner().invoke(
            cli,
            [
                "run",
                "--counts", str(counts_path),
                "--metadata", str(metadata_path),
                "--contrast", "condition", "fibrosis", "normal",
                "--alpha", "0.01",
                "--output-dir", str(out),
            ],
        )
        assert result.exit_code == 0, result.output
        assert "DIFFERENTIAL EXPRESSION ANALYSIS RESULTS" in result.output
        assert (out / f"{LABEL}_results.csv").exists()
        summary = json.loads((out / "summary.json").read_text())
        assert summary["config"]["alpha"] == 0.01
        fake_engine.assert_called_once()

    def test_config_file_with_override(self, tmp_path, inputs, fake_engine):
        counts_path, metadata_path = inputs
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({"genotype": "ko", "lfc_threshold": 1.0}))
        out = tmp_path / "out"
        result = CliRunner().invoke(
            cli,
            [
                "run",
                "--counts", str(counts_path),
                "--metadata", str(metadata_path),
                "--config", str(config_path),
                "--lfc-threshold", "0.5",
                "--no-shrink",
                "--output-dir", str(out),
            ],
        )
        assert result.exit_code == 0, result.output
        summary = json.loads((out / "summary.json").read_text())
        assert summary["config"]["genotype"] == "ko"
        assert summary["config"]["lfc_threshold"] == 0.5
        assert summary["config"]["shrink"] is False
        assert summary["n_samples"] == 6
        assert not (out / f"{LABEL}_shrunken.csv").exists()

    def test_pipeline_error_is_reported(self, tmp_path, inputs, fake_engine):
        counts_path, metadata_path = inputs
        result = CliRunner().invoke(
            cli,
            [
                "run",
                "--counts", str(counts_path),
                "--metadata", str(metadata_path),
                "--contrast", "condition", "fibrosis", "healthy",
                "--output-dir", str(tmp_path / "out"),
            ],
        )
        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "healthy" in result.output

    def test_missing_counts_file(self, tmp_path, inputs):
        _, metadata_path = inputs
        result = CliRunner().invoke(
            cli,
            [
                "run",
                "--counts", str(tmp_path / "missing.csv"),
                "--metadata", str(metadata_path),
            ],
        )
        assert result.exit_code == 2


class TestSummaryCommand:

    @pytest.fixture
    def results_path(self, tmp_path, inputs, fake_engine):
        counts_path, metadata_path = inputs
        out = tmp_path / "out"
        CliRunner().invoke(
            cli,
            [
                "run",
                "--counts", str(counts_path),
                "--metadata", str(metadata_path),
                "--output-dir", str(out),
            ],
        )
        return out / f"{LABEL}_results.csv"

    def test_refilter(self, results_path):
        strict = CliRunner().invoke(cli, ["summary", "--results", str(results_path), "--alpha", "0"])
        loose = CliRunner().invoke(cli, ["summary", "--results", str(results_path), "--alpha", "1"])
        assert strict.exit_code == 0, strict.output
        assert "Significant: 0" in strict.output
        assert "Significant: 60" in loose.output
        assert "condition: fibrosis vs normal" in loose.output

    def test_unknown_contrast_name(self, tmp_path, results_path):
        renamed = tmp_path / "table.csv"
        renamed.write_text(results_path.read_text())
        result = CliRunner().invoke(cli, ["summary", "--results", str(renamed)])
        assert result.exit_code == 2
        result = CliRunner().invoke(
            cli,
            ["summary", "--results", str(renamed), "--contrast", "condition", "fibrosis", "normal"],
        )
        assert result.exit_code == 0, result.output


def test_contrast_from_filename(tmp_path):
    assert contrast_from_filename(tmp_path / f"{LABEL}_shrunken.csv") == ContrastSpec(
        "condition", "fibrosis", "normal"
    )
    assert contrast_from_filename(tmp_path / "results.csv") is None
