"""Bulk RNA-seq differential expression analysis.

Takes a raw gene x sample count table and sample metadata (genotype,
condition), normalizes for library size, fits a negative binomial model
once, and tests any number of two-level contrasts against it with
Benjamini-Hochberg correction and log2 fold-change shrinkage.

Usage::

    from rnaseq_de import (
        ContrastSpec, DEPipeline, PipelineConfig, build_metadata, load_counts,
        write_outputs,
    )

    counts = load_counts("fibrosis_smoc2_rawcounts.csv")
    metadata = build_metadata({
        "smoc2_fibrosis1": ("wt", "fibrosis"),
        "smoc2_normal1": ("wt", "normal"),
        ...
    })
    config = PipelineConfig(contrasts=[ContrastSpec("condition", "fibrosis", "normal")])
    result = DEPipeline(config).run(counts, metadata)
    write_outputs(result, "results/")
"""

from rnaseq_de.align import align_counts
from rnaseq_de.config import PipelineConfig, load_config
from rnaseq_de.de_analysis import DEAnalyzer, fit_model, run_wald_test
from rnaseq_de.engine import StatisticalEngine
from rnaseq_de.errors import (
    AlignmentError,
    ConfigError,
    ContrastError,
    ContrastMismatchError,
    CountMatrixError,
    MetadataError,
    DegenerateGeneError,
    EngineOutputError,
    NormalizationError,
    PipelineError,
    ShapeError,
)
from rnaseq_de.export import format_summary, write_outputs
from rnaseq_de.filtering import RankingMethod, rank_genes, significant_genes
from rnaseq_de.loader import load_annotations, load_counts
from rnaseq_de.metadata import build_metadata, load_metadata, select_samples
from rnaseq_de.model import (
    ContrastSpec,
    CountMatrix,
    DispersionModel,
    NormalizedCountMatrix,
    ResultsTable,
    SampleMetadata,
    ShrunkenResultsTable,
    SignificantGeneSet,
    SizeFactors,
    TransformedMatrix,
)
from rnaseq_de.normalization import normalize_counts
from rnaseq_de.pipeline import ContrastResult, DEPipeline, PipelineResult
from rnaseq_de.pydeseq2_engine import PyDESeq2Engine
from rnaseq_de.shrinkage import shrink_results
from rnaseq_de.transform import pca_coordinates, sample_correlation, variance_stabilize

__version__ = "0.1.0"

__all__ = [
    "align_counts",
    "PipelineConfig",
    "load_config",
    "DEAnalyzer",
    "fit_model",
    "run_wald_test",
    "StatisticalEngine",
    "AlignmentError",
    "ConfigError",
    "ContrastError",
    "ContrastMismatchError",
    "CountMatrixError",
    "MetadataError",
    "DegenerateGeneError",
    "EngineOutputError",
    "NormalizationError",
    "PipelineError",
    "ShapeError",
    "format_summary",
    "write_outputs",
    "RankingMethod",
    "rank_genes",
    "significant_genes",
    "load_annotations",
    "load_counts",
    "build_metadata",
    "load_metadata",
    "select_samples",
    "ContrastSpec",
    "CountMatrix",
    "DispersionModel",
    "NormalizedCountMatrix",
    "ResultsTable",
    "SampleMetadata",
    "ShrunkenResultsTable",
    "SignificantGeneSet",
    "SizeFactors",
    "TransformedMatrix",
    "normalize_counts",
    "ContrastResult",
    "DEPipeline",
    "PipelineResult",
    "PyDESeq2Engine",
    "shrink_results",
    "pca_coordinates",
    "sample_correlation",
    "variance_stabilize",
]
