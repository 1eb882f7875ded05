"""
End-to-end differential expression pipeline.

Stages run strictly in order, each taking the previous stage's output as a
parameter and returning a new value:

    align -> (select genotype, prefilter) -> normalize -> VST
          -> fit model (once) -> per contrast: Wald test -> shrink -> filter

The fitted model is shared read-only by every contrast, so contrasts never
refit dispersions and do not depend on each other.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import pandas as pd

from .align import align_counts
from .config import PipelineConfig
from .de_analysis import degenerate_genes, fit_model, run_wald_test
from .engine import StatisticalEngine
from .errors import ConfigError, DegenerateGeneError
from .filtering import significant_genes
from .metadata import select_samples
from .model import (
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
from .normalization import normalize_counts
from .pydeseq2_engine import PyDESeq2Engine
from .shrinkage import shrink_results
from .transform import PCAProjection, pca_coordinates, sample_correlation, variance_stabilize

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class ContrastResult:
    """Everything computed for one contrast against the shared model."""

    contrast: ContrastSpec
    results: ResultsTable
    significant: SignificantGeneSet
    shrunken: Optional[ShrunkenResultsTable] = None
    degenerate: List[DegenerateGeneError] = field(default_factory=list)
    exploratory: Optional["ContrastResult"] = None

    @property
    def final(self) -> ResultsTable:
        """Shrunken table when shrinkage ran, otherwise the raw results."""
        return self.shrunken if self.shrunken is not None else self.results

    @property
    def label(self) -> str:
        return self.contrast.label


@dataclass(frozen=True, eq=False)
class PipelineResult:
    """Outputs of every stage of one pipeline run."""

    config: PipelineConfig
    counts: CountMatrix
    metadata: SampleMetadata
    size_factors: SizeFactors
    normalized: NormalizedCountMatrix
    transformed: TransformedMatrix
    correlation: pd.DataFrame
    pca: PCAProjection
    model: DispersionModel
    contrasts: Dict[str, ContrastResult]
    engine_name: str = ""

    def __getitem__(self, label: str) -> ContrastResult:
        return self.contrasts[label]

    def significant_normalized_counts(self, label: str) -> pd.DataFrame:
        """Normalized counts of one contrast's significant genes (heatmap input)."""
        genes = self.contrasts[label].significant.gene_ids
        return self.normalized.to_frame().loc[genes]


def prefilter_counts(counts: CountMatrix, min_total_count: int) -> CountMatrix:
    """Drop genes whose total count across samples is below ``min_total_count``."""
    if min_total_count <= 0:
        return counts
    totals = counts.to_frame().sum(axis=1)
    keep = totals >= min_total_count
    n_removed = int((~keep).sum())
    if n_removed:
        logger.info(
            "Low-count filter: removed %d genes (total count < %d)", n_removed, min_total_count
        )
    return counts.filter_genes(keep.to_numpy())


class DEPipeline:
    """
    Runs the full analysis for one dataset.

    Example:
        config = PipelineConfig(
            contrasts=[ContrastSpec("condition", "fibrosis", "normal")],
            genotype="wt",
        )
        result = DEPipeline(config).run(counts, metadata)
        print(result["condition_fibrosis_vs_normal"].significant.gene_ids[:10])
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        engine: Optional[StatisticalEngine] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            config: Pipeline configuration (uses defaults if None)
            engine: Statistical engine (PyDESeq2 if None)
        """
        self.config = config or PipelineConfig()
        self.engine = engine or PyDESeq2Engine(n_cpus=self.config.n_cpus)

    def prepare(
        self, counts: CountMatrix, metadata: SampleMetadata
    ) -> Tuple[CountMatrix, SampleMetadata]:
        """Align, then apply genotype selection and the low-count prefilter."""
        counts = align_counts(counts, metadata)

        if self.config.genotype is not None:
            metadata = select_samples(metadata, genotype=self.config.genotype)
            counts = counts.select_samples(metadata.sample_ids)

        counts = prefilter_counts(counts, self.config.min_total_count)
        return counts, metadata

    def run(self, counts: CountMatrix, metadata: SampleMetadata) -> PipelineResult:
        cfg = self.config
        counts, metadata = self.prepare(counts, metadata)

        reference = cfg.effective_reference
        levels = metadata.levels(cfg.design_factor)
        for contrast in cfg.contrasts:
            if cfg.shrink and reference not in (contrast.level_a, contrast.level_b):
                raise ConfigError(
                    f"Shrinking {contrast} requires one of its levels to be the "
                    f"reference level {reference!r}",
                    stage="config",
                )

        logger.info(
            "Pipeline: %d genes x %d samples, %s levels %s, %d contrast(s)",
            counts.shape[0], counts.shape[1], cfg.design_factor, levels, len(cfg.contrasts),
        )

        size_factors, normalized = normalize_counts(counts, self.engine)

        transformed = variance_stabilize(
            counts, metadata, self.engine, blind=cfg.blind_vst, design_factor=cfg.design_factor
        )
        correlation = sample_correlation(transformed)
        pca = pca_coordinates(
            transformed, metadata, n_components=cfg.n_components, n_top=cfg.n_top_variable
        )

        model = fit_model(
            counts, metadata, self.engine, cfg.design_factor, reference_level=reference
        )

        contrasts = {}
        for contrast in cfg.contrasts:
            result = self._run_contrast(model, contrast, cfg.lfc_threshold)
            if cfg.exploratory_pass and cfg.lfc_threshold > 0:
                exploratory = self._run_contrast(model, contrast, 0.0)
                result = ContrastResult(
                    contrast=result.contrast,
                    results=result.results,
                    significant=result.significant,
                    shrunken=result.shrunken,
                    degenerate=result.degenerate,
                    exploratory=exploratory,
                )
            contrasts[contrast.label] = result

        return PipelineResult(
            config=cfg,
            counts=counts,
            metadata=metadata,
            size_factors=size_factors,
            normalized=normalized,
            transformed=transformed,
            correlation=correlation,
            pca=pca,
            model=model,
            contrasts=contrasts,
            engine_name=self.engine.name,
        )

    def _run_contrast(
        self, model: DispersionModel, contrast: ContrastSpec, lfc_threshold: float
    ) -> ContrastResult:
        cfg = self.config
        results = run_wald_test(
            model, contrast, self.engine, lfc_threshold=lfc_threshold, alpha=cfg.alpha
        )
        shrunken = (
            shrink_results(model, results, contrast, self.engine) if cfg.shrink else None
        )
        final = shrunken if shrunken is not None else results
        significant = significant_genes(final, alpha=cfg.alpha, lfc_cutoff=cfg.lfc_cutoff)
        logger.info(
            "%s: %d significant genes (padj < %s)", contrast.label, len(significant), cfg.alpha
        )
        return ContrastResult(
            contrast=contrast,
            results=results,
            significant=significant,
            shrunken=shrunken,
            degenerate=degenerate_genes(model, contrast),
        )
