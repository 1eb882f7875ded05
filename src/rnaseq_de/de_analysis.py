"""
Differential expression: model fitting and contrast testing.

Two stages, run in order:

1. ``fit_model`` estimates per-gene dispersions (shrunk toward a fitted
   mean-dispersion trend) and per-level means, once per dataset and design.
2. ``run_wald_test`` runs a Wald test for one two-level contrast against that
   fit and applies Benjamini-Hochberg correction.

The numerical work is done by the injected ``StatisticalEngine``; this module
validates what goes in and what comes back.  Genes with no reads in one of
the compared groups cannot be tested: they get NaN p-values and are left
out of the multiple-testing denominator.
"""

import dataclasses
import logging
from typing import List, Optional

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from .align import check_aligned
from .engine import StatisticalEngine
from .errors import (
    ContrastError,
    DegenerateGeneError,
    EngineOutputError,
)
from .model import (
    ContrastSpec,
    CountMatrix,
    DispersionModel,
    ResultsTable,
    SampleMetadata,
    ShrunkenResultsTable,
    conform_genes,
)
from .shrinkage import shrink_results

logger = logging.getLogger(__name__)

GENE_TABLE_COLUMNS = [
    "base_mean",
    "genewise_dispersion",
    "fitted_dispersion",
    "dispersion",
    "all_zero",
]


def fit_model(
    counts: CountMatrix,
    metadata: SampleMetadata,
    engine: StatisticalEngine,
    design_factor: str = "condition",
    reference_level: Optional[str] = None,
) -> DispersionModel:
    """
    Fit the dispersion / mean model for ``~ design_factor``.

    Args:
        counts: Raw counts aligned to ``metadata``
        metadata: Sample metadata
        engine: Statistical engine
        design_factor: Metadata column holding the grouping factor
        reference_level: Baseline level (alphabetically first if None, as in DESeq2)

    Returns:
        DispersionModel to be reused, read-only, for every contrast

    Raises:
        AlignmentError: counts are not in metadata order
        ContrastError: unknown factor, fewer than two levels, bad reference
        ShapeError / EngineOutputError: engine output does not match the input
    """
    check_aligned(counts, metadata, stage="fit")

    levels = metadata.levels(design_factor)
    if len(levels) < 2:
        raise ContrastError(
            f"Factor {design_factor!r} needs at least two levels, found {levels}",
            stage="fit",
        )
    if reference_level is None:
        reference_level = sorted(levels)[0]
    if reference_level not in levels:
        raise ContrastError(
            f"Reference level {reference_level!r} not in {levels}", stage="fit"
        )

    for level in levels:
        n = len(metadata.samples_in(design_factor, level))
        if n < 2:
            logger.warning("Level %r has %d sample(s); dispersion estimates will be poor", level, n)

    logger.info(
        "Fitting ~%s on %d genes x %d samples (levels %s, reference %r)",
        design_factor, counts.shape[0], counts.shape[1], levels, reference_level,
    )
    model = engine.fit(counts, metadata, design_factor, reference_level)

    missing = [c for c in GENE_TABLE_COLUMNS if c not in model.gene_table.columns]
    if missing:
        raise EngineOutputError(f"Dispersion table lacks columns {missing}", stage="fit")
    gene_table = conform_genes(model.gene_table, counts.genes, stage="fit")

    frame = counts.to_frame()
    group_zero = pd.DataFrame(
        {
            level: frame[metadata.samples_in(design_factor, level)].sum(axis=1) == 0
            for level in levels
        },
        index=counts.genes,
    )

    model = dataclasses.replace(model, gene_table=gene_table, group_zero=group_zero)
    n_zero = len(model.all_zero_genes)
    if n_zero:
        logger.info("  %d genes have zero counts in every sample", n_zero)
    return model


def validate_contrast(model: DispersionModel, contrast: ContrastSpec) -> None:
    """Raise ContrastError unless both levels belong to the model's factor."""
    if contrast.factor != model.design_factor:
        raise ContrastError(
            f"Contrast factor {contrast.factor!r} is not the design factor "
            f"{model.design_factor!r}",
            stage="wald_test",
        )
    unknown = [lvl for lvl in (contrast.level_a, contrast.level_b) if lvl not in model.levels]
    if unknown:
        raise ContrastError(
            f"Levels {unknown} not in {list(model.levels)}", stage="wald_test"
        )


def degenerate_genes(
    model: DispersionModel, contrast: ContrastSpec
) -> List[DegenerateGeneError]:
    """Genes that cannot be tested for ``contrast`` (no reads in a compared group)."""
    records = []
    zero_a = model.zero_in_group(contrast.level_a)
    zero_b = model.zero_in_group(contrast.level_b)
    for gene in model.genes:
        if zero_a[gene] and zero_b[gene]:
            reason = f"all-zero counts in both {contrast.level_a!r} and {contrast.level_b!r}"
        elif zero_a[gene]:
            reason = f"all-zero counts in group {contrast.level_a!r}"
        elif zero_b[gene]:
            reason = f"all-zero counts in group {contrast.level_b!r}"
        else:
            continue
        records.append(DegenerateGeneError(gene, reason))
    return records


def _check_probabilities(frame: pd.DataFrame) -> None:
    for column in ("pvalue", "padj"):
        values = frame[column]
        bad = values.notna() & ((values < 0) | (values > 1))
        if bad.any():
            gene = str(values.index[bad][0])
            raise EngineOutputError(
                f"{column} outside [0, 1]: {values[gene]!r}", stage="wald_test", gene_id=gene
            )


def run_wald_test(
    model: DispersionModel,
    contrast: ContrastSpec,
    engine: StatisticalEngine,
    lfc_threshold: float = 0.0,
    alpha: float = 0.05,
) -> ResultsTable:
    """
    Wald test of ``contrast`` against a fitted model.

    Args:
        model: Output of ``fit_model``
        contrast: (factor, level_a, level_b); LFC is log2(a / b)
        engine: The engine that produced ``model``
        lfc_threshold: tau >= 0; tau > 0 tests H0: |LFC| <= tau
        alpha: Significance level used for independent filtering

    Returns:
        ResultsTable in model gene order

    Raises:
        ContrastError: contrast does not match the model
        ShapeError: engine output has different genes
        EngineOutputError: p-values out of range or padj < pvalue
    """
    if lfc_threshold < 0:
        raise ContrastError(f"lfc_threshold must be >= 0, got {lfc_threshold}", stage="wald_test")
    validate_contrast(model, contrast)

    logger.info("Testing %s (lfcThreshold=%s, alpha=%s)", contrast, lfc_threshold, alpha)
    raw = engine.wald_test(model, contrast, lfc_threshold, alpha)
    frame = ResultsTable(
        conform_genes(raw, model.genes, stage="wald_test"), contrast
    ).to_frame()

    records = degenerate_genes(model, contrast)
    if records:
        genes = [r.gene_id for r in records]
        counted = frame.loc[genes, "padj"].notna().any()
        frame.loc[genes, ["stat", "pvalue", "padj"]] = np.nan
        for record in records[:10]:
            logger.warning("Excluding %s: %s", record.gene_id, record.reason)
        if len(records) > 10:
            logger.warning("... and %d more untestable genes", len(records) - 10)

        if counted:
            # The engine counted these genes in its BH denominator; redo it.
            tested = frame["padj"].notna()
            if tested.any():
                frame.loc[tested, "padj"] = multipletests(
                    frame.loc[tested, "pvalue"].to_numpy(), method="fdr_bh"
                )[1]

    _check_probabilities(frame)
    results = ResultsTable(frame, contrast, lfc_threshold=lfc_threshold, alpha=alpha)

    violations = results.padj_violations()
    if violations:
        raise EngineOutputError(
            f"padj < pvalue for {len(violations)} genes", stage="wald_test", gene_id=violations[0]
        )

    summary = results.summary()
    logger.info(
        "  %d genes, padj < %s: %d up, %d down (%d outliers, %d low counts)",
        summary["n_genes"], alpha, summary["n_up"], summary["n_down"],
        summary["n_outliers"], summary["n_low_counts"],
    )
    return results


class DEAnalyzer:
    """
    Fits a model once and tests any number of contrasts against it.

    Example:
        analyzer = DEAnalyzer(PyDESeq2Engine(), design_factor="condition")
        analyzer.fit(counts, metadata, reference_level="normal")
        res = analyzer.test(ContrastSpec("condition", "fibrosis", "normal"),
                            lfc_threshold=0.32)
        shrunk = analyzer.shrink(res)
    """

    def __init__(self, engine: StatisticalEngine, design_factor: str = "condition"):
        self.engine = engine
        self.design_factor = design_factor
        self._model: Optional[DispersionModel] = None

    @property
    def model(self) -> DispersionModel:
        if self._model is None:
            raise RuntimeError("DEAnalyzer.fit must be called before testing")
        return self._model

    def fit(
        self,
        counts: CountMatrix,
        metadata: SampleMetadata,
        reference_level: Optional[str] = None,
    ) -> DispersionModel:
        if self._model is not None:
            logger.info("Replacing previously fitted model")
        self._model = fit_model(
            counts, metadata, self.engine, self.design_factor, reference_level
        )
        return self._model

    def test(
        self, contrast: ContrastSpec, lfc_threshold: float = 0.0, alpha: float = 0.05
    ) -> ResultsTable:
        return run_wald_test(self.model, contrast, self.engine, lfc_threshold, alpha)

    def shrink(
        self, results: ResultsTable, contrast: Optional[ContrastSpec] = None
    ) -> ShrunkenResultsTable:
        contrast = results.contrast if contrast is None else contrast
        return shrink_results(self.model, results, contrast, self.engine)
