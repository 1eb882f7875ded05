"""
Empirical-Bayes shrinkage of log2 fold changes.

Low-count genes have noisy fold-change estimates; shrinkage pulls them
toward zero in proportion to their standard error while leaving
well-supported estimates almost unchanged.  Only ``log2FoldChange`` and
``lfcSE`` change: statistics and p-values come from the unshrunken test.
"""

import logging

import numpy as np

from .engine import StatisticalEngine
from .errors import ContrastMismatchError, EngineOutputError, PipelineError
from .model import (
    ContrastSpec,
    DispersionModel,
    ResultsTable,
    ShrunkenResultsTable,
    conform_genes,
)

logger = logging.getLogger(__name__)


def shrink_results(
    model: DispersionModel,
    results: ResultsTable,
    contrast: ContrastSpec,
    engine: StatisticalEngine,
) -> ShrunkenResultsTable:
    """
    Replace each gene's log2FoldChange with a shrunken estimate.

    Args:
        model: The fitted model ``results`` was tested against
        results: Unshrunken results for ``contrast``
        contrast: Must equal ``results.contrast``
        engine: Statistical engine providing ``shrink``

    Returns:
        ShrunkenResultsTable; |shrunken LFC| <= |raw LFC| for every gene

    Raises:
        ContrastMismatchError: ``contrast`` differs from the tested contrast
        PipelineError: ``results`` is already shrunken
    """
    if contrast != results.contrast:
        raise ContrastMismatchError(
            f"Results were computed for {results.contrast}, shrinkage asked for {contrast}",
            stage="shrinkage",
        )
    if results.shrunken:
        raise PipelineError("Results are already shrunken", stage="shrinkage")

    logger.info("Shrinking log2 fold changes for %s", contrast)
    shrunk = engine.shrink(model, contrast, results)
    missing = [c for c in ("log2FoldChange", "lfcSE") if c not in shrunk.columns]
    if missing:
        raise EngineOutputError(f"Shrinkage output lacks {missing}", stage="shrinkage")
    shrunk = conform_genes(shrunk, results.genes, stage="shrinkage")

    raw_lfc = results.column("log2FoldChange")
    new_lfc = shrunk["log2FoldChange"].astype(float)
    new_se = shrunk["lfcSE"].astype(float)

    grew = (new_lfc.abs() > raw_lfc.abs()) & raw_lfc.notna()
    if grew.any():
        logger.debug(
            "Capping %d shrunken estimates larger than their raw LFC", int(grew.sum())
        )
        new_lfc = new_lfc.where(~grew, raw_lfc)
        # a capped row keeps its unshrunken SE too
        new_se = new_se.where(~grew, results.column("lfcSE"))

    frame = results.to_frame()
    frame["log2FoldChange"] = new_lfc.to_numpy()
    frame["lfcSE"] = new_se.to_numpy()

    n_moved = int((np.abs(raw_lfc - new_lfc) > 0.01).sum())
    logger.info("  %d of %d estimates moved by more than 0.01", n_moved, len(frame))

    return ShrunkenResultsTable(
        frame,
        contrast,
        lfc_threshold=results.lfc_threshold,
        alpha=results.alpha,
        raw_log2_fold_change=raw_lfc,
    )
