"""
Significance filtering and ranking of differential expression results.

All functions are pure: they read a results table and return new frames.
"""

from enum import Enum
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from .model import ResultsTable, SignificantGeneSet


class RankingMethod(Enum):
    """Methods for ranking genes."""

    PADJ = "padj"  # ascending padj
    EFFECT_SIZE = "effect_size"  # |log2FC|
    COMBINED = "combined"  # -log10(padj) * sign(log2FC)


def significant_genes(
    results: ResultsTable,
    alpha: float = 0.05,
    lfc_cutoff: Optional[float] = None,
) -> SignificantGeneSet:
    """
    Rows with non-null padj < alpha (and |log2FC| >= lfc_cutoff if given).

    Never raises for an empty selection: alpha = 0 yields an empty set and
    alpha = 1 every row with a non-null padj.  Rows are sorted by padj.
    """
    if not 0 <= alpha <= 1:
        raise ValueError(f"alpha must be in [0, 1], got {alpha}")

    frame = results.to_frame()
    keep = frame["padj"].notna() & (frame["padj"] < alpha)
    if alpha >= 1:
        keep = frame["padj"].notna()
    if lfc_cutoff is not None:
        keep &= frame["log2FoldChange"].abs() >= lfc_cutoff

    selected = frame[keep].sort_values("padj", kind="mergesort")
    return SignificantGeneSet(
        data=selected,
        contrast=results.contrast,
        alpha=alpha,
        lfc_cutoff=lfc_cutoff,
    )


def split_by_direction(genes: SignificantGeneSet) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """(upregulated, downregulated), each sorted by effect size."""
    up = genes.up.sort_values("log2FoldChange", ascending=False, kind="mergesort")
    down = genes.down.sort_values("log2FoldChange", kind="mergesort")
    return up, down


def rank_genes(
    results: ResultsTable,
    method: RankingMethod = RankingMethod.PADJ,
    top_n: Optional[int] = None,
) -> pd.DataFrame:
    """
    Order genes by the chosen score; untested genes (NaN padj) are dropped.

    Args:
        results: Results table
        method: Ranking method
        top_n: Number of rows to keep (all if None)
    """
    frame = results.to_frame().dropna(subset=["padj"])

    if method == RankingMethod.PADJ:
        ranked = frame.sort_values("padj", kind="mergesort")
    else:
        if method == RankingMethod.EFFECT_SIZE:
            score = frame["log2FoldChange"].abs()
        else:
            # clip so padj == 0 does not give an infinite score
            score = -np.log10(frame["padj"].clip(lower=1e-300)) * np.sign(
                frame["log2FoldChange"]
            )
        ranked = frame.assign(score=score).sort_values(
            "score", ascending=False, kind="mergesort"
        )

    return ranked if top_n is None else ranked.head(top_n)


def volcano_table(results: ResultsTable, alpha: float = 0.05) -> pd.DataFrame:
    """Results with ``neg_log10_padj`` and a boolean ``threshold`` column."""
    frame = results.to_frame()
    frame["neg_log10_padj"] = -np.log10(frame["padj"].clip(lower=1e-300))
    frame["threshold"] = frame["padj"].notna() & (frame["padj"] < alpha)
    return frame
