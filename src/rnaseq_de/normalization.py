"""
Library-size normalization.

Size factors follow the median-of-ratios method: each gene's geometric mean
across samples is a pseudo-reference, and a sample's size factor is the
median over genes of its count divided by that reference.  Genes with a zero
in any sample have no finite log geometric mean and are left out of the
estimate; they stay in the normalized matrix.
"""

import logging
from typing import Sequence, Tuple

import numpy as np
import pandas as pd

from .engine import StatisticalEngine
from .errors import NormalizationError, ShapeError
from .model import CountMatrix, NormalizedCountMatrix, SizeFactors

logger = logging.getLogger(__name__)


def median_of_ratios(values: np.ndarray) -> np.ndarray:
    """
    Median-of-ratios size factors for a genes x samples count array.

    Raises:
        NormalizationError: no gene is non-zero in every sample
    """
    values = np.asarray(values, dtype=float)
    usable = np.all(values > 0, axis=1)
    if not usable.any():
        raise NormalizationError(
            "Every gene has a zero count in at least one sample; "
            "cannot build a pseudo-reference",
            stage="size_factors",
        )

    log_counts = np.log(values[usable])
    log_reference = log_counts.mean(axis=1)
    return np.exp(np.median(log_counts - log_reference[:, None], axis=0))


def validate_size_factors(factors: pd.Series, samples: Sequence[str]) -> SizeFactors:
    """Check one finite, strictly positive factor per sample and reorder."""
    factors = factors.copy()
    factors.index = factors.index.map(str)
    if set(factors.index) != set(samples) or len(factors) != len(samples):
        raise ShapeError(
            f"Engine returned size factors for {sorted(factors.index)}, "
            f"expected {sorted(samples)}",
            stage="size_factors",
        )
    factors = factors.loc[list(samples)].astype(float)

    bad = factors[~np.isfinite(factors.to_numpy()) | (factors.to_numpy() <= 0)]
    if not bad.empty:
        raise NormalizationError(
            f"Size factors must be finite and positive, got {bad.to_dict()}",
            stage="size_factors",
        )
    return SizeFactors(factors)


# Relative disagreement above which engine size factors are reported
CROSS_CHECK_TOLERANCE = 0.05


def check_against_median_of_ratios(size_factors: SizeFactors, counts: CountMatrix) -> bool:
    """
    Compare engine size factors with a median-of-ratios recomputation.

    Both sets are rescaled to a geometric mean of 1 before comparing, since
    engines may normalize the factors differently.  Logs a warning and
    returns False when any sample differs by more than
    ``CROSS_CHECK_TOLERANCE``; returns True when they agree or when no gene
    is non-zero in every sample.
    """
    values = counts.values
    if not np.all(values > 0, axis=1).any():
        logger.debug("No gene without zeros; skipping size factor cross-check")
        return True

    reference = median_of_ratios(values)
    engine_factors = size_factors.values.to_numpy()
    reference = reference / np.exp(np.log(reference).mean())
    engine_factors = engine_factors / np.exp(np.log(engine_factors).mean())

    deviation = np.abs(engine_factors / reference - 1.0)
    if (deviation > CROSS_CHECK_TOLERANCE).any():
        worst = int(np.argmax(deviation))
        logger.warning(
            "Engine size factors differ from median-of-ratios by up to %.1f%% (sample %s)",
            100 * deviation[worst],
            size_factors.samples[worst],
        )
        return False
    return True


def normalize_counts(
    counts: CountMatrix, engine: StatisticalEngine
) -> Tuple[SizeFactors, NormalizedCountMatrix]:
    """
    Estimate size factors with ``engine`` and divide each column by its factor.

    Args:
        counts: Aligned raw counts
        engine: Statistical engine providing ``estimate_size_factors``

    Returns:
        (SizeFactors, NormalizedCountMatrix) with value[g, s] = raw[g, s] / sf[s]
    """
    size_factors = validate_size_factors(
        engine.estimate_size_factors(counts), counts.samples
    )
    logger.info(
        "Size factors: %s",
        ", ".join(f"{s}={v:.3f}" for s, v in size_factors.values.items()),
    )
    check_against_median_of_ratios(size_factors, counts)

    normalized = counts.to_frame().astype(float).div(size_factors.values, axis=1)
    return size_factors, NormalizedCountMatrix(normalized, size_factors)
