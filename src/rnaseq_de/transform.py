"""
Variance-stabilizing transform and the sample-level views built on it.

The transformed matrix feeds sample correlation heatmaps and PCA plots
only; hypothesis tests always run on raw counts.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .align import check_aligned
from .engine import StatisticalEngine
from .errors import ShapeError
from .model import CountMatrix, SampleMetadata, TransformedMatrix

logger = logging.getLogger(__name__)


def variance_stabilize(
    counts: CountMatrix,
    metadata: SampleMetadata,
    engine: StatisticalEngine,
    blind: bool = True,
    design_factor: str = "condition",
) -> TransformedMatrix:
    """
    Variance-stabilize aligned counts.

    Args:
        counts: Raw counts aligned to ``metadata``
        metadata: Sample metadata
        engine: Statistical engine providing ``variance_stabilize``
        blind: Ignore sample labels when fitting the transform (default)
        design_factor: Factor used when ``blind`` is False

    Returns:
        TransformedMatrix with the same genes and samples as ``counts``
    """
    check_aligned(counts, metadata, stage="vst")
    logger.info("Variance-stabilizing %d genes (blind=%s)", counts.shape[0], blind)

    frame = engine.variance_stabilize(counts, metadata, blind, design_factor)
    frame = frame.copy()
    frame.index = frame.index.map(str)
    frame.columns = frame.columns.map(str)
    if list(frame.index) != counts.genes or list(frame.columns) != counts.samples:
        raise ShapeError(
            f"Transformed matrix has shape {frame.shape}, expected {counts.shape} "
            f"with identical gene and sample order",
            stage="vst",
        )
    return TransformedMatrix(frame, blind=blind)


def sample_correlation(transformed: TransformedMatrix) -> pd.DataFrame:
    """Pearson correlation between samples (samples x samples)."""
    return transformed.to_frame().corr(method="pearson")


def top_variable_genes(transformed: TransformedMatrix, n: int = 500) -> pd.DataFrame:
    """Rows of the transformed matrix with the highest variance across samples."""
    frame = transformed.to_frame()
    variances = frame.var(axis=1, ddof=1)
    keep = variances.sort_values(ascending=False, kind="mergesort").index[:n]
    return frame.loc[keep]


@dataclass(frozen=True, eq=False)
class PCAProjection:
    """Sample scores on the leading principal components."""

    coordinates: pd.DataFrame
    explained_variance_ratio: pd.Series


def pca_coordinates(
    transformed: TransformedMatrix,
    metadata: SampleMetadata,
    n_components: int = 2,
    n_top: int = 500,
) -> PCAProjection:
    """
    Project samples onto principal components of the most variable genes.

    Genes are centred but not scaled, matching DESeq2's ``plotPCA``.
    Component signs are fixed so the largest-magnitude gene loading is
    positive, keeping the output deterministic.
    """
    data = top_variable_genes(transformed, n_top).T  # samples x genes
    centred = data.to_numpy() - data.to_numpy().mean(axis=0)

    u, s, vt = np.linalg.svd(centred, full_matrices=False)
    signs = np.sign(vt[np.arange(vt.shape[0]), np.argmax(np.abs(vt), axis=1)])
    signs[signs == 0] = 1.0
    u = u * signs

    n_components = min(n_components, s.shape[0])
    names = [f"PC{i + 1}" for i in range(n_components)]
    scores = pd.DataFrame(
        u[:, :n_components] * s[:n_components], index=data.index, columns=names
    )

    total = float((s ** 2).sum())
    ratio = (s[:n_components] ** 2) / total if total > 0 else np.zeros(n_components)

    coordinates = scores.join(metadata.to_frame())
    coordinates.index.name = "sample"
    return PCAProjection(
        coordinates=coordinates,
        explained_variance_ratio=pd.Series(ratio, index=names, name="explained_variance_ratio"),
    )
