"""
Sample metadata construction.

Metadata is normally supplied by the caller as a mapping of sample ID to
genotype and condition; a CSV loader exists for the command line.
"""

import logging
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Union

import pandas as pd

from .errors import MetadataError
from .loader import infer_separator
from .model import REQUIRED_FACTORS, SampleMetadata

logger = logging.getLogger(__name__)

FactorValues = Union[Mapping[str, str], Sequence[str]]


def build_metadata(
    mapping: Mapping[str, FactorValues],
    factors: Sequence[str] = REQUIRED_FACTORS,
) -> SampleMetadata:
    """
    Build metadata from ``{sample_id: {"genotype": ..., "condition": ...}}``.

    Values may also be tuples in the order of ``factors``, e.g.
    ``{"smoc2_wt1": ("wt", "normal")}``.  Row order follows the mapping's
    iteration order.
    """
    rows: Dict[str, Dict[str, str]] = {}
    for sample_id, values in mapping.items():
        if isinstance(values, Mapping):
            rows[str(sample_id)] = {str(k): v for k, v in values.items()}
        else:
            values = list(values)
            if len(values) != len(factors):
                raise MetadataError(
                    f"Sample {sample_id!r} has {len(values)} values for factors {list(factors)}",
                    stage="metadata",
                )
            rows[str(sample_id)] = dict(zip(factors, values))

    frame = pd.DataFrame.from_dict(rows, orient="index")
    frame.index.name = "sample"
    return SampleMetadata(frame, required=tuple(factors))


def metadata_from_frame(
    frame: pd.DataFrame,
    sample_column: Optional[str] = None,
    factors: Sequence[str] = REQUIRED_FACTORS,
) -> SampleMetadata:
    """Build metadata from a DataFrame, indexed by sample or with a sample column."""
    frame = frame.copy()
    if sample_column is not None:
        if sample_column not in frame.columns:
            raise MetadataError(
                f"Metadata has no column {sample_column!r}", stage="metadata"
            )
        frame[sample_column] = frame[sample_column].astype(str)
        frame = frame.set_index(sample_column)
    frame.index.name = "sample"
    return SampleMetadata(frame, required=tuple(factors))


def load_metadata(
    path: Union[str, Path],
    sample_column: str = "sample",
    factors: Sequence[str] = REQUIRED_FACTORS,
) -> SampleMetadata:
    """Read sample metadata from a CSV/TSV with one row per sample."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Metadata table not found: {path}")
    frame = pd.read_csv(path, sep=infer_separator(path), dtype=str)
    metadata = metadata_from_frame(frame, sample_column=sample_column, factors=factors)
    logger.info("Loaded metadata for %d samples from %s", len(metadata), path)
    return metadata


def select_samples(metadata: SampleMetadata, **levels: str) -> SampleMetadata:
    """
    Restrict metadata to samples matching every ``factor=level`` given.

    Example:
        wt_only = select_samples(metadata, genotype="wt")
    """
    frame = metadata.to_frame()
    keep = pd.Series(True, index=frame.index)
    for factor, level in levels.items():
        if factor not in frame.columns:
            raise MetadataError(f"Unknown factor {factor!r}", stage="metadata")
        keep &= frame[factor] == str(level)

    if not keep.any():
        raise MetadataError(f"No samples match {levels}", stage="metadata")

    selected = list(frame.index[keep])
    logger.info("Selected %d of %d samples (%s)", len(selected), len(frame), levels)
    return metadata.subset(selected)
