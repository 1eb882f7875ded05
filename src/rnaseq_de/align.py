"""
Count-matrix / metadata alignment.

Every later stage assumes column ``i`` of the count matrix is the sample in
row ``i`` of the metadata.  Alignment only reorders: a sample present on one
side but not the other is an error, never silently dropped.
"""

import logging

from .errors import AlignmentError
from .model import CountMatrix, SampleMetadata

logger = logging.getLogger(__name__)


def align_counts(counts: CountMatrix, metadata: SampleMetadata) -> CountMatrix:
    """
    Reorder count-matrix columns to metadata row order.

    Raises:
        AlignmentError: the two sample sets are not identical
    """
    count_samples = set(counts.samples)
    meta_samples = set(metadata.sample_ids)

    only_counts = sorted(count_samples - meta_samples)
    only_meta = sorted(meta_samples - count_samples)
    if only_counts or only_meta:
        raise AlignmentError(
            f"Sample IDs do not match: in counts only {only_counts}, "
            f"in metadata only {only_meta}",
            stage="align",
        )

    if counts.samples == metadata.sample_ids:
        return counts

    logger.debug("Reordering %d count columns to metadata order", len(metadata))
    return counts.select_samples(metadata.sample_ids)


def check_aligned(counts: CountMatrix, metadata: SampleMetadata, stage: str) -> None:
    """Raise AlignmentError unless columns already follow metadata order."""
    if counts.samples != metadata.sample_ids:
        raise AlignmentError(
            "Count matrix columns are not in metadata order; run align_counts first",
            stage=stage,
        )
