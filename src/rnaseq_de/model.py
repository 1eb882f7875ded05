"""
Value types passed between pipeline stages.

Every stage takes its inputs as parameters and returns a new value; none of
these objects is modified after construction.  Each wraps a pandas table
keyed by explicit gene and sample identifiers (strings), and the
constructors validate the invariants the later stages rely on.  ``to_frame``
and the other accessors hand out copies.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import (
    ContrastError,
    CountMatrixError,
    EngineOutputError,
    MetadataError,
    ShapeError,
)

RESULT_COLUMNS = ["baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj"]

REQUIRED_FACTORS = ("genotype", "condition")

# Tolerance for the padj >= pvalue check; BH arithmetic can round below.
PADJ_TOLERANCE = 1e-12


def _string_keys(frame: pd.DataFrame) -> pd.DataFrame:
    frame = frame.copy()
    frame.index = frame.index.map(str)
    frame.columns = frame.columns.map(str)
    return frame


def _first_duplicate(keys: pd.Index) -> str:
    return str(keys[keys.duplicated()][0])


def conform_genes(frame: pd.DataFrame, genes: Sequence[str], stage: str) -> pd.DataFrame:
    """Reorder ``frame`` rows to ``genes``; the gene sets must be identical.

    Raises:
        ShapeError: duplicate, missing or unexpected genes
    """
    frame = frame.copy()
    frame.index = frame.index.map(str)
    if not frame.index.is_unique:
        raise ShapeError(
            "Duplicate gene row", stage=stage, gene_id=_first_duplicate(frame.index)
        )
    if set(frame.index) != set(genes) or len(frame.index) != len(genes):
        extra = sorted(set(frame.index) - set(genes))[:5]
        missing = sorted(set(genes) - set(frame.index))[:5]
        raise ShapeError(
            f"Got {len(frame.index)} genes, expected {len(genes)} "
            f"(unexpected {extra}, missing {missing})",
            stage=stage,
        )
    return frame.loc[list(genes)]


# =============================================================================
# Count matrices
# =============================================================================


@dataclass(frozen=True, eq=False)
class CountMatrix:
    """Raw read counts, genes (rows) x samples (columns).

    Values are non-negative integers with no missing entries; gene and
    sample identifiers are unique.  Row order is the input file order.
    """

    data: pd.DataFrame

    def __post_init__(self):
        object.__setattr__(self, "data", validate_counts(self.data))

    @property
    def genes(self) -> List[str]:
        return list(self.data.index)

    @property
    def samples(self) -> List[str]:
        return list(self.data.columns)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    @property
    def values(self) -> np.ndarray:
        return self.data.to_numpy(copy=True)

    def to_frame(self) -> pd.DataFrame:
        return self.data.copy()

    def library_sizes(self) -> pd.Series:
        """Total counts per sample."""
        return self.data.sum(axis=0)

    def select_samples(self, sample_ids: Sequence[str]) -> "CountMatrix":
        """Return a new matrix with columns in the order of ``sample_ids``."""
        missing = [s for s in sample_ids if s not in self.data.columns]
        if missing:
            raise ShapeError(f"Unknown samples: {missing}", stage="select_samples")
        return CountMatrix(self.data.loc[:, list(sample_ids)])

    def filter_genes(self, keep: Iterable[bool]) -> "CountMatrix":
        """Return a new matrix restricted to genes where ``keep`` is True."""
        mask = np.asarray(list(keep), dtype=bool)
        if mask.shape[0] != self.data.shape[0]:
            raise ShapeError(
                f"Gene mask has {mask.shape[0]} entries for {self.data.shape[0]} genes",
                stage="filter_genes",
            )
        return CountMatrix(self.data.loc[mask])


def validate_counts(frame: pd.DataFrame, stage: str = "load_counts") -> pd.DataFrame:
    """Check a genes x samples count table and return it as int64.

    Raises:
        CountMatrixError: empty table, duplicate keys, missing values,
            boolean, non-numeric, infinite, negative or non-integer counts.
    """
    if frame.shape[0] == 0 or frame.shape[1] == 0:
        raise CountMatrixError(
            f"Count matrix is empty (shape {frame.shape})", stage=stage
        )
    frame = _string_keys(frame)

    if not frame.index.is_unique:
        raise CountMatrixError(
            "Duplicate gene identifier", stage=stage, gene_id=_first_duplicate(frame.index)
        )
    if not frame.columns.is_unique:
        raise CountMatrixError(
            f"Duplicate sample identifier {_first_duplicate(frame.columns)!r}", stage=stage
        )

    for sample in frame.columns:
        if pd.api.types.is_bool_dtype(frame[sample]):
            raise CountMatrixError(
                f"Sample {sample!r} contains boolean values, not counts", stage=stage
            )
        if not pd.api.types.is_numeric_dtype(frame[sample]):
            raise CountMatrixError(
                f"Sample {sample!r} contains non-numeric values", stage=stage
            )

    missing = np.argwhere(frame.isna().to_numpy())
    if missing.size:
        row, col = missing[0]
        raise CountMatrixError(
            f"Missing count in sample {frame.columns[col]!r}",
            stage=stage,
            gene_id=frame.index[row],
        )

    values = frame.to_numpy(dtype=float)
    with np.errstate(invalid="ignore"):
        bad = np.argwhere(
            ~np.isfinite(values) | (values < 0) | (values != np.round(values))
        )
    if bad.size:
        row, col = bad[0]
        raise CountMatrixError(
            f"Count {values[row, col]!r} in sample {frame.columns[col]!r} "
            f"is not a non-negative integer",
            stage=stage,
            gene_id=frame.index[row],
        )

    return frame.astype(np.int64)


@dataclass(frozen=True, eq=False)
class SizeFactors:
    """Per-sample library-size scaling factors."""

    values: pd.Series

    def __post_init__(self):
        values = self.values.astype(float).copy()
        values.index = values.index.map(str)
        values.name = "size_factor"
        object.__setattr__(self, "values", values)

    @property
    def samples(self) -> List[str]:
        return list(self.values.index)

    def to_series(self) -> pd.Series:
        return self.values.copy()

    def __getitem__(self, sample_id: str) -> float:
        return float(self.values[sample_id])


@dataclass(frozen=True, eq=False)
class NormalizedCountMatrix:
    """Raw counts divided by each sample's size factor."""

    data: pd.DataFrame
    size_factors: SizeFactors

    def __post_init__(self):
        object.__setattr__(self, "data", _string_keys(self.data).astype(float))

    @property
    def genes(self) -> List[str]:
        return list(self.data.index)

    @property
    def samples(self) -> List[str]:
        return list(self.data.columns)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    def to_frame(self) -> pd.DataFrame:
        return self.data.copy()


@dataclass(frozen=True, eq=False)
class TransformedMatrix:
    """Variance-stabilized expression for distances, correlation and PCA.

    Never an input to hypothesis testing.
    """

    data: pd.DataFrame
    blind: bool = True

    def __post_init__(self):
        object.__setattr__(self, "data", _string_keys(self.data).astype(float))

    @property
    def genes(self) -> List[str]:
        return list(self.data.index)

    @property
    def samples(self) -> List[str]:
        return list(self.data.columns)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    def to_frame(self) -> pd.DataFrame:
        return self.data.copy()


# =============================================================================
# Sample metadata
# =============================================================================


@dataclass(frozen=True, eq=False)
class SampleMetadata:
    """Sample -> categorical factors (genotype, condition, ...).

    Row order is meaningful: the aligner puts count-matrix columns in
    exactly this order.
    """

    data: pd.DataFrame
    required: Tuple[str, ...] = REQUIRED_FACTORS

    def __post_init__(self):
        frame = self.data.copy()
        frame.index = frame.index.map(str)
        frame.columns = frame.columns.map(str)
        if frame.shape[0] == 0:
            raise MetadataError("Sample metadata has no rows", stage="metadata")
        if not frame.index.is_unique:
            raise MetadataError(
                f"Duplicate sample identifier {_first_duplicate(frame.index)!r}",
                stage="metadata",
            )
        missing = [f for f in self.required if f not in frame.columns]
        if missing:
            raise MetadataError(
                f"Sample metadata lacks required factors {missing}", stage="metadata"
            )
        if frame.isna().to_numpy().any():
            sample = frame.index[frame.isna().any(axis=1)][0]
            raise MetadataError(
                f"Sample {sample!r} has a missing factor value", stage="metadata"
            )
        frame = frame.astype(str).apply(lambda col: col.str.strip())
        empty = (frame == "").any(axis=1)
        if empty.any():
            sample = frame.index[empty][0]
            raise MetadataError(
                f"Sample {sample!r} has an empty factor value", stage="metadata"
            )
        object.__setattr__(self, "data", frame)
        object.__setattr__(self, "required", tuple(self.required))

    @property
    def sample_ids(self) -> List[str]:
        return list(self.data.index)

    @property
    def factors(self) -> List[str]:
        return list(self.data.columns)

    def __len__(self) -> int:
        return self.data.shape[0]

    def factor(self, name: str) -> pd.Series:
        if name not in self.data.columns:
            raise ContrastError(f"Unknown factor {name!r}", stage="metadata")
        return self.data[name].copy()

    def levels(self, name: str) -> List[str]:
        """Distinct levels of a factor in order of first appearance."""
        return list(pd.unique(self.factor(name)))

    def samples_in(self, name: str, level: str) -> List[str]:
        column = self.factor(name)
        return list(column.index[column == level])

    def subset(self, sample_ids: Sequence[str]) -> "SampleMetadata":
        return SampleMetadata(self.data.loc[list(sample_ids)], required=self.required)

    def to_frame(self) -> pd.DataFrame:
        return self.data.copy()


# =============================================================================
# Statistical model and results
# =============================================================================


@dataclass(frozen=True)
class ContrastSpec:
    """Which two levels of a factor to compare; ``level_a`` is the numerator."""

    factor: str
    level_a: str
    level_b: str

    def __post_init__(self):
        for name in ("factor", "level_a", "level_b"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ContrastError(f"Contrast {name} must be a non-empty string", stage="contrast")
        if self.level_a == self.level_b:
            raise ContrastError(
                f"Contrast compares level {self.level_a!r} with itself", stage="contrast"
            )

    @classmethod
    def from_sequence(cls, values: Sequence[str]) -> "ContrastSpec":
        if len(values) != 3:
            raise ContrastError(
                f"Contrast needs [factor, level_a, level_b], got {list(values)}",
                stage="contrast",
            )
        return cls(*[str(v) for v in values])

    @property
    def label(self) -> str:
        return f"{self.factor}_{self.level_a}_vs_{self.level_b}"

    def as_list(self) -> List[str]:
        return [self.factor, self.level_a, self.level_b]

    def __str__(self) -> str:
        return f"{self.factor}: {self.level_a} vs {self.level_b}"


@dataclass(frozen=True, eq=False)
class DispersionModel:
    """Fitted mean/dispersion model for one dataset and design.

    ``gene_table`` has one row per gene with columns ``base_mean``,
    ``genewise_dispersion``, ``fitted_dispersion``, ``dispersion`` and
    ``all_zero``.  ``group_zero`` (genes x levels, boolean) marks genes with
    no reads in any sample of a level.  ``handle`` is whatever the engine
    needs to test contrasts against this fit; callers treat it as opaque and
    read-only.
    """

    gene_table: pd.DataFrame
    design_factor: str
    levels: Tuple[str, ...]
    reference_level: str
    sample_ids: Tuple[str, ...]
    handle: Any = field(default=None, repr=False)
    group_zero: Optional[pd.DataFrame] = field(default=None, repr=False)

    @property
    def genes(self) -> List[str]:
        return list(self.gene_table.index)

    @property
    def all_zero_genes(self) -> List[str]:
        return list(self.gene_table.index[self.gene_table["all_zero"].astype(bool)])

    def zero_in_group(self, level: str) -> pd.Series:
        """Boolean per gene: no reads in any sample of ``level``."""
        if self.group_zero is None or level not in self.group_zero.columns:
            return pd.Series(False, index=self.gene_table.index)
        return self.group_zero[level].copy()

    def dispersions(self) -> pd.DataFrame:
        return self.gene_table.copy()


@dataclass(frozen=True, eq=False)
class ResultsTable:
    """Per-gene Wald test results for one contrast.

    Columns: baseMean, log2FoldChange, lfcSE, stat, pvalue, padj.  Genes
    that could not be tested carry NaN p-values, never 0.
    """

    data: pd.DataFrame
    contrast: ContrastSpec
    lfc_threshold: float = 0.0
    alpha: float = 0.05

    def __post_init__(self):
        missing = [c for c in RESULT_COLUMNS if c not in self.data.columns]
        if missing:
            raise EngineOutputError(
                f"Results table lacks columns {missing}", stage="results"
            )
        frame = self.data.loc[:, RESULT_COLUMNS].astype(float).copy()
        frame.index = frame.index.map(str)
        frame.index.name = "gene_id"
        object.__setattr__(self, "data", frame)

    @property
    def shrunken(self) -> bool:
        return False

    @property
    def genes(self) -> List[str]:
        return list(self.data.index)

    def __len__(self) -> int:
        return self.data.shape[0]

    def to_frame(self) -> pd.DataFrame:
        return self.data.copy()

    def column(self, name: str) -> pd.Series:
        return self.data[name].copy()

    def sorted_by_padj(self) -> pd.DataFrame:
        """Rows ordered by padj ascending, untested genes last."""
        return self.data.sort_values("padj", na_position="last", kind="mergesort")

    def padj_violations(self) -> List[str]:
        """Genes where padj < pvalue (both non-null)."""
        both = self.data.dropna(subset=["pvalue", "padj"])
        bad = both["padj"] < both["pvalue"] - PADJ_TOLERANCE
        return list(both.index[bad])

    def summary(self, alpha: Optional[float] = None) -> Dict[str, int]:
        """Counts in the layout of DESeq2's ``summary()``."""
        alpha = self.alpha if alpha is None else alpha
        frame = self.data
        significant = frame["padj"].notna() & (frame["padj"] < alpha)
        return {
            "n_genes": int(frame.shape[0]),
            "n_nonzero": int((frame["baseMean"].fillna(0) > 0).sum()),
            "n_up": int((significant & (frame["log2FoldChange"] > 0)).sum()),
            "n_down": int((significant & (frame["log2FoldChange"] < 0)).sum()),
            "n_outliers": int(
                (frame["pvalue"].isna() & (frame["baseMean"].fillna(0) > 0)).sum()
            ),
            "n_low_counts": int((frame["padj"].isna() & frame["pvalue"].notna()).sum()),
        }


@dataclass(frozen=True, eq=False)
class ShrunkenResultsTable(ResultsTable):
    """Results whose log2FoldChange has been replaced by a shrunken estimate."""

    raw_log2_fold_change: Optional[pd.Series] = None

    @property
    def shrunken(self) -> bool:
        return True


@dataclass(frozen=True, eq=False)
class SignificantGeneSet:
    """Rows of a results table passing the padj (and optional |LFC|) cutoff."""

    data: pd.DataFrame
    contrast: ContrastSpec
    alpha: float
    lfc_cutoff: Optional[float] = None

    @property
    def gene_ids(self) -> List[str]:
        return list(self.data.index)

    def __len__(self) -> int:
        return self.data.shape[0]

    def __contains__(self, gene_id: object) -> bool:
        return gene_id in self.data.index

    @property
    def up(self) -> pd.DataFrame:
        return self.data[self.data["log2FoldChange"] > 0].copy()

    @property
    def down(self) -> pd.DataFrame:
        return self.data[self.data["log2FoldChange"] < 0].copy()

    def to_frame(self) -> pd.DataFrame:
        return self.data.copy()
