"""
Statistical engine interface.

The pipeline never fits negative-binomial models itself.  It hands aligned,
validated inputs to a ``StatisticalEngine`` and checks what comes back.
``PyDESeq2Engine`` is the production implementation; tests use a
lightweight fake with the same contract.
"""

from abc import ABC, abstractmethod

import pandas as pd

from .model import (
    ContrastSpec,
    CountMatrix,
    DispersionModel,
    ResultsTable,
    SampleMetadata,
)


class StatisticalEngine(ABC):
    """Abstract base class for count-model backends.

    All methods receive counts whose columns are already in metadata order
    and must return tables keyed by the same gene / sample identifiers.
    """

    name: str = "engine"

    @abstractmethod
    def estimate_size_factors(self, counts: CountMatrix) -> pd.Series:
        """Size factor per sample, indexed by sample ID."""
        pass

    @abstractmethod
    def fit(
        self,
        counts: CountMatrix,
        metadata: SampleMetadata,
        design_factor: str,
        reference_level: str,
    ) -> DispersionModel:
        """Fit dispersions and per-level means for ``~ design_factor``."""
        pass

    @abstractmethod
    def wald_test(
        self,
        model: DispersionModel,
        contrast: ContrastSpec,
        lfc_threshold: float,
        alpha: float,
    ) -> pd.DataFrame:
        """Per-gene results (RESULT_COLUMNS) for ``contrast``.

        With ``lfc_threshold`` tau > 0 the null hypothesis is |LFC| <= tau.
        """
        pass

    @abstractmethod
    def shrink(
        self,
        model: DispersionModel,
        contrast: ContrastSpec,
        results: ResultsTable,
    ) -> pd.DataFrame:
        """Shrunken ``log2FoldChange`` and ``lfcSE`` per gene."""
        pass

    @abstractmethod
    def variance_stabilize(
        self,
        counts: CountMatrix,
        metadata: SampleMetadata,
        blind: bool,
        design_factor: str,
    ) -> pd.DataFrame:
        """Variance-stabilized genes x samples matrix."""
        pass
