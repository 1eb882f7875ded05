"""
PyDESeq2 backend for the statistical engine interface.

PyDESeq2 (Python implementation of DESeq2) estimates median-of-ratios size
factors, fits per-gene negative binomial dispersions shrunk toward a
mean-dispersion trend, runs Wald tests with Cook's-distance outlier handling
and independent filtering, and shrinks log2 fold changes with an apeGLM-style
prior.  PyDESeq2 works on samples x genes, so every table is transposed on
the way in and out.
"""

import logging
from typing import List, Tuple

import numpy as np
import pandas as pd

from .engine import StatisticalEngine
from .errors import ContrastError
from .model import (
    ContrastSpec,
    CountMatrix,
    DispersionModel,
    ResultsTable,
    SampleMetadata,
)

try:
    from pydeseq2.dds import DeseqDataSet
    from pydeseq2.default_inference import DefaultInference
    from pydeseq2.ds import DeseqStats
    from pydeseq2.preprocessing import deseq2_norm

    HAS_PYDESEQ2 = True
except ImportError:
    HAS_PYDESEQ2 = False

logger = logging.getLogger(__name__)


def _deseq_metadata(
    metadata: SampleMetadata, design_factor: str, reference_level: str
) -> pd.DataFrame:
    """Metadata with the design factor as a categorical, reference level first."""
    levels = metadata.levels(design_factor)
    ordered = [reference_level] + [lvl for lvl in levels if lvl != reference_level]
    frame = metadata.to_frame()
    frame[design_factor] = pd.Categorical(frame[design_factor], categories=ordered)
    return frame


def find_coefficient(columns: List[str], factor: str, level: str) -> str:
    """
    Name of the design-matrix coefficient for ``level`` of ``factor``.

    Accepts both naming schemes PyDESeq2 has used:
    ``condition[T.fibrosis]`` and ``condition_fibrosis_vs_normal``.
    """
    for column in columns:
        if column == f"{factor}[T.{level}]" or column.startswith(f"{factor}_{level}_vs_"):
            return column
    raise ContrastError(
        f"No coefficient for {factor}={level!r} among {list(columns)}",
        stage="shrinkage",
    )


class PyDESeq2Engine(StatisticalEngine):
    """
    Statistical engine backed by PyDESeq2.

    Example:
        engine = PyDESeq2Engine(n_cpus=4)
        model = fit_model(counts, metadata, engine)
    """

    name = "pydeseq2"

    def __init__(
        self,
        n_cpus: int = 1,
        fit_type: str = "parametric",
        refit_cooks: bool = True,
        cooks_filter: bool = True,
        independent_filter: bool = True,
        quiet: bool = True,
    ):
        if not HAS_PYDESEQ2:
            raise ImportError("pydeseq2 not installed. Install with: pip install pydeseq2")
        self.n_cpus = n_cpus
        self.fit_type = fit_type
        self.refit_cooks = refit_cooks
        self.cooks_filter = cooks_filter
        self.independent_filter = independent_filter
        self.quiet = quiet
        self.inference = DefaultInference(n_cpus=n_cpus)

    def _dataset(
        self,
        counts: CountMatrix,
        metadata: SampleMetadata,
        design: str,
        design_factor: str,
        reference_level: str,
    ) -> "DeseqDataSet":
        return DeseqDataSet(
            counts=counts.to_frame().T,
            metadata=_deseq_metadata(metadata, design_factor, reference_level),
            design=design,
            fit_type=self.fit_type,
            refit_cooks=self.refit_cooks,
            inference=self.inference,
            quiet=self.quiet,
        )

    def _stats(
        self,
        model: DispersionModel,
        contrast: ContrastSpec,
        lfc_threshold: float,
        alpha: float,
    ) -> "DeseqStats":
        kwargs = dict(
            contrast=contrast.as_list(),
            alpha=alpha,
            cooks_filter=self.cooks_filter,
            independent_filter=self.independent_filter,
            inference=self.inference,
            quiet=self.quiet,
        )
        if lfc_threshold > 0:
            kwargs.update(lfc_null=lfc_threshold, alt_hypothesis="greaterAbs")
        return DeseqStats(model.handle, **kwargs)

    def estimate_size_factors(self, counts: CountMatrix) -> pd.Series:
        _, size_factors = deseq2_norm(counts.to_frame().T)
        return pd.Series(
            np.asarray(size_factors, dtype=float).ravel(), index=counts.samples
        )

    def fit(
        self,
        counts: CountMatrix,
        metadata: SampleMetadata,
        design_factor: str,
        reference_level: str,
    ) -> DispersionModel:
        design = f"~{design_factor}"
        logger.info("Running PyDESeq2 (%s, reference %r)...", design, reference_level)
        dds = self._dataset(counts, metadata, design, design_factor, reference_level)
        dds.deseq2()

        n_genes = counts.shape[0]

        def varm(key: str) -> np.ndarray:
            if key not in dds.varm:
                return np.full(n_genes, np.nan)
            return np.asarray(dds.varm[key], dtype=float).ravel()

        gene_table = pd.DataFrame(
            {
                "base_mean": varm("_normed_means"),
                "genewise_dispersion": varm("genewise_dispersions"),
                "fitted_dispersion": varm("fitted_dispersions"),
                "dispersion": varm("dispersions"),
                "all_zero": counts.to_frame().sum(axis=1).to_numpy() == 0,
            },
            index=counts.genes,
        )
        gene_table.index.name = "gene_id"

        return DispersionModel(
            gene_table=gene_table,
            design_factor=design_factor,
            levels=tuple(metadata.levels(design_factor)),
            reference_level=reference_level,
            sample_ids=tuple(counts.samples),
            handle=dds,
        )

    def wald_test(
        self,
        model: DispersionModel,
        contrast: ContrastSpec,
        lfc_threshold: float,
        alpha: float,
    ) -> pd.DataFrame:
        stats = self._stats(model, contrast, lfc_threshold, alpha)
        stats.summary()
        return stats.results_df.copy()

    def _shrinkage_coefficient(
        self, model: DispersionModel, contrast: ContrastSpec
    ) -> Tuple[str, float]:
        """Coefficient to shrink and the sign mapping it onto ``contrast``."""
        columns = list(model.handle.varm["LFC"].columns)
        if contrast.level_b == model.reference_level:
            return find_coefficient(columns, contrast.factor, contrast.level_a), 1.0
        if contrast.level_a == model.reference_level:
            return find_coefficient(columns, contrast.factor, contrast.level_b), -1.0
        raise ContrastError(
            f"Shrinkage needs one contrast level to be the reference level "
            f"{model.reference_level!r}; got {contrast}",
            stage="shrinkage",
        )

    def shrink(
        self,
        model: DispersionModel,
        contrast: ContrastSpec,
        results: ResultsTable,
    ) -> pd.DataFrame:
        coeff, sign = self._shrinkage_coefficient(model, contrast)
        logger.info("Shrinking coefficient %s", coeff)

        # lfc_shrink rewrites the stats object in place; use a fresh one.
        stats = self._stats(model, contrast, results.lfc_threshold, results.alpha)
        stats.summary()
        stats.lfc_shrink(coeff=coeff)

        shrunk = stats.results_df.loc[:, ["log2FoldChange", "lfcSE"]].copy()
        shrunk["log2FoldChange"] = sign * shrunk["log2FoldChange"]
        return shrunk

    def variance_stabilize(
        self,
        counts: CountMatrix,
        metadata: SampleMetadata,
        blind: bool,
        design_factor: str,
    ) -> pd.DataFrame:
        reference = metadata.levels(design_factor)[0]
        dds = self._dataset(counts, metadata, f"~{design_factor}", design_factor, reference)
        dds.vst(use_design=not blind)
        return pd.DataFrame(
            np.asarray(dds.layers["vst_counts"], dtype=float),
            index=counts.samples,
            columns=counts.genes,
        ).T
