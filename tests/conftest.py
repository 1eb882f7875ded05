"""Shared fixtures: a small deterministic engine and toy datasets."""

from collections import Counter

import numpy as np
import pandas as pd
import pytest
from scipy import stats
from statsmodels.stats.multitest import multipletests

from rnaseq_de.engine import StatisticalEngine
from rnaseq_de.metadata import build_metadata
from rnaseq_de.model import CountMatrix, DispersionModel
from rnaseq_de.normalization import median_of_ratios


class FakeEngine(StatisticalEngine):
    """Closed-form stand-in for PyDESeq2.

    Size factors are median-of-ratios; dispersions are method-of-moments
    estimates pulled halfway toward their median; the Wald test uses the
    log-scale NB standard error of the difference of group means.
    """

    name = "fake"

    def __init__(self, prior_var: float = 1.0):
        self.prior_var = prior_var
        self.calls = Counter()

    def estimate_size_factors(self, counts):
        self.calls["estimate_size_factors"] += 1
        values = median_of_ratios(counts.to_frame().to_numpy())
        return pd.Series(values, index=counts.samples)

    def _normalized(self, counts):
        sf = median_of_ratios(counts.to_frame().to_numpy())
        return counts.to_frame().astype(float) / sf

    def fit(self, counts, metadata, design_factor, reference_level):
        self.calls["fit"] += 1
        normed = self._normalized(counts)
        groups = {
            level: metadata.samples_in(design_factor, level)
            for level in metadata.levels(design_factor)
        }

        estimates = []
        for samples in groups.values():
            block = normed[samples]
            mean = block.mean(axis=1)
            var = block.var(axis=1, ddof=1).fillna(0.0)
            with np.errstate(divide="ignore", invalid="ignore"):
                estimates.append(((var - mean) / mean ** 2).fillna(0.0))
        genewise = pd.concat(estimates, axis=1).mean(axis=1).clip(lower=1e-8)
        fitted = pd.Series(float(genewise.median()), index=genewise.index)

        gene_table = pd.DataFrame(
            {
                "base_mean": normed.mean(axis=1),
                "genewise_dispersion": genewise,
                "fitted_dispersion": fitted,
                "dispersion": (genewise + fitted) / 2,
                "all_zero": counts.to_frame().sum(axis=1) == 0,
            }
        )
        return DispersionModel(
            gene_table=gene_table,
            design_factor=design_factor,
            levels=tuple(groups),
            reference_level=reference_level,
            sample_ids=tuple(counts.samples),
            handle={"normalized": normed, "groups": groups},
        )

    def _estimates(self, model, contrast):
        normed = model.handle["normalized"]
        groups = model.handle["groups"]
        alpha = model.gene_table["dispersion"]
        a, b = groups[contrast.level_a], groups[contrast.level_b]
        mu_a, mu_b = normed[a].mean(axis=1), normed[b].mean(axis=1)
        with np.errstate(divide="ignore", invalid="ignore"):
            lfc = np.log2(mu_a / mu_b)
            var = (1 / (len(a) * mu_a) + alpha / len(a)) + (1 / (len(b) * mu_b) + alpha / len(b))
            se = np.sqrt(var) / np.log(2)
        return lfc, se

    def wald_test(self, model, contrast, lfc_threshold, alpha):
        self.calls["wald_test"] += 1
        lfc, se = self._estimates(model, contrast)
        testable = np.isfinite(lfc) & np.isfinite(se)

        if lfc_threshold > 0:
            stat = np.sign(lfc) * np.maximum((lfc.abs() - lfc_threshold) / se, 0)
            pvalue = np.minimum(1.0, 2 * stats.norm.sf(lfc.abs(), loc=lfc_threshold, scale=se))
        else:
            stat = lfc / se
            pvalue = 2 * stats.norm.sf(np.abs(stat))

        frame = pd.DataFrame(
            {
                "baseMean": model.gene_table["base_mean"],
                "log2FoldChange": lfc,
                "lfcSE": se,
                "stat": stat,
                "pvalue": pvalue,
            }
        )
        frame.loc[~testable, ["stat", "pvalue"]] = np.nan
        frame["padj"] = np.nan
        tested = frame["pvalue"].notna()
        if tested.any():
            frame.loc[tested, "padj"] = multipletests(
                frame.loc[tested, "pvalue"].to_numpy(), method="fdr_bh"
            )[1]
        return frame

    def shrink(self, model, contrast, results):
        self.calls["shrink"] += 1
        frame = results.to_frame()
        se2 = frame["lfcSE"] ** 2
        weight = self.prior_var / (self.prior_var + se2)
        return pd.DataFrame(
            {
                "log2FoldChange": frame["log2FoldChange"] * weight,
                "lfcSE": np.sqrt(weight) * frame["lfcSE"],
            },
            index=frame.index,
        )

    def variance_stabilize(self, counts, metadata, blind, design_factor):
        self.calls["variance_stabilize"] += 1
        return np.log2(self._normalized(counts) + 1)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def toy_counts():
    """3 genes x 4 samples: two null genes and one strongly induced gene."""
    frame = pd.DataFrame(
        {
            "normal_1": [100, 10, 500],
            "normal_2": [200, 10, 1000],
            "fibrosis_1": [100, 1000, 500],
            "fibrosis_2": [200, 1000, 1000],
        },
        index=["null_a", "induced", "null_b"],
    )
    return CountMatrix(frame)


@pytest.fixture
def toy_metadata():
    return build_metadata(
        {
            "normal_1": ("wt", "normal"),
            "normal_2": ("wt", "normal"),
            "fibrosis_1": ("wt", "fibrosis"),
            "fibrosis_2": ("wt", "fibrosis"),
        }
    )


def _simulated_frame(n_genes=60, n_per_group=3, seed=7):
    rng = np.random.RandomState(seed)
    samples = (
        [f"wt_normal_{i}" for i in range(n_per_group)]
        + [f"wt_fibrosis_{i}" for i in range(n_per_group)]
        + [f"ko_normal_{i}" for i in range(n_per_group)]
        + [f"ko_fibrosis_{i}" for i in range(n_per_group)]
    )
    base = rng.uniform(50, 500, size=n_genes)
    effect = np.ones(n_genes)
    effect[:10] = 8.0  # up in fibrosis
    effect[10:15] = 0.125  # down in fibrosis
    depth = rng.uniform(0.7, 1.4, size=len(samples))

    columns = {}
    for j, sample in enumerate(samples):
        mean = base * depth[j] * (effect if "fibrosis" in sample else 1.0)
        columns[sample] = rng.poisson(mean)
    genes = [f"GENE{i:03d}" for i in range(n_genes)]
    return pd.DataFrame(columns, index=genes)


@pytest.fixture
def simulated_counts():
    """60 genes x 12 samples, 15 of them differentially expressed."""
    return CountMatrix(_simulated_frame())


@pytest.fixture
def simulated_metadata(simulated_counts):
    return build_metadata(
        {
            sample: tuple(sample.split("_")[:2])
            for sample in simulated_counts.samples
        }
    )
