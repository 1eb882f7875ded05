"""
Writers for pipeline outputs.

Every table is written as CSV with gene or sample identifiers in the first
column; ``summary.json`` records the configuration, engine and per-contrast
counts of one run.

Example:
    result = DEPipeline(config).run(counts, metadata)
    paths = write_outputs(result, "results/", annotations=annotations)
    print(format_summary(result))
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd

from .pipeline import ContrastResult, PipelineResult

logger = logging.getLogger(__name__)


def annotate(frame: pd.DataFrame, annotations: Optional[pd.DataFrame]) -> pd.DataFrame:
    """Left-join annotation columns after the statistics, keeping row order."""
    if annotations is None or annotations.empty:
        return frame
    extra = annotations.loc[:, [c for c in annotations.columns if c not in frame.columns]]
    return frame.join(extra, how="left")


def _write_csv(frame: pd.DataFrame, path: Path, index_label: str) -> Path:
    frame.to_csv(path, index_label=index_label)
    logger.debug("Wrote %s (%d rows)", path, frame.shape[0])
    return path


def contrast_summary(result: ContrastResult) -> Dict[str, Any]:
    """Counts for one contrast, ready for JSON."""
    summary = result.final.summary()
    payload = {
        "contrast": result.contrast.as_list(),
        "lfc_threshold": result.results.lfc_threshold,
        "alpha": result.results.alpha,
        "shrunken": result.shrunken is not None,
        "n_significant": len(result.significant),
        "degenerate_genes": [
            {"gene_id": d.gene_id, "reason": d.reason} for d in result.degenerate
        ],
        **summary,
    }
    if result.exploratory is not None:
        payload["exploratory"] = {
            "lfc_threshold": result.exploratory.results.lfc_threshold,
            "n_significant": len(result.exploratory.significant),
            **result.exploratory.final.summary(),
        }
    return payload


def result_summary(result: PipelineResult) -> Dict[str, Any]:
    """Run-level summary written to ``summary.json``."""
    return {
        "created_at": datetime.now(timezone.utc).isoformat(),
        "engine": result.engine_name,
        "n_genes": result.counts.shape[0],
        "n_samples": result.counts.shape[1],
        "samples": result.metadata.sample_ids,
        "reference_level": result.model.reference_level,
        "size_factors": {k: float(v) for k, v in result.size_factors.to_series().items()},
        "explained_variance_ratio": {
            k: float(v) for k, v in result.pca.explained_variance_ratio.items()
        },
        "config": result.config.to_dict(),
        "contrasts": {
            label: contrast_summary(c) for label, c in result.contrasts.items()
        },
    }


def write_contrast(
    result: ContrastResult,
    pipeline_result: PipelineResult,
    output_dir: Path,
    annotations: Optional[pd.DataFrame] = None,
) -> List[Path]:
    """Write the per-contrast tables, named ``<label>_*.csv``."""
    label = result.label
    paths = [
        _write_csv(
            annotate(result.results.sorted_by_padj(), annotations),
            output_dir / f"{label}_results.csv",
            "gene_id",
        )
    ]
    if result.shrunken is not None:
        paths.append(
            _write_csv(
                annotate(result.shrunken.sorted_by_padj(), annotations),
                output_dir / f"{label}_shrunken.csv",
                "gene_id",
            )
        )
    paths.append(
        _write_csv(
            annotate(result.significant.to_frame(), annotations),
            output_dir / f"{label}_significant.csv",
            "gene_id",
        )
    )
    paths.append(
        _write_csv(
            pipeline_result.significant_normalized_counts(label),
            output_dir / f"{label}_significant_normalized_counts.csv",
            "gene_id",
        )
    )
    if result.exploratory is not None:
        paths.append(
            _write_csv(
                annotate(result.exploratory.final.sorted_by_padj(), annotations),
                output_dir / f"{label}_exploratory_results.csv",
                "gene_id",
            )
        )
    return paths


def write_outputs(
    result: PipelineResult,
    output_dir: Union[str, Path],
    annotations: Optional[pd.DataFrame] = None,
) -> List[Path]:
    """
    Write every table of a pipeline run into ``output_dir``.

    Args:
        result: Pipeline result
        output_dir: Directory to write to (created if missing)
        annotations: Optional gene annotations joined onto result tables

    Returns:
        Paths of the written files
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    paths = [
        _write_csv(
            result.size_factors.to_series().to_frame(),
            output_dir / "size_factors.csv",
            "sample",
        ),
        _write_csv(result.normalized.to_frame(), output_dir / "normalized_counts.csv", "gene_id"),
        _write_csv(result.transformed.to_frame(), output_dir / "vst_counts.csv", "gene_id"),
        _write_csv(result.correlation, output_dir / "sample_correlation.csv", "sample"),
        _write_csv(result.pca.coordinates, output_dir / "pca.csv", "sample"),
        _write_csv(result.model.dispersions(), output_dir / "dispersions.csv", "gene_id"),
    ]

    for contrast_result in result.contrasts.values():
        paths.extend(write_contrast(contrast_result, result, output_dir, annotations))

    summary_path = output_dir / "summary.json"
    with summary_path.open("w", encoding="utf-8") as fh:
        json.dump(result_summary(result), fh, indent=2)
    paths.append(summary_path)

    logger.info("Wrote %d files to %s", len(paths), output_dir)
    return paths


def _format_padj(value: float) -> str:
    return "N/A" if value is None or np.isnan(value) else f"{value:.2e}"


def format_gene_rows(frame: pd.DataFrame, top_n: int = 10) -> List[str]:
    lines = [f"  {'Gene':<18} {'Log2FC':>10} {'P-adj':>12} {'BaseMean':>12}"]
    lines.append("  " + "-" * 55)
    for gene_id, row in frame.head(top_n).iterrows():
        lines.append(
            f"  {str(gene_id):<18} {row['log2FoldChange']:>10.2f} "
            f"{_format_padj(row['padj']):>12} {row['baseMean']:>12.1f}"
        )
    return lines


def format_summary(result: PipelineResult, top_n: int = 10) -> str:
    """Human-readable summary of a pipeline run."""
    cfg = result.config
    lines = []

    lines.append("=" * 70)
    lines.append("DIFFERENTIAL EXPRESSION ANALYSIS RESULTS")
    lines.append("=" * 70)
    lines.append("")
    lines.append("SAMPLES")
    lines.append(f"  Samples: {result.counts.shape[1]}")
    if cfg.genotype is not None:
        lines.append(f"  Genotype: {cfg.genotype}")
    lines.append(f"  Genes tested: {result.counts.shape[0]:,}")
    lines.append("")
    lines.append("METHODS")
    lines.append(f"  Engine: {result.engine_name}")
    lines.append(f"  Design: ~ {cfg.design_factor} (reference {result.model.reference_level})")
    lines.append(f"  FDR: {cfg.alpha}")
    lines.append(f"  LFC threshold: {cfg.lfc_threshold}")
    lines.append(f"  Shrinkage: {'yes' if cfg.shrink else 'no'}")

    for label, contrast_result in result.contrasts.items():
        counts = contrast_result.final.summary(cfg.alpha)
        lines.append("")
        lines.append("-" * 70)
        lines.append(str(contrast_result.contrast).upper())
        lines.append("-" * 70)
        lines.append(f"  Significant: {len(contrast_result.significant):,}")
        lines.append(f"  Upregulated: {counts['n_up']:,}")
        lines.append(f"  Downregulated: {counts['n_down']:,}")
        lines.append(f"  Outliers: {counts['n_outliers']:,}")
        if contrast_result.degenerate:
            lines.append(f"  Untestable genes: {len(contrast_result.degenerate):,}")
        if contrast_result.exploratory is not None:
            lines.append(
                f"  Significant at LFC threshold 0: "
                f"{len(contrast_result.exploratory.significant):,}"
            )
        if len(contrast_result.significant):
            lines.append("")
            lines.append(f"  TOP {min(top_n, len(contrast_result.significant))} GENES")
            lines.extend(format_gene_rows(contrast_result.significant.to_frame(), top_n))

    lines.append("")
    lines.append("=" * 70)
    return "\n".join(lines)
