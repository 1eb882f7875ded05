from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional, Tuple

import click

from rnaseq_de.config import PipelineConfig, load_config
from rnaseq_de.engine import StatisticalEngine
from rnaseq_de.errors import PipelineError
from rnaseq_de.export import format_gene_rows, format_summary, write_outputs
from rnaseq_de.filtering import significant_genes
from rnaseq_de.loader import load_annotations, load_counts, read_keyed_table
from rnaseq_de.metadata import load_metadata
from rnaseq_de.model import ContrastSpec, ResultsTable
from rnaseq_de.pipeline import DEPipeline
from rnaseq_de.pydeseq2_engine import PyDESeq2Engine

logger = logging.getLogger(__name__)

# <factor>_<a>_vs_<b>_<kind>.csv as written by write_outputs
RESULTS_FILE_PATTERN = re.compile(
    r"^(?P<factor>[^_]+)_(?P<a>.+)_vs_(?P<b>.+)_(results|shrunken|significant)$"
)


def build_engine(config: PipelineConfig) -> StatisticalEngine:
    return PyDESeq2Engine(n_cpus=config.n_cpus)


def build_config(
    config_path: Optional[Path],
    contrasts: Tuple[Tuple[str, str, str], ...],
    **overrides,
) -> PipelineConfig:
    """Config file values, replaced by any option given on the command line."""
    if contrasts:
        overrides["contrasts"] = [list(c) for c in contrasts]
        overrides.setdefault("design_factor", contrasts[0][0])
    if config_path is not None:
        return load_config(config_path, **overrides)
    return PipelineConfig.from_dict({k: v for k, v in overrides.items() if v is not None})


def contrast_from_filename(path: Path) -> Optional[ContrastSpec]:
    match = RESULTS_FILE_PATTERN.match(path.stem)
    if match is None:
        return None
    return ContrastSpec(match.group("factor"), match.group("a"), match.group("b"))


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
def cli(verbose: bool) -> None:
    """Bulk RNA-seq differential expression analysis."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


@cli.command("run")
@click.option(
    "--counts",
    "counts_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Raw count table (genes x samples, CSV or TSV).",
)
@click.option(
    "--metadata",
    "metadata_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Sample table with 'sample', 'genotype' and 'condition' columns.",
)
@click.option(
    "--contrast",
    "contrasts",
    type=(str, str, str),
    multiple=True,
    help="FACTOR LEVEL_A LEVEL_B (repeat for multiple). Defaults to condition fibrosis normal.",
)
@click.option(
    "--alpha",
    type=click.FloatRange(0, 1, min_open=True, max_open=True),
    default=None,
    help="FDR cutoff for significant genes [default: 0.05].",
)
@click.option(
    "--lfc-threshold",
    type=click.FloatRange(min=0),
    default=None,
    help="Log2 fold-change threshold tested by the Wald test [default: 0.32].",
)
@click.option("--genotype", default=None, help="Analyse only samples of this genotype.")
@click.option(
    "--min-total-count",
    type=click.IntRange(min=0),
    default=None,
    help="Drop genes with fewer total reads before fitting [default: 0].",
)
@click.option("--no-shrink", is_flag=True, help="Skip log2 fold-change shrinkage.")
@click.option(
    "--exploratory",
    is_flag=True,
    help="Also keep a pass tested without a fold-change threshold.",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON configuration file; command-line options take precedence.",
)
@click.option(
    "--annotations",
    "annotations_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Gene annotation table joined onto the result tables.",
)
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("results"),
    show_default=True,
    help="Directory to write tables and summary.json.",
)
def run_command(
    counts_path: Path,
    metadata_path: Path,
    contrasts: Tuple[Tuple[str, str, str], ...],
    alpha: Optional[float],
    lfc_threshold: Optional[float],
    genotype: Optional[str],
    min_total_count: Optional[int],
    no_shrink: bool,
    exploratory: bool,
    config_path: Optional[Path],
    annotations_path: Optional[Path],
    output_dir: Path,
) -> None:
    """Run the full differential expression pipeline."""
    try:
        config = build_config(
            config_path,
            contrasts,
            alpha=alpha,
            lfc_threshold=lfc_threshold,
            genotype=genotype,
            min_total_count=min_total_count,
            shrink=False if no_shrink else None,
            exploratory_pass=True if exploratory else None,
        )
        counts = load_counts(counts_path)
        metadata = load_metadata(metadata_path)
        annotations = load_annotations(annotations_path) if annotations_path else None

        pipeline = DEPipeline(config, engine=build_engine(config))
        result = pipeline.run(counts, metadata)
        paths = write_outputs(result, output_dir, annotations=annotations)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(format_summary(result))
    click.echo(f"Wrote {len(paths)} files to {output_dir}")


@cli.command("summary")
@click.option(
    "--results",
    "results_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="A <contrast>_results.csv or <contrast>_shrunken.csv file.",
)
@click.option(
    "--alpha",
    type=click.FloatRange(0, 1),
    default=0.05,
    show_default=True,
    help="FDR cutoff.",
)
@click.option(
    "--contrast",
    type=(str, str, str),
    default=None,
    help="FACTOR LEVEL_A LEVEL_B; inferred from the file name if omitted.",
)
@click.option(
    "--top",
    "top_n",
    type=click.IntRange(min=0),
    default=10,
    show_default=True,
    help="Number of genes to list.",
)
def summary_command(
    results_path: Path,
    alpha: float,
    contrast: Optional[Tuple[str, str, str]],
    top_n: int,
) -> None:
    """Re-filter a written results table at a different FDR."""
    tested = ContrastSpec(*contrast) if contrast else contrast_from_filename(results_path)
    if tested is None:
        raise click.BadParameter(
            "cannot infer the contrast from the file name; pass --contrast.",
            param_hint="--contrast",
        )

    try:
        frame = read_keyed_table(results_path)
        results = ResultsTable(frame, tested, alpha=alpha)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc

    genes = significant_genes(results, alpha=alpha)
    counts = results.summary(alpha)
    click.echo(f"{tested} (padj < {alpha})")
    click.echo(f"  Genes: {counts['n_genes']:,}")
    click.echo(f"  Significant: {len(genes):,}")
    click.echo(f"  Upregulated: {counts['n_up']:,}")
    click.echo(f"  Downregulated: {counts['n_down']:,}")
    if len(genes) and top_n:
        for line in format_gene_rows(genes.to_frame(), top_n):
            click.echo(line)


def main() -> None:  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
