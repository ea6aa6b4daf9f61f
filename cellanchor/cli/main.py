"""Command-line interface for cellanchor.

Provides CLI commands for running the analysis stages.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from .. import __version__
from ..exceptions import CellAnchorError

RUN_ERRORS = (CellAnchorError, FileNotFoundError, KeyError, ValueError, RuntimeError)


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("cellanchor")


def _load_config(config: Optional[str]):
    from cellanchor.config import AnalysisConfig

    if config:
        return AnalysisConfig.from_yaml(Path(config))
    return AnalysisConfig.default()


def _run_workflow(ctx: click.Context, cfg, input_path, metadata, output_path, until, log_dir=None):
    """Run the workflow, exiting with status 1 on a stage failure."""
    from cellanchor.pipeline import AnalysisWorkflow, PipelineLogger

    pipeline_logger = None
    if log_dir:
        level = "DEBUG" if ctx.obj["debug"] else "INFO"
        pipeline_logger = PipelineLogger(log_dir, log_level=level).setup()

    try:
        workflow = AnalysisWorkflow(cfg, logger=pipeline_logger)
        return workflow.run(input_path, metadata_path=metadata, output_dir=output_path, until=until)
    except RUN_ERRORS as e:
        click.echo(f"Error: {type(e).__name__}: {e}", err=True)
        sys.exit(1)


def _input_options(func):
    func = click.option("--config", "-c", type=click.Path(exists=True),
                        help="Analysis configuration file (YAML)")(func)
    func = click.option("--out", "-o", "output_path", required=True, type=click.Path(),
                        help="Output directory")(func)
    func = click.option("--metadata", "-m", type=click.Path(exists=True),
                        help="Per-cell metadata table (delimited counts input only)")(func)
    func = click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
                        help="Input .h5ad file or delimited counts table")(func)
    return func


@click.group()
@click.version_option(version=__version__, prog_name="cellanchor")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """cellanchor: multi-sample scRNA-seq integration and annotation.

    Loads raw counts, filters cells, integrates samples through mutual
    nearest-neighbor anchors, clusters the integrated embedding and
    labels cells with several independent annotators.

    Examples:

        # Filter cells and write QC tables
        cellanchor qc --input counts.h5ad --out qc/

        # Integrate samples against a fixed reference
        cellanchor integrate --input counts.h5ad --out integrated/ --mode reference -r P1

        # Annotate a dataset written by "run --write-h5ad"
        cellanchor annotate --input integrated.h5ad --knowledge-base kb.tsv --out labels/

        # Full run from config
        cellanchor run --input counts.h5ad --config analysis.yaml --out results/
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


@cli.command()
@_input_options
@click.pass_context
def qc(
    ctx: click.Context,
    input_path: str,
    metadata: Optional[str],
    output_path: str,
    config: Optional[str],
) -> None:
    """Load a dataset and run cell-level quality control."""
    logger = ctx.obj["logger"]
    logger.info("Running QC on: %s", input_path)

    cfg = _load_config(config)
    result = _run_workflow(ctx, cfg, input_path, metadata, output_path, until="qc")

    click.echo(f"QC complete: {len(result.qc.samples)} samples kept, "
               f"{len(result.qc.excluded)} excluded")
    for sample_id, reason in sorted(result.qc.excluded.items()):
        click.echo(f"  excluded {sample_id}: {reason}")
    click.echo(f"Output saved to: {output_path}")


@cli.command()
@_input_options
@click.option("--mode", type=click.Choice(["sequential", "reference"]),
              help="Integration mode (overrides config)")
@click.option("--reference", "-r", "references", multiple=True,
              help="Reference sample id (repeatable)")
@click.option("--n-workers", type=int, help="Parallel workers for reference mode")
@click.pass_context
def integrate(
    ctx: click.Context,
    input_path: str,
    metadata: Optional[str],
    output_path: str,
    config: Optional[str],
    mode: Optional[str],
    references: Tuple[str, ...],
    n_workers: Optional[int],
) -> None:
    """Run QC and anchor-based integration across samples."""
    logger = ctx.obj["logger"]
    logger.info("Running integration on: %s", input_path)

    cfg = _load_config(config)
    if mode:
        cfg.integration.mode = mode
    if references:
        cfg.integration.reference = list(references)
    if n_workers is not None:
        cfg.integration.n_workers = n_workers

    result = _run_workflow(ctx, cfg, input_path, metadata, output_path, until="integrate")
    integration = result.integration
    click.echo(f"Integration complete: {integration.adata.n_obs} cells from "
               f"{len(integration.order)} samples")
    for sample_id, reason in sorted(integration.excluded.items()):
        click.echo(f"  excluded {sample_id}: {reason}")
    for key, value in integration.metrics.items():
        click.echo(f"  {key}: {value:.4f}")
    click.echo(f"Output saved to: {output_path}")


def _annotation_options(func):
    func = click.option("--resolution", type=float, help="Leiden clustering resolution")(func)
    func = click.option("--knowledge-base", type=click.Path(exists=True),
                        help="Marker knowledge base table (label, gene, weight)")(func)
    func = click.option("--marker-tree", type=click.Path(exists=True),
                        help="Hierarchical marker tree JSON")(func)
    func = click.option("--reference-profiles", type=click.Path(exists=True),
                        help="Reference expression profiles (genes x labels)")(func)
    return func


def _apply_annotation_options(cfg, reference_profiles, marker_tree, knowledge_base,
                              resolution, write_h5ad):
    if reference_profiles:
        cfg.annotation.reference_profiles = reference_profiles
    if marker_tree:
        cfg.annotation.marker_tree = marker_tree
    if knowledge_base:
        cfg.annotation.knowledge_base = knowledge_base
    if resolution is not None:
        cfg.clustering.resolution = resolution
    if write_h5ad:
        cfg.export.write_h5ad = True


def _report_annotation(result, output_path: str) -> None:
    click.echo(f"Clustering: {result.clustering.n_clusters} clusters")
    annotation = result.annotation
    click.echo(f"Annotation methods: {', '.join(annotation.methods) or 'none'}")
    for method, error in sorted(annotation.failures.items()):
        click.echo(f"  failed {method}: {error}", err=True)
    click.echo(f"Wrote {len(result.exports)} outputs to: {output_path}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Integrated .h5ad (e.g. written by 'run --write-h5ad')")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Analysis configuration file (YAML)")
@_annotation_options
@click.option("--write-h5ad", is_flag=True, help="Also write the annotated AnnData")
@click.pass_context
def annotate(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    config: Optional[str],
    reference_profiles: Optional[str],
    marker_tree: Optional[str],
    knowledge_base: Optional[str],
    resolution: Optional[float],
    write_h5ad: bool,
) -> None:
    """Cluster and annotate an already integrated dataset."""
    from cellanchor.pipeline import AnalysisWorkflow

    logger = ctx.obj["logger"]
    logger.info("Annotating: %s", input_path)

    cfg = _load_config(config)
    _apply_annotation_options(cfg, reference_profiles, marker_tree, knowledge_base,
                              resolution, write_h5ad)
    try:
        result = AnalysisWorkflow(cfg).annotate_dataset(input_path, output_dir=output_path)
    except RUN_ERRORS as e:
        click.echo(f"Error: {type(e).__name__}: {e}", err=True)
        sys.exit(1)
    _report_annotation(result, output_path)


@cli.command()
@_input_options
@_annotation_options
@click.option("--write-h5ad", is_flag=True, help="Also write the annotated AnnData")
@click.option("--log-dir", type=click.Path(), help="Directory for run log files")
@click.pass_context
def run(
    ctx: click.Context,
    input_path: str,
    metadata: Optional[str],
    output_path: str,
    config: Optional[str],
    reference_profiles: Optional[str],
    marker_tree: Optional[str],
    knowledge_base: Optional[str],
    resolution: Optional[float],
    write_h5ad: bool,
    log_dir: Optional[str],
) -> None:
    """Run the full analysis: QC, integration, clustering, DE and annotation."""
    logger = ctx.obj["logger"]
    logger.info("Running full analysis on: %s", input_path)

    cfg = _load_config(config)
    _apply_annotation_options(cfg, reference_profiles, marker_tree, knowledge_base,
                              resolution, write_h5ad)

    result = _run_workflow(ctx, cfg, input_path, metadata, output_path, until=None,
                           log_dir=log_dir)
    _report_annotation(result, output_path)


@cli.command("config")
@click.option("--out", "-o", "output_path", type=click.Path(),
              help="Write the configuration here instead of stdout")
@click.option("--from", "-f", "source", type=click.Path(exists=True),
              help="Validate and normalize an existing configuration")
def show_config(output_path: Optional[str], source: Optional[str]) -> None:
    """Print the default (or a validated) analysis configuration as YAML."""
    try:
        cfg = _load_config(source)
    except (FileNotFoundError, ValueError, TypeError) as e:
        click.echo(f"Error: invalid configuration: {e}", err=True)
        sys.exit(1)
    if output_path:
        cfg.to_yaml(output_path)
        click.echo(f"Configuration written to: {output_path}")
    else:
        click.echo(cfg.to_yaml(), nl=False)


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
