"""Command-line interface for sctrace.

Provides CLI commands for running the analysis pipeline, validating
configurations and running quality control on its own.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import click

from sctrace import __version__


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("sctrace")


def _load_config(path: Optional[str]):
    """Load the analysis config, exiting with the validation messages on error."""
    from sctrace.core.errors import ConfigValidationError
    from sctrace.pipeline import AnalysisConfig

    try:
        return AnalysisConfig.from_yaml(path) if path else AnalysisConfig.default()
    except ConfigValidationError as exc:
        _fail(exc.errors)


def _fail(errors) -> None:
    for error in errors:
        click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="sctrace")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """sctrace: single-cell trajectory analysis pipeline.

    Takes per-sample count tables through quality control, merging,
    normalization, batch integration, clustering, trajectory inference
    and differential expression.

    Examples:

        # Check a configuration against the input samples
        sctrace validate-config --config analysis.yaml --manifest samples.csv

        # Run quality control only
        sctrace qc --manifest samples.csv --config analysis.yaml --out qc/

        # Run the full analysis
        sctrace run --manifest samples.csv --config analysis.yaml --out results/
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


@cli.command()
@click.option("--manifest", "-m", required=True, type=click.Path(exists=True),
              help="Sample manifest CSV (sample id, triplet path, optional batch)")
@click.option("--config", "-c", required=True, type=click.Path(exists=True),
              help="Analysis configuration file (YAML)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--log-dir", type=click.Path(), help="Directory for the run log (default: <out>/logs)")
@click.option("--cache-dir", type=click.Path(), help="Persist stage artifacts to this directory")
@click.option("--no-counts", is_flag=True, help="Do not export the filtered count triplets")
@click.option("--dry-run", is_flag=True, help="Validate and show the stage order without running")
@click.pass_context
def run(
    ctx: click.Context,
    manifest: str,
    config: str,
    output_path: str,
    log_dir: Optional[str],
    cache_dir: Optional[str],
    no_counts: bool,
    dry_run: bool,
) -> None:
    """Run the full analysis and export every result table."""
    logger = ctx.obj["logger"]

    from sctrace.core.errors import ConfigValidationError, InputShapeError
    from sctrace.core.preprocessing import DataLoader
    from sctrace.io import export_results
    from sctrace.pipeline import PipelineLogger, PipelineRunner

    analysis = _load_config(config)
    if cache_dir:
        analysis.cache_dir = cache_dir

    logger.info("Loading samples from %s", manifest)
    samples = DataLoader(analysis.loader).load_samples(manifest)

    out_dir = Path(output_path)
    level = "DEBUG" if ctx.obj["debug"] else "INFO"
    plog = PipelineLogger(log_dir or out_dir / "logs", log_level=level).setup()
    runner = PipelineRunner(analysis, logger=plog)

    try:
        executor = runner.validate(samples)
    except ConfigValidationError as exc:
        _fail(exc.errors)
    except InputShapeError as exc:
        _fail([str(exc)])

    order = executor.get_execution_order()
    click.echo(f"Pipeline stages: {' -> '.join(order)}")
    if dry_run:
        click.echo("Dry run: configuration and stage contracts are valid")
        return

    try:
        result = runner.run(samples)
    except (ConfigValidationError, InputShapeError) as exc:
        _fail(getattr(exc, "errors", [str(exc)]))

    written = export_results(result, out_dir, config=analysis, include_counts=not no_counts)

    click.echo(
        f"Analysis complete: {result.matrix.n_cells} cells, "
        f"{result.clusters.n_clusters} clusters, root cluster {result.trajectory.root}"
    )
    if len(result.diagnostics):
        click.echo(f"Diagnostics: {result.diagnostics.counts()} (see diagnostics.yaml)")
    click.echo(f"{len(written)} files written to: {out_dir}")


@cli.command("validate-config")
@click.option("--config", "-c", required=True, type=click.Path(exists=True),
              help="Analysis configuration file (YAML)")
@click.option("--manifest", "-m", type=click.Path(exists=True),
              help="Sample manifest; enables checks against the input genes")
@click.pass_context
def validate_config(ctx: click.Context, config: str, manifest: Optional[str]) -> None:
    """Validate an analysis configuration."""
    from sctrace.core.errors import ConfigValidationError
    from sctrace.core.preprocessing import DataLoader

    analysis = _load_config(config)
    samples = DataLoader(analysis.loader).load_samples(manifest) if manifest else None
    try:
        analysis.validate(samples)
    except ConfigValidationError as exc:
        _fail(exc.errors)
    click.echo("Configuration is valid")


@cli.command("init-config")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Path of the YAML file to write")
def init_config(output_path: str) -> None:
    """Write the default configuration as a starting point."""
    from sctrace.pipeline import AnalysisConfig

    AnalysisConfig.default().to_yaml(output_path)
    click.echo(f"Default configuration written to: {output_path}")
    click.echo("Set trajectory.root_strategy before running")


@cli.command()
@click.option("--manifest", "-m", required=True, type=click.Path(exists=True),
              help="Sample manifest CSV")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Analysis configuration file (YAML); only the qc section is used")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.pass_context
def qc(ctx: click.Context, manifest: str, config: Optional[str], output_path: str) -> None:
    """Run cell quality control and write the per-cell audit table."""
    logger = ctx.obj["logger"]

    from sctrace.core.preprocessing import CellQC, DataLoader
    from sctrace.io import ensure_output_dir, log_yaml, write_dataframe

    analysis = _load_config(config)
    samples = DataLoader(analysis.loader).load_samples(manifest)
    errors = analysis.check_against(samples)
    if errors:
        _fail(errors)

    result = CellQC(analysis.stage_config("qc"), logger=logger).filter_samples(samples)
    out_dir = ensure_output_dir(output_path)
    write_dataframe(result.audit, out_dir / "qc_audit.csv")
    log_yaml(out_dir / "qc_summary.yaml", result.to_dict())

    summary = result.to_dict()
    click.echo(f"QC complete: {summary['cells_kept']} of {summary['cells_total']} cells kept")
    for skipped in summary["samples_skipped"]:
        click.echo(f"Skipped sample with no surviving cells: {skipped}", err=True)
    click.echo(f"Output saved to: {out_dir}")


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
