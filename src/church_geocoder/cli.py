"""
Church Geocoder — CLI Entry Point
==================================
Installed as the ``church-geocode`` command via ``pyproject.toml``.

Usage:
    church-geocode                      # up to max_records (default 100)
    church-geocode --limit 500
    church-geocode --limit 0            # no limit, same as --all
    church-geocode --all --backend mapbox --log-dir logs
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from church_geocoder.config import DEFAULT_CONFIG_PATH, load_config
from church_geocoder.exceptions import ChurchGeocoderError
from church_geocoder.job import BACKENDS, GeocodingJob


@click.command(
    name="church-geocode",
    help="Geocode pending church property records in Supabase.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=0),
    default=None,
    help="Process at most N records, 0 for no limit (overrides processing.max_records).",
)
@click.option(
    "--all", "process_all",
    is_flag=True,
    default=False,
    help="Process every pending record (overrides --limit and max_records).",
)
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="YAML configuration file. Defaults are used if it does not exist.",
)
@click.option(
    "--backend",
    type=click.Choice(list(BACKENDS), case_sensitive=False),
    default="mapbox",
    show_default=True,
    help="Geocoding provider to use.",
)
@click.option(
    "--log-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("logs"),
    show_default=True,
    help="Directory for the run log, error log and summary file.",
)
@click.option(
    "--env-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Read credentials from this .env file instead of searching for one.",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def main(
    limit: int | None,
    process_all: bool,
    config_path: Path,
    backend: str,
    log_dir: Path,
    env_file: Path | None,
    verbose: bool,
) -> None:
    """CLI entry point — wires Click options into GeocodingJob."""
    job = None
    try:
        config = load_config(config_path, limit=limit, process_all=process_all)
        job = GeocodingJob.from_env(
            config,
            backend=backend,
            log_dir=log_dir,
            env_file=env_file,
            verbose=verbose,
        )
        job.run()
    except ChurchGeocoderError as exc:
        click.echo(f"Error: {exc.message}", err=True)
        sys.exit(1)
    finally:
        if job is not None:
            job.close()

    result = job.result
    click.echo(f"\nProcessed: {result.processed}")
    click.echo(f"Geocoded: {result.succeeded} ({result.low_confidence} low confidence)")
    click.echo(f"Failed: {result.failed} ({result.abandoned} newly skipped)")
    click.echo(f"Skipped (incomplete address): {result.skipped}")
    if job.summary_path is not None:
        click.echo(f"Summary written to: {job.summary_path}")


if __name__ == "__main__":
    main()
