"""peru-prices CLI: scrape supermarket prices into the CSV store.

Usage:
    peru-prices run                         # Scrape the whole catalog
    peru-prices run --target metro-lacteos  # Scrape selected targets only
    peru-prices run -e production --deadline 3000
    peru-prices targets                     # List the catalog
    peru-prices report output/runs/<file>   # Summarize a stored run report

Exit codes for ``run``: 0 when the run succeeded or partially succeeded,
1 when it failed or was aborted, 2 on configuration errors.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from peru_prices.catalog import Catalog, build_catalog
from peru_prices.common.exceptions import ConfigurationError
from peru_prices.common.pacing import NavigationPacer
from peru_prices.configuration import (
    DEFAULT_CONFIG_DIR,
    ENVIRONMENTS,
    Settings,
    load_settings,
)
from peru_prices.data_types import FetcherKind, MergePolicy
from peru_prices.pipeline import Pipeline
from peru_prices.report import RunReport, load_report
from peru_prices.session import BrowserSession, HttpSession, RoutingFetcher
from peru_prices.session.base import Fetcher
from peru_prices.store import CsvStore

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_CONFIGURATION = 2

config_dir_option = click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    show_default=True,
    help="Directory holding base.yaml and the environment files.",
)
environment_option = click.option(
    "-e",
    "--environment",
    type=click.Choice(ENVIRONMENTS),
    default=None,
    help="Environment to load (default: $APP_ENVIRONMENT or local).",
)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(
    config_dir: Path, environment: str | None
) -> tuple[Settings, Catalog]:
    try:
        settings = load_settings(config_dir, environment)
        return settings, build_catalog(settings)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIGURATION)


def build_fetcher(
    settings: Settings,
    catalog: Catalog,
    pacer: NavigationPacer,
) -> RoutingFetcher:
    """Create only the sessions the catalog needs, sharing ``pacer``.

    The caller owns the pacer and closes it after the sessions.
    """
    pipeline = settings.pipeline
    kinds = {target.fetcher for target in catalog}
    sessions: dict[FetcherKind, Fetcher] = {}
    if FetcherKind.BROWSER in kinds:
        sessions[FetcherKind.BROWSER] = BrowserSession(
            settings.browser,
            concurrency=pipeline.concurrency,
            attempt_timeout=pipeline.fetch_timeout,
            pacer=pacer,
        )
    if FetcherKind.HTTP in kinds:
        sessions[FetcherKind.HTTP] = HttpSession(
            settings.http,
            concurrency=pipeline.concurrency,
            attempt_timeout=pipeline.fetch_timeout,
            pacer=pacer,
        )
    return RoutingFetcher(sessions)


async def _run(settings: Settings, catalog: Catalog) -> RunReport:
    pacer = NavigationPacer()
    fetcher = build_fetcher(settings, catalog, pacer)
    try:
        store = CsvStore(settings.out_path, settings.pipeline.merge_policy)
        pipeline = Pipeline(
            fetcher, store, settings.pipeline, settings.environment
        )
        return await pipeline.run(catalog)
    finally:
        try:
            await fetcher.close()
        finally:
            pacer.close()


def _echo_report(report: RunReport) -> None:
    for line in report.summary_lines():
        click.echo(line)


@click.group()
@click.version_option(package_name="peru-prices")
def cli() -> None:
    """peru-prices: supermarket price scraper."""


@cli.command()
@config_dir_option
@environment_option
@click.option(
    "--out",
    "out_path",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Output directory (overrides out_path).",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Targets processed at once.",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=1),
    default=None,
    help="Fetch attempts per target.",
)
@click.option(
    "--merge-policy",
    type=click.Choice([policy.value for policy in MergePolicy]),
    default=None,
    help="How existing keys in the store are treated.",
)
@click.option(
    "--deadline",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Run deadline in seconds.",
)
@click.option(
    "--fail-threshold",
    type=click.FloatRange(0, 1),
    default=None,
    help="Fail the run when more than this fraction of targets fail.",
)
@click.option(
    "--target",
    "target_ids",
    multiple=True,
    help="Only scrape this target id (repeatable).",
)
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging.")
def run(
    config_dir: Path,
    environment: str | None,
    out_path: Path | None,
    concurrency: int | None,
    max_retries: int | None,
    merge_policy: str | None,
    deadline: float | None,
    fail_threshold: float | None,
    target_ids: tuple[str, ...],
    verbose: bool,
) -> None:
    """Scrape the catalog and write prices to the store."""
    _configure_logging(verbose)
    settings, catalog = _load(config_dir, environment)

    overrides = {
        "concurrency": concurrency,
        "max_retries": max_retries,
        "merge_policy": MergePolicy(merge_policy) if merge_policy else None,
        "deadline": deadline,
        "fail_threshold": fail_threshold,
    }
    pipeline_settings = settings.pipeline.model_copy(
        update={k: v for k, v in overrides.items() if v is not None}
    )
    update: dict = {"pipeline": pipeline_settings}
    if out_path is not None:
        update["out_path"] = out_path
    settings = settings.model_copy(update=update)

    if target_ids:
        try:
            catalog = catalog.select(target_ids)
        except ConfigurationError as e:
            click.echo(f"Configuration error: {e}", err=True)
            sys.exit(EXIT_CONFIGURATION)

    click.echo(f"Environment: {settings.environment}")
    click.echo(f"Targets:     {len(catalog)}")
    click.echo(f"Output:      {settings.out_path}")

    report = asyncio.run(_run(settings, catalog))
    _echo_report(report)
    sys.exit(EXIT_OK if report.succeeded else EXIT_RUN_FAILED)


@cli.command("targets")
@config_dir_option
@environment_option
def list_targets(config_dir: Path, environment: str | None) -> None:
    """List the targets of the catalog."""
    _settings, catalog = _load(config_dir, environment)
    if not len(catalog):
        click.echo("No targets configured.")
        return
    for target in catalog:
        click.echo(f"{target.id}  [{target.fetcher.value}]  {target.url}")


@cli.command()
@click.argument(
    "path", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@click.option("--json", "as_json", is_flag=True, help="Print the raw JSON.")
def report(path: Path, as_json: bool) -> None:
    """Summarize a run report written by ``peru-prices run``."""
    run_report = load_report(path)
    if as_json:
        click.echo(run_report.to_json())
    else:
        _echo_report(run_report)


def main() -> None:
    """Entry point for the ``peru-prices`` console script."""
    cli()
