#!/usr/bin/env python3
"""
Command-line interface for rdapx.

Results are written to stdout as JSON (or NDJSON); logs go to stderr.
"""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import anyio
import click
import structlog

from rdapx.config import Config
from rdapx.exceptions import RegistryLoadFailedError
from rdapx.models import ResolutionResult
from rdapx.services.bulk_service import BulkJob, BulkScheduler
from rdapx.services.cache_service import TTLCache
from rdapx.services.resolver_service import ResolutionContext

logger = structlog.get_logger(__name__)


def configure_logging(level: str) -> None:
    """Route structlog through stdlib logging to stderr."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(stream=sys.stderr, level=getattr(logging, level, logging.WARNING), force=True)


def read_queries(path: Path) -> list[str]:
    """One query per line; blank lines and lines starting with '#' are skipped."""
    queries = []
    for line in path.read_text(encoding="utf-8").splitlines():
        text = line.strip()
        if text and not text.startswith("#"):
            queries.append(text)
    return queries


def _emit(results: list[ResolutionResult], output: str, pretty: bool) -> None:
    if output == "ndjson":
        for result in results:
            click.echo(result.model_dump_json())
        return
    data = [result.model_dump(mode="json") for result in results]
    click.echo(json.dumps(data, indent=2 if pretty else None))


async def _cancel_on_signal(job: BulkJob) -> None:
    with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            logger.warning("Interrupted, finishing in-flight lookups", signal=signum)
            job.cancel()
            return


async def _run_job(config: Config, queries: list[str], concurrency: int) -> list[ResolutionResult]:
    fatal: Optional[RegistryLoadFailedError] = None

    async with ResolutionContext.open(config) as context:
        scheduler = BulkScheduler(context)
        job = scheduler.create_job(queries, concurrency)

        async with anyio.create_task_group() as tg:
            if sys.platform != "win32":
                tg.start_soon(_cancel_on_signal, job)
            try:
                results = await scheduler.execute(job)
            except RegistryLoadFailedError as e:
                fatal = e
            tg.cancel_scope.cancel()

        logger.debug("Bulk statistics", **scheduler.get_statistics())

    if fatal is not None:
        raise fatal
    return results


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """rdapx: RDAP-first lookup for domains, IPs, and ASNs."""
    ctx.ensure_object(dict)

    config = Config.from_env()
    configure_logging("DEBUG" if verbose else config.log_level)
    ctx.obj["config"] = config


@cli.command()
@click.argument("queries", nargs=-1)
@click.option(
    "--file",
    "-f",
    "file_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Read one query per line from a file",
)
@click.option("--concurrency", "-c", type=click.IntRange(min=1), default=None, help="Parallel lookups")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=None, help="Timeout per request in seconds")
@click.option("--cache-ttl", type=click.IntRange(min=0), default=None, help="Cache TTL in seconds")
@click.option("--no-cache", is_flag=True, help="Disable cache (always fetch fresh)")
@click.option(
    "--output",
    "-o",
    type=click.Choice(["json", "ndjson"]),
    default="json",
    help="Output format",
)
@click.option("--pretty", is_flag=True, help="Pretty-print JSON")
@click.pass_context
def lookup(
    ctx: click.Context,
    queries: tuple[str, ...],
    file_path: Optional[Path],
    concurrency: Optional[int],
    timeout: Optional[float],
    cache_ttl: Optional[int],
    no_cache: bool,
    output: str,
    pretty: bool,
) -> None:
    """Look up domains, IP addresses, or ASNs (e.g. example.com 1.1.1.1 AS13335)."""
    config: Config = ctx.obj["config"]
    if timeout is not None:
        config.rdap_timeout = timeout
    if cache_ttl is not None:
        config.cache_ttl = cache_ttl
    if no_cache:
        config.use_cache = False

    items = list(queries)
    if file_path is not None:
        items.extend(read_queries(file_path))
    if not items:
        if file_path is not None:
            click.echo(f"Note: no queries found in {file_path}", err=True)
            return
        raise click.UsageError("Provide a QUERY or use --file <path>.")

    try:
        config.validate()
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    try:
        results = asyncio.run(_run_job(config, items, concurrency or config.max_concurrent_lookups))
    except RegistryLoadFailedError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(2)

    _emit(results, output, pretty)
    if not all(result.ok for result in results):
        sys.exit(1)


@cli.command("purge-cache")
@click.pass_context
def purge_cache(ctx: click.Context) -> None:
    """Remove expired records from the on-disk cache."""
    config: Config = ctx.obj["config"]
    cache = TTLCache.from_config(config)
    removed = asyncio.run(cache.purge_expired())
    click.echo(f"Removed {removed} expired cache records")


@cli.command("config")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current configuration."""
    config = ctx.obj["config"]

    click.echo("Current Configuration:")
    click.echo("=" * 40)

    for key, value in config.to_dict().items():
        click.echo(f"{key}: {value}")


def main() -> None:
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
