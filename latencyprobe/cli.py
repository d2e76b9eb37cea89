"""CLI entry point and orchestration for latencyprobe."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler

from latencyprobe import __version__, core
from latencyprobe.config import (
    DEFAULT_ITERATIONS,
    DEFAULT_TIMEOUT,
    MAX_ITERATIONS,
    MAX_TIMEOUT,
    MIN_ITERATIONS,
    MIN_TIMEOUT,
    config_from_env,
    resolve_concurrency,
)
from latencyprobe.errors import EXIT_CONFIG_ERROR, EXIT_INTERNAL_ERROR, ConfigError, ProbeError
from latencyprobe.models import Config, ExecutionResults
from latencyprobe.recovery import RetryPolicy
from latencyprobe.resolver import DnsManager
from latencyprobe.scheduler import cell_key

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool, debug: bool) -> None:
    """Send package logs through a RichHandler on stderr."""
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING

    package_logger = logging.getLogger("latencyprobe")
    package_logger.setLevel(level)
    if not any(isinstance(h, RichHandler) for h in package_logger.handlers):
        handler = RichHandler(
            console=Console(stderr=True),
            show_path=debug,
            rich_tracebacks=debug,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        package_logger.addHandler(handler)


def _build_config(
    urls: tuple[str, ...],
    dns_servers: tuple[str, ...],
    doh_providers: tuple[str, ...],
    count: Optional[int],
    timeout: Optional[float],
    color: Optional[bool],
    verbose: bool,
    debug: bool,
    concurrency: Optional[int],
    deadline: Optional[float],
    use_get: bool,
) -> Config:
    """Merge CLI flags over environment variables over defaults."""
    env = config_from_env(os.environ)
    config = Config(
        verbose=verbose,
        debug=debug,
        concurrency=concurrency,
        run_deadline=deadline,
        method="GET" if use_get else "HEAD",
    )
    if urls:
        config.urls = list(urls)
    elif "urls" in env:
        config.urls = env["urls"]
    config.dns_servers = list(dns_servers) or env.get("dns_servers", [])
    config.doh_providers = list(doh_providers) or env.get("doh_providers", [])
    config.iterations = count if count is not None else env.get("iterations", DEFAULT_ITERATIONS)
    config.timeout = timeout if timeout is not None else env.get("timeout", DEFAULT_TIMEOUT)
    config.enable_color = color if color is not None else env.get("enable_color", True)
    return config


@click.command()
@click.option("-u", "--url", "urls", multiple=True, help="URL to test (repeatable) [env: TARGET_URLS]")
@click.option("--dns", "dns_servers", multiple=True, help="Custom DNS server IP (repeatable) [env: DNS_SERVERS]")
@click.option("--doh", "doh_providers", multiple=True, help="DNS-over-HTTPS endpoint, https only (repeatable) [env: DOH_PROVIDERS]")
@click.option(
    "-n", "--count", type=click.IntRange(MIN_ITERATIONS, MAX_ITERATIONS), default=None,
    help=f"Requests per configuration [default: {DEFAULT_ITERATIONS}] [env: TEST_COUNT]",
)
@click.option(
    "-t", "--timeout", type=click.FloatRange(MIN_TIMEOUT, MAX_TIMEOUT), default=None,
    help=f"Request timeout in seconds [default: {DEFAULT_TIMEOUT:g}] [env: TIMEOUT_SECONDS]",
)
@click.option("--color/--no-color", default=None, help="Colorize output [env: ENABLE_COLOR]")
@click.option("-v", "--verbose", is_flag=True, help="Show per-request details")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--json", "json_output", is_flag=True, help="Output JSON to stdout")
@click.option("--csv", "csv_output", is_flag=True, help="Output CSV to stdout")
@click.option("-o", "--output", default=None, help="Write results to file")
@click.option("-q", "--quiet", is_flag=True, help="Suppress progress, show only results")
@click.option("--concurrency", type=click.IntRange(min=1), default=None, help="Maximum requests in flight")
@click.option("--deadline", type=click.FloatRange(min=0, min_open=True), default=None, help="Overall run deadline in seconds")
@click.option("--get", "use_get", is_flag=True, help="Use GET and read the body instead of HEAD")
@click.option("--retries", type=click.IntRange(min=0), default=0, show_default=True, help="Retries per failed request (exponential backoff)")
@click.version_option(version=__version__)
def main(
    urls: tuple[str, ...],
    dns_servers: tuple[str, ...],
    doh_providers: tuple[str, ...],
    count: Optional[int],
    timeout: Optional[float],
    color: Optional[bool],
    verbose: bool,
    debug: bool,
    json_output: bool,
    csv_output: bool,
    output: Optional[str],
    quiet: bool,
    concurrency: Optional[int],
    deadline: Optional[float],
    use_get: bool,
    retries: int,
) -> None:
    """latencyprobe: HTTP latency comparison across DNS resolution strategies.

    Issues repeated requests to each URL under the system resolver, every
    custom DNS server and every DoH provider, and reports per-phase timing
    (DNS, TCP, TLS, TTFB, total) with a ranked recommendation.
    """
    _setup_logging(verbose, debug)
    from latencyprobe.display import configure_console, render_error

    try:
        config = _build_config(
            urls, dns_servers, doh_providers, count, timeout, color,
            verbose, debug, concurrency, deadline, use_get,
        )
        config.validate()
    except ConfigError as exc:
        render_error(str(exc))
        sys.exit(EXIT_CONFIG_ERROR)

    configure_console(config.enable_color)
    retry_policy = RetryPolicy.exponential_backoff(max_attempts=retries + 1) if retries else None
    show_progress = not quiet and not json_output and not csv_output

    try:
        results = asyncio.run(_run(config, retry_policy, show_progress))
    except KeyboardInterrupt:
        if show_progress:
            from latencyprobe.display import console
            console.print("\n[yellow]Interrupted.[/yellow]")
        sys.exit(130)
    except ProbeError as exc:
        render_error(str(exc))
        sys.exit(exc.exit_code)
    except Exception as exc:
        logger.debug("Unexpected failure", exc_info=True)
        render_error(f"Internal error: {exc}")
        sys.exit(EXIT_INTERNAL_ERROR)

    try:
        _handle_output(results, config, json_output, csv_output, output, quiet)
    except ProbeError as exc:
        render_error(str(exc))
        sys.exit(exc.exit_code)

    sys.exit(core.exit_code_for(results))


async def _run(config: Config, retry_policy: Optional[RetryPolicy], show_progress: bool) -> ExecutionResults:
    """Main async orchestration."""
    from latencyprobe.display import ProgressTracker, console

    strategies = config.strategies()
    keys = list(dict.fromkeys(cell_key(url, strategy) for url in config.urls for strategy in strategies))
    concurrency = resolve_concurrency(len(keys), config.concurrency)

    progress = None
    if show_progress:
        progress = ProgressTracker(keys, config.iterations)
        console.print(
            f"[bold]Testing {len(config.urls)} URL(s) with {len(strategies)} DNS "
            f"configuration(s), {config.iterations} requests each...[/bold]\n"
        )
        progress.start()

    try:
        async with DnsManager(timeout=config.timeout, max_connections=concurrency) as dns:
            return await core.run(
                config,
                dns=dns,
                retry_policy=retry_policy,
                progress_callback=progress.update if progress else None,
            )
    finally:
        if progress:
            progress.finish()


def _handle_output(
    results: ExecutionResults,
    config: Config,
    json_output: bool,
    csv_output: bool,
    output_file: Optional[str],
    quiet: bool,
) -> None:
    """Handle output rendering and export."""
    from latencyprobe.display import console, render_full
    from latencyprobe.export import export_csv, export_json, write_to_file

    if json_output or csv_output:
        content = export_json(results, config) if json_output else export_csv(results)
        if output_file:
            write_to_file(content, output_file)
            if not quiet:
                console.print(f"[dim]Results written to {output_file}[/dim]")
        else:
            click.echo(content)
        return

    render_full(results, verbose=config.verbose)

    if output_file:
        write_to_file(export_json(results, config), output_file)
        console.print(f"\n[dim]Results written to {output_file}[/dim]")


if __name__ == "__main__":
    main()
