"""Run orchestration.

Public API:
    run            -- validate a Config, probe every cell, analyse the results
    run_sync       -- blocking wrapper around :func:`run`
    exit_code_for  -- map ExecutionResults onto the CLI exit status
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from latencyprobe.config import DEFAULT_GRACE_PERIOD, PASSING_SUCCESS_RATE, resolve_concurrency
from latencyprobe.errors import EXIT_OK, EXIT_OPERATIONAL_FAILURE
from latencyprobe.models import Config, ExecutionResults, ExecutionSummary
from latencyprobe.probe import HttpProbe, ProbeOptions
from latencyprobe.recovery import RetryPolicy
from latencyprobe.resolver import DnsManager
from latencyprobe.scheduler import MeasurementScheduler, ProgressCallback, Prober
from latencyprobe.stats import StatisticsConfig, StatisticsEngine

logger = logging.getLogger(__name__)


async def run(
    config: Config,
    *,
    probe: Optional[Prober] = None,
    dns: Optional[DnsManager] = None,
    statistics_config: Optional[StatisticsConfig] = None,
    retry_policy: Optional[RetryPolicy] = None,
    progress_callback: Optional[ProgressCallback] = None,
    grace_period: float = DEFAULT_GRACE_PERIOD,
) -> ExecutionResults:
    """Measure every (url, strategy) cell described by *config*.

    Raises :class:`~latencyprobe.errors.ConfigError` before any request
    is sent when *config* is invalid.  When *probe* is omitted an
    :class:`HttpProbe` is built on *dns* (or on a private
    :class:`DnsManager` that is closed before returning).
    """
    config.validate()
    strategies = config.strategies()
    cell_count = len(config.urls) * len(strategies)
    concurrency = resolve_concurrency(cell_count, config.concurrency)

    owned_dns: Optional[DnsManager] = None
    if probe is None:
        if dns is None:
            dns = owned_dns = DnsManager(timeout=config.timeout, max_connections=concurrency)
        probe = HttpProbe(
            dns,
            ProbeOptions(
                method=config.method,
                max_redirects=config.max_redirects,
                verify_tls=config.verify_tls,
                read_body=config.method.upper() == "GET",
            ),
        )

    scheduler = MeasurementScheduler(
        probe,
        iterations=config.iterations,
        timeout=config.timeout,
        concurrency=concurrency,
        run_deadline=config.run_deadline,
        grace_period=grace_period,
        retry_policy=retry_policy,
        progress_callback=progress_callback,
    )

    logger.info(
        "Testing %d URL(s) with %d DNS strategies, %d iterations each",
        len(config.urls), len(strategies), config.iterations,
    )
    started = time.perf_counter()
    try:
        test_results = await scheduler.execute(config.urls, strategies)
    finally:
        if owned_dns is not None:
            await owned_dns.aclose()
    duration_ms = (time.perf_counter() - started) * 1000.0

    summary = ExecutionSummary.from_results(test_results, duration_ms)
    analysis = None
    if any(result.success_count > 0 for result in test_results.values()):
        analysis = StatisticsEngine(statistics_config).analyze(test_results)
    else:
        logger.warning("No successful measurements; skipping statistical analysis")

    logger.info(
        "Run finished in %.0fms: %d/%d successful",
        duration_ms, summary.successful_tests, summary.total_tests,
    )
    return ExecutionResults(summary=summary, test_results=test_results, analysis=analysis)


def run_sync(config: Config, **kwargs) -> ExecutionResults:
    return asyncio.run(run(config, **kwargs))


def exit_code_for(results: ExecutionResults) -> int:
    """0 when at least half of all probes succeeded, otherwise 1."""
    if results.summary.success_rate >= PASSING_SUCCESS_RATE:
        return EXIT_OK
    return EXIT_OPERATIONAL_FAILURE
