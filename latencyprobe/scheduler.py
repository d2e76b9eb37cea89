"""Measurement scheduler.

Drives the (url x strategy x iteration) matrix through a probe and
collects the outcomes into one :class:`~latencyprobe.models.TestResult`
per cell.

Public API:
    cell_key              -- the result-map key for a (url, strategy) cell
    MeasurementScheduler  -- run every probe of a measurement run
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from latencyprobe.config import (
    DEFAULT_GRACE_PERIOD,
    DEFAULT_ITERATIONS,
    DEFAULT_TIMEOUT,
    resolve_concurrency,
)
from latencyprobe.errors import ErrorKind, ProbeError
from latencyprobe.models import DnsStrategy, TestResult, TimingMetrics, unique_strategies
from latencyprobe.recovery import RetryPolicy

logger = logging.getLogger(__name__)

# Signature: (cell_key, completed_in_cell, iterations, sample)
ProgressCallback = Callable[[str, int, int, TimingMetrics], None]

SKIPPED_REASON = "run deadline exceeded"

# Probe errors that become Failed samples instead of aborting the run.
_SAMPLE_ERRORS = {
    ErrorKind.VALIDATION,
    ErrorKind.DNS_RESOLUTION,
    ErrorKind.NETWORK,
    ErrorKind.HTTP_REQUEST,
    ErrorKind.TIMEOUT,
}


class Prober(Protocol):
    def probe(self, url: str, strategy: DnsStrategy, timeout: float) -> Awaitable[TimingMetrics]:
        ...


def cell_key(url: str, strategy: DnsStrategy) -> str:
    return f"{strategy.name} | {url}"


class MeasurementScheduler:
    """Run ``iterations`` probes for every (url, strategy) cell.

    Parameters
    ----------
    probe:
        Object with an async ``probe(url, strategy, timeout)`` method.
    iterations:
        Probes per cell.
    timeout:
        Per-request timeout in seconds.
    concurrency:
        Maximum probes in flight; defaults to ``min(cells, 32)``.
    run_deadline:
        Optional wall-clock limit in seconds for the whole run.  On expiry
        no new probes start, in-flight probes get ``grace_period`` seconds,
        and whatever is still pending is recorded as ``Skipped``.
    retry_policy:
        Optional :class:`~latencyprobe.recovery.RetryPolicy` applied to
        every scheduled sample.
    progress_callback:
        Called after each sample lands in its cell.
    """

    def __init__(
        self,
        probe: Prober,
        iterations: int = DEFAULT_ITERATIONS,
        timeout: float = DEFAULT_TIMEOUT,
        concurrency: Optional[int] = None,
        run_deadline: Optional[float] = None,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        retry_policy: Optional[RetryPolicy] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        self.probe = probe
        self.iterations = iterations
        self.timeout = timeout
        self.concurrency = concurrency
        self.run_deadline = run_deadline
        self.grace_period = grace_period
        self.retry_policy = retry_policy
        self.progress_callback = progress_callback

    async def _attempt(self, url: str, strategy: DnsStrategy, timeout: float) -> TimingMetrics:
        try:
            return await self.probe.probe(url, strategy, timeout)
        except ProbeError as exc:
            if exc.kind not in _SAMPLE_ERRORS:
                raise
            logger.debug("Probe %s via %s failed: %s", url, strategy.name, exc)
            if exc.kind is ErrorKind.TIMEOUT:
                return TimingMetrics.timeout(timeout * 1000.0)
            return TimingMetrics.failed(str(exc), error_kind=exc.kind)

    async def _measure(self, url: str, strategy: DnsStrategy) -> TimingMetrics:
        if self.retry_policy is None:
            return await self._attempt(url, strategy, self.timeout)

        async def attempt(attempt_strategy: DnsStrategy, timeout: float) -> TimingMetrics:
            return await self._attempt(url, attempt_strategy, timeout)

        return await self.retry_policy.execute(attempt, strategy, self.timeout)

    async def execute(
        self,
        urls: Sequence[str],
        strategies: Sequence[DnsStrategy],
    ) -> dict[str, TestResult]:
        """Probe every cell and return ``{cell_key: TestResult}``.

        Probes are dispatched iteration-major (every cell's first sample
        before any cell's second) so slow cells cannot starve later ones.
        Within a cell, samples keep dispatch order.
        """
        strategies = unique_strategies(strategies)
        urls = list(dict.fromkeys(urls))
        cells = [(cell_key(url, strategy), url, strategy) for url in urls for strategy in strategies]
        results: dict[str, TestResult] = {}
        slots: dict[str, list[Optional[TimingMetrics]]] = {}
        for key, url, strategy in cells:
            results[key] = TestResult(config_name=strategy.name, strategy=strategy, url=url)
            slots[key] = [None] * self.iterations
        if not cells:
            return results

        limit = resolve_concurrency(len(cells), self.concurrency)
        semaphore = asyncio.Semaphore(limit)
        stop = asyncio.Event()
        completed = {key: 0 for key, _, _ in cells}

        logger.info(
            "Running %d probes over %d cells (concurrency %d)",
            len(cells) * self.iterations, len(cells), limit,
        )

        async def run_slot(key: str, url: str, strategy: DnsStrategy, index: int) -> None:
            async with semaphore:
                if stop.is_set():
                    return
                sample = await self._measure(url, strategy)
            slots[key][index] = sample
            completed[key] += 1
            if self.progress_callback is not None:
                self.progress_callback(key, completed[key], self.iterations, sample)

        tasks = [
            asyncio.ensure_future(run_slot(key, url, strategy, index))
            for index in range(self.iterations)
            for key, url, strategy in cells
        ]
        try:
            await self._settle(tasks, stop)
        finally:
            await _cancel(tasks)

        for key, _, _ in cells:
            result = results[key]
            for sample in slots[key]:
                result.add_measurement(sample if sample is not None else TimingMetrics.skipped(SKIPPED_REASON))
            result.calculate_statistics()
            logger.debug(
                "Cell %s finished: %d/%d successful", key, result.success_count, result.total_count,
            )
        return results

    async def _settle(self, tasks: list[asyncio.Future], stop: asyncio.Event) -> None:
        done, pending = await asyncio.wait(
            tasks, timeout=self.run_deadline, return_when=asyncio.FIRST_EXCEPTION,
        )
        _raise_first_error(done)
        if not pending:
            return

        stop.set()
        logger.warning(
            "Run deadline of %.1fs exceeded; waiting %.1fs for %d outstanding probes",
            self.run_deadline, self.grace_period, len(pending),
        )
        done, pending = await asyncio.wait(
            pending, timeout=self.grace_period, return_when=asyncio.FIRST_EXCEPTION,
        )
        _raise_first_error(done)
        if pending:
            logger.warning("Cancelling %d probes still running after the grace period", len(pending))


def _raise_first_error(done: set[asyncio.Future]) -> None:
    for task in done:
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()


async def _cancel(tasks: list[asyncio.Future]) -> None:
    pending = [task for task in tasks if not task.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
