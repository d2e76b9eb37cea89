"""Shared fixtures: fake probes, fake DNS and sample factories."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

import httpx
import pytest

from latencyprobe.models import DnsStrategy, TestResult, TimingMetrics


def make_success(total_ms: float = 100.0, dns_ms: float = 5.0, tls_ms: Optional[float] = 20.0) -> TimingMetrics:
    return TimingMetrics.success(
        dns_ms=dns_ms,
        tcp_ms=10.0,
        tls_ms=tls_ms,
        first_byte_ms=min(total_ms, 50.0),
        total_ms=total_ms,
        http_status=200,
    )


def make_result(totals: list[float], failures: int = 0, name: str = "System") -> TestResult:
    result = TestResult(config_name=name, strategy=DnsStrategy.system(), url="https://example.test/")
    for total in totals:
        result.add_measurement(make_success(total))
    for _ in range(failures):
        result.add_measurement(TimingMetrics.failed("Network error: refused"))
    result.calculate_statistics()
    return result


class FakeProbe:
    """Probe double; *outcome* is a TimingMetrics, an exception, or a callable."""

    def __init__(self, outcome=None, delay: float = 0.0):
        self.outcome = outcome if outcome is not None else make_success(120.0)
        self.delay = delay
        self.calls: list[tuple[str, DnsStrategy, float]] = []

    async def probe(self, url: str, strategy: DnsStrategy, timeout: float) -> TimingMetrics:
        self.calls.append((url, strategy, timeout))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcome
        if callable(outcome) and not isinstance(outcome, TimingMetrics):
            outcome = outcome(url, strategy, timeout, len(self.calls))
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeDns:
    """Stands in for DnsManager.resolve with a fixed answer per hostname."""

    def __init__(self, answers: dict[str, list[str]], dns_ms: float = 3.0, error: Optional[Exception] = None):
        self.answers = answers
        self.dns_ms = dns_ms
        self.error = error
        self.calls: list[tuple[str, DnsStrategy]] = []

    async def resolve(self, hostname: str, strategy: DnsStrategy) -> tuple[list[str], float]:
        self.calls.append((hostname, strategy))
        if self.error is not None:
            raise self.error
        return list(self.answers[hostname]), self.dns_ms


@pytest.fixture
def success_sample() -> Callable[..., TimingMetrics]:
    return make_success


@pytest.fixture
def result_factory() -> Callable[..., TestResult]:
    return make_result


@pytest.fixture
def fake_probe() -> type[FakeProbe]:
    return FakeProbe


@pytest.fixture
def fake_dns() -> type[FakeDns]:
    return FakeDns


@pytest.fixture
def mock_transport_factory():
    """Build a transport factory for HttpProbe that records the pinned IP."""

    def build(handler):
        pinned: list[tuple[str, str]] = []

        def factory(target_ip, hostname, options):
            pinned.append((target_ip, hostname))
            return httpx.MockTransport(handler)

        factory.pinned = pinned
        return factory

    return build
