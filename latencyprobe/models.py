"""Data models for latencyprobe."""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable, Optional, Sequence
from urllib.parse import urlparse

from latencyprobe.config import (
    DEFAULT_ITERATIONS,
    DEFAULT_MAX_REDIRECTS,
    DEFAULT_METHOD,
    DEFAULT_TARGET_URLS,
    DEFAULT_TIMEOUT,
    GOOD_THRESHOLD_MS,
    MODERATE_THRESHOLD_MS,
    validate_config,
    validate_ip,
)
from latencyprobe.errors import ConfigError, ErrorKind

if TYPE_CHECKING:
    from latencyprobe.stats import StatisticalAnalysis


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# DNS strategy
# ---------------------------------------------------------------------------

class StrategyKind(str, enum.Enum):
    SYSTEM = "system"
    CUSTOM = "custom"
    DOH = "doh"


@dataclass(frozen=True)
class DnsStrategy:
    """A DNS resolution method: system resolver, explicit servers, or DoH.

    Build instances with :meth:`system`, :meth:`custom` or :meth:`doh`;
    those constructors enforce the per-variant invariants.
    """

    kind: StrategyKind
    servers: tuple[str, ...] = ()
    url: Optional[str] = None

    @classmethod
    def system(cls) -> DnsStrategy:
        return cls(StrategyKind.SYSTEM)

    @classmethod
    def custom(cls, servers: Iterable[str]) -> DnsStrategy:
        normalised = tuple(validate_ip(str(s)) for s in servers)
        if not normalised:
            raise ConfigError("Custom DNS strategy needs at least one server")
        return cls(StrategyKind.CUSTOM, servers=normalised)

    @classmethod
    def doh(cls, url: str) -> DnsStrategy:
        parsed = urlparse(url)
        if parsed.scheme != "https" or not parsed.hostname:
            raise ConfigError(f"DoH URL must use HTTPS: {url}")
        return cls(StrategyKind.DOH, url=url)

    @property
    def name(self) -> str:
        """Stable display name, used to group results."""
        if self.kind is StrategyKind.SYSTEM:
            return "System"
        if self.kind is StrategyKind.CUSTOM:
            return f"Custom ({', '.join(self.servers)})"
        parsed = urlparse(self.url or "")
        host = parsed.hostname or "?"
        if parsed.port is not None:
            host = f"{host}:{parsed.port}"
        path = parsed.path.rstrip("/")
        if path and path != "/dns-query":
            return f"DoH ({host}{path})"
        return f"DoH ({host})"

    @property
    def cache_key(self) -> tuple:
        """Identity used to cache the resolver built for this strategy."""
        if self.kind is StrategyKind.SYSTEM:
            return ("system",)
        if self.kind is StrategyKind.CUSTOM:
            return ("custom", tuple(sorted(self.servers)))
        return ("doh", self.url)

    def to_dict(self) -> dict:
        data: dict = {"kind": self.kind.value}
        if self.kind is StrategyKind.CUSTOM:
            data["servers"] = list(self.servers)
        elif self.kind is StrategyKind.DOH:
            data["url"] = self.url
        return data

    @classmethod
    def from_dict(cls, data: dict) -> DnsStrategy:
        try:
            kind = StrategyKind(data["kind"])
        except (KeyError, ValueError) as exc:
            raise ConfigError(f"Unknown DNS strategy: {data!r}") from exc
        if kind is StrategyKind.SYSTEM:
            return cls.system()
        if kind is StrategyKind.CUSTOM:
            return cls.custom(data.get("servers", []))
        return cls.doh(data.get("url", ""))

    def __str__(self) -> str:
        return self.name


def unique_strategies(strategies: Iterable[DnsStrategy]) -> list[DnsStrategy]:
    """Keep the first strategy per resolver, in order.

    Strategies that would build the same resolver are merged.  Raises
    :class:`ConfigError` when two different resolvers share a name, since
    results are grouped by name.
    """
    kept: list[DnsStrategy] = []
    resolvers: set[tuple] = set()
    names: set[str] = set()
    for strategy in strategies:
        if strategy.cache_key in resolvers:
            continue
        if strategy.name in names:
            raise ConfigError(f"Two different DNS strategies are both named {strategy.name!r}")
        resolvers.add(strategy.cache_key)
        names.add(strategy.name)
        kept.append(strategy)
    return kept


# ---------------------------------------------------------------------------
# Per-request measurement
# ---------------------------------------------------------------------------

class TestStatus(str, enum.Enum):
    __test__ = False  # not a pytest test class

    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


class PerformanceLevel(str, enum.Enum):
    GOOD = "good"
    MODERATE = "moderate"
    POOR = "poor"

    @classmethod
    def from_ms(cls, total_ms: float) -> PerformanceLevel:
        if total_ms < GOOD_THRESHOLD_MS:
            return cls.GOOD
        if total_ms < MODERATE_THRESHOLD_MS:
            return cls.MODERATE
        return cls.POOR


def _is_success_status(http_status: int) -> bool:
    return 200 <= http_status < 400


@dataclass
class TimingMetrics:
    """Phase-resolved outcome of one probe.

    All durations are milliseconds.  ``tls_ms`` is ``None`` when the
    request did not perform a TLS handshake.
    """

    dns_ms: float = 0.0
    tcp_ms: float = 0.0
    tls_ms: Optional[float] = None
    first_byte_ms: float = 0.0
    total_ms: float = 0.0
    http_status: int = 0
    status: TestStatus = TestStatus.FAILED
    timestamp: datetime = field(default_factory=utcnow)
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    resolved_ip: Optional[str] = None

    @classmethod
    def success(
        cls,
        dns_ms: float,
        tcp_ms: float,
        tls_ms: Optional[float],
        first_byte_ms: float,
        total_ms: float,
        http_status: int,
        resolved_ip: Optional[str] = None,
    ) -> TimingMetrics:
        if not _is_success_status(http_status):
            raise ValueError(f"HTTP status {http_status} is not a success status")
        phases = [dns_ms, tcp_ms, first_byte_ms] + ([tls_ms] if tls_ms is not None else [])
        if any(p < 0 for p in phases) or total_ms < 0:
            raise ValueError("Phase durations cannot be negative")
        return cls(
            dns_ms=dns_ms,
            tcp_ms=tcp_ms,
            tls_ms=tls_ms,
            first_byte_ms=first_byte_ms,
            total_ms=max([total_ms] + phases),
            http_status=http_status,
            status=TestStatus.SUCCESS,
            resolved_ip=resolved_ip,
        )

    @classmethod
    def failed(
        cls,
        error_message: str,
        error_kind: Optional[ErrorKind] = None,
        total_ms: float = 0.0,
        resolved_ip: Optional[str] = None,
    ) -> TimingMetrics:
        return cls(
            total_ms=max(total_ms, 0.0),
            status=TestStatus.FAILED,
            error_message=error_message,
            error_kind=error_kind,
            resolved_ip=resolved_ip,
        )

    @classmethod
    def timeout(cls, total_ms: float, resolved_ip: Optional[str] = None) -> TimingMetrics:
        return cls(
            total_ms=max(total_ms, 0.0),
            status=TestStatus.TIMEOUT,
            error_message=f"Request timed out after {total_ms / 1000.0:.1f}s",
            error_kind=ErrorKind.TIMEOUT,
            resolved_ip=resolved_ip,
        )

    @classmethod
    def skipped(cls, reason: str) -> TimingMetrics:
        return cls(status=TestStatus.SKIPPED, error_message=reason)

    @property
    def is_successful(self) -> bool:
        return self.status is TestStatus.SUCCESS and _is_success_status(self.http_status)

    @property
    def performance_level(self) -> PerformanceLevel:
        return PerformanceLevel.from_ms(self.total_ms)


# ---------------------------------------------------------------------------
# Per-cell aggregates
# ---------------------------------------------------------------------------

def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


@dataclass
class Statistics:
    """Scalar summary of the successful samples of one cell (milliseconds)."""

    dns_avg_ms: float = 0.0
    tcp_avg_ms: float = 0.0
    tls_avg_ms: Optional[float] = None
    first_byte_avg_ms: float = 0.0
    total_avg_ms: float = 0.0
    total_min_ms: float = 0.0
    total_max_ms: float = 0.0
    total_std_dev_ms: float = 0.0
    success_rate: float = 0.0
    sample_count: int = 0

    @classmethod
    def from_measurements(
        cls,
        measurements: Sequence[TimingMetrics],
        success_rate: float = 100.0,
    ) -> Statistics:
        """Summarise *measurements*, which must all be successful."""
        if not measurements:
            return cls()

        totals = [m.total_ms for m in measurements]
        total_avg = _mean(totals)
        n = len(totals)
        variance = sum((t - total_avg) ** 2 for t in totals) / n if n > 1 else 0.0

        tls_values = [m.tls_ms for m in measurements if m.tls_ms is not None]

        return cls(
            dns_avg_ms=_mean([m.dns_ms for m in measurements]),
            tcp_avg_ms=_mean([m.tcp_ms for m in measurements]),
            tls_avg_ms=_mean(tls_values) if tls_values else None,
            first_byte_avg_ms=_mean([m.first_byte_ms for m in measurements]),
            # keep avg inside [min, max] under float rounding
            total_avg_ms=min(max(total_avg, min(totals)), max(totals)),
            total_min_ms=min(totals),
            total_max_ms=max(totals),
            total_std_dev_ms=math.sqrt(variance),
            success_rate=success_rate,
            sample_count=n,
        )

    @property
    def performance_level(self) -> PerformanceLevel:
        return PerformanceLevel.from_ms(self.total_avg_ms)


@dataclass
class TestResult:
    """All samples collected for one (url, strategy) cell."""

    __test__ = False  # not a pytest test class

    config_name: str
    strategy: DnsStrategy
    url: str
    samples: list[TimingMetrics] = field(default_factory=list)
    success_count: int = 0
    total_count: int = 0
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    statistics: Optional[Statistics] = None

    def add_measurement(self, metrics: TimingMetrics) -> None:
        if metrics.is_successful:
            self.success_count += 1
        self.total_count += 1
        self.samples.append(metrics)

    @property
    def successful_samples(self) -> list[TimingMetrics]:
        return [s for s in self.samples if s.is_successful]

    @property
    def success_rate(self) -> float:
        if self.total_count == 0:
            return 0.0
        return self.success_count / self.total_count * 100.0

    def calculate_statistics(self) -> None:
        """Summarise successful samples and mark the cell complete."""
        successful = self.successful_samples
        if successful:
            self.statistics = Statistics.from_measurements(successful, self.success_rate)
        else:
            self.statistics = None
        self.completed_at = utcnow()

    def count_status(self, status: TestStatus) -> int:
        return sum(1 for s in self.samples if s.status is status)

    @property
    def has_skipped_tests(self) -> bool:
        return any(s.status is TestStatus.SKIPPED for s in self.samples)


# ---------------------------------------------------------------------------
# Run configuration and output
# ---------------------------------------------------------------------------

@dataclass
class Config:
    """Configuration for a measurement run."""

    urls: list[str] = field(default_factory=lambda: list(DEFAULT_TARGET_URLS))
    dns_servers: list[str] = field(default_factory=list)
    doh_providers: list[str] = field(default_factory=list)
    iterations: int = DEFAULT_ITERATIONS
    timeout: float = DEFAULT_TIMEOUT
    enable_color: bool = True
    verbose: bool = False
    debug: bool = False
    concurrency: Optional[int] = None
    run_deadline: Optional[float] = None
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    method: str = DEFAULT_METHOD
    verify_tls: bool = True

    def validate(self) -> None:
        validate_config(self)
        self.strategies()

    def strategies(self) -> list[DnsStrategy]:
        """Materialise the DNS strategies, always starting with System."""
        strategies = [DnsStrategy.system()]
        for server in self.dns_servers:
            strategies.append(DnsStrategy.custom([server]))
        for url in self.doh_providers:
            strategies.append(DnsStrategy.doh(url))

        return unique_strategies(strategies)


@dataclass
class ConfigPerformance:
    avg_response_time_ms: Optional[float]
    success_rate: float
    test_count: int


@dataclass
class ExecutionSummary:
    """Aggregate counts over every cell of a run."""

    total_tests: int = 0
    successful_tests: int = 0
    failed_tests: int = 0
    timeout_tests: int = 0
    skipped_tests: int = 0
    success_rate: float = 0.0
    total_duration_ms: float = 0.0
    performance_summary: dict[str, ConfigPerformance] = field(default_factory=dict)

    @classmethod
    def from_results(cls, results: dict[str, TestResult], total_duration_ms: float) -> ExecutionSummary:
        summary = cls(total_duration_ms=total_duration_ms)
        for key, result in results.items():
            summary.total_tests += result.total_count
            summary.successful_tests += result.success_count
            summary.timeout_tests += result.count_status(TestStatus.TIMEOUT)
            summary.skipped_tests += result.count_status(TestStatus.SKIPPED)
            summary.failed_tests += result.count_status(TestStatus.FAILED)
            summary.performance_summary[key] = ConfigPerformance(
                avg_response_time_ms=result.statistics.total_avg_ms if result.statistics else None,
                success_rate=result.success_rate,
                test_count=result.total_count,
            )
        if summary.total_tests:
            summary.success_rate = summary.successful_tests / summary.total_tests * 100.0
        return summary


@dataclass
class ExecutionResults:
    """Complete output of :func:`latencyprobe.core.run`."""

    summary: ExecutionSummary
    test_results: dict[str, TestResult] = field(default_factory=dict)
    analysis: Optional[StatisticalAnalysis] = None

    def best_config(self) -> Optional[str]:
        """Cell with the lowest average total time among cells with successes."""
        candidates = [(k, r) for k, r in self.test_results.items() if r.statistics is not None]
        if not candidates:
            return None
        return min(candidates, key=lambda kr: kr[1].statistics.total_avg_ms)[0]

    def worst_config(self) -> Optional[str]:
        candidates = [(k, r) for k, r in self.test_results.items() if r.statistics is not None]
        if not candidates:
            return None
        return max(candidates, key=lambda kr: kr[1].statistics.total_avg_ms)[0]

    @property
    def has_failures(self) -> bool:
        return (
            self.summary.failed_tests > 0
            or self.summary.timeout_tests > 0
            or self.summary.success_rate < 95.0
        )
