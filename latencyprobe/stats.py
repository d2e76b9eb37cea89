"""Statistical analysis of measurement results.

Per cell (successful samples only): basic summary, percentiles,
confidence intervals, outliers, performance-level distribution and
reliability.  Across cells: a weighted ranking, pairwise significance
checks and a plain-language summary.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from datetime import datetime
from itertools import combinations
from typing import Mapping, Optional, Sequence

from latencyprobe.config import (
    CONSISTENCY_WEIGHT,
    HIGH_JITTER_MS,
    LOW_SUCCESS_RATE,
    RELIABILITY_WEIGHT,
    SIGNIFICANCE_THRESHOLD,
    SPEED_WEIGHT,
)
from latencyprobe.errors import StatisticsError
from latencyprobe.models import PerformanceLevel, Statistics, TestResult, TimingMetrics, utcnow

IQR_MULTIPLIER = 1.5
MODIFIED_Z_FACTOR = 0.6745

_Z_SCORES = ((0.90, 1.645), (0.95, 1.96), (0.99, 2.576))


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

def percentile(sorted_values: Sequence[float], pct: float) -> float:
    """Linear interpolation between ``floor`` and ``ceil`` of ``pct/100 * (n-1)``."""
    n = len(sorted_values)
    if n == 0:
        return 0.0
    if n == 1:
        return sorted_values[0]
    k = (pct / 100) * (n - 1)
    f = math.floor(k)
    c = math.ceil(k)
    if f == c:
        return sorted_values[int(k)]
    return sorted_values[f] + (k - f) * (sorted_values[c] - sorted_values[f])


def z_score(confidence_level: float) -> float:
    """Normal z-score for 0.90, 0.95 or 0.99; anything else falls back to 0.95."""
    for level, z in _Z_SCORES:
        if abs(confidence_level - level) < 0.01:
            return z
    return 1.96


def sample_std_dev(values: Sequence[float], mean: Optional[float] = None) -> float:
    """Bessel-corrected standard deviation; 0 for fewer than two values."""
    n = len(values)
    if n <= 1:
        return 0.0
    if mean is None:
        mean = sum(values) / n
    return math.sqrt(sum((v - mean) ** 2 for v in values) / (n - 1))


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


# ---------------------------------------------------------------------------
# Outlier detection
# ---------------------------------------------------------------------------

class OutlierKind(str, enum.Enum):
    IQR = "iqr"
    STD_DEV = "std_dev"
    MODIFIED_Z_SCORE = "modified_z_score"


@dataclass(frozen=True)
class OutlierMethod:
    kind: OutlierKind = OutlierKind.IQR
    threshold: float = IQR_MULTIPLIER

    @classmethod
    def iqr(cls) -> OutlierMethod:
        return cls(OutlierKind.IQR, IQR_MULTIPLIER)

    @classmethod
    def std_dev(cls, k: float = 2.0) -> OutlierMethod:
        return cls(OutlierKind.STD_DEV, k)

    @classmethod
    def modified_z_score(cls, k: float = 3.5) -> OutlierMethod:
        return cls(OutlierKind.MODIFIED_Z_SCORE, k)

    @property
    def threshold_name(self) -> str:
        return {
            OutlierKind.IQR: "iqr_multiplier",
            OutlierKind.STD_DEV: "std_dev_threshold",
            OutlierKind.MODIFIED_Z_SCORE: "z_score_threshold",
        }[self.kind]

    def outlier_indices(self, values: Sequence[float]) -> list[int]:
        """Indices of *values* flagged as outliers by this method."""
        if not values:
            return []
        if self.kind is OutlierKind.IQR:
            if len(values) < 4:
                return []
            ordered = sorted(values)
            q1 = percentile(ordered, 25)
            q3 = percentile(ordered, 75)
            spread = q3 - q1
            low, high = q1 - self.threshold * spread, q3 + self.threshold * spread
            return [i for i, v in enumerate(values) if v < low or v > high]

        if self.kind is OutlierKind.STD_DEV:
            mean = _mean(values)
            sigma = sample_std_dev(values, mean)
            return [i for i, v in enumerate(values) if abs(v - mean) > self.threshold * sigma]

        median = percentile(sorted(values), 50)
        mad = percentile(sorted(abs(v - median) for v in values), 50)
        if mad == 0:
            return []
        return [
            i for i, v in enumerate(values)
            if abs(MODIFIED_Z_FACTOR * (v - median) / mad) > self.threshold
        ]


# ---------------------------------------------------------------------------
# Result records
# ---------------------------------------------------------------------------

@dataclass
class StatisticsConfig:
    min_samples: int = 5
    confidence_level: float = 0.95
    percentiles: tuple[float, ...] = (50, 90, 95, 99)
    exclude_outliers: bool = False
    outlier_method: OutlierMethod = field(default_factory=OutlierMethod.iqr)


@dataclass
class ConfidenceIntervals:
    level: float
    avg_response_time: tuple[float, float]
    success_rate: tuple[float, float]
    dns_resolution_time: tuple[float, float]


@dataclass
class OutlierAnalysis:
    outlier_count: int
    outlier_percentage: float
    detection_method: str
    threshold_values: dict[str, float] = field(default_factory=dict)


@dataclass
class PerformanceDistribution:
    good_percentage: float = 0.0
    moderate_percentage: float = 0.0
    poor_percentage: float = 0.0


@dataclass
class ReliabilityMetrics:
    success_rate: float
    consistency_score: float  # coefficient of variation, lower is better
    jitter_ms: float


@dataclass
class ExtendedStatistics:
    basic: Statistics
    percentiles: dict[str, float]
    confidence_intervals: ConfidenceIntervals
    outlier_analysis: OutlierAnalysis
    performance_distribution: PerformanceDistribution
    reliability: ReliabilityMetrics


@dataclass
class ConfigurationRanking:
    config_name: str
    rank: int
    score: float
    metric_scores: dict[str, float] = field(default_factory=dict)


@dataclass
class SignificanceTest:
    configurations: tuple[str, str]
    t_statistic: float
    is_significant: bool
    test_name: str = "Simplified t-test"


@dataclass
class ComparativeAnalysis:
    fastest_config: Optional[str] = None
    most_reliable_config: Optional[str] = None
    most_consistent_config: Optional[str] = None
    performance_rankings: list[ConfigurationRanking] = field(default_factory=list)
    significance_tests: list[SignificanceTest] = field(default_factory=list)


@dataclass
class AnalysisSummary:
    recommended_config: Optional[str] = None
    key_findings: list[str] = field(default_factory=list)
    insights: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class StatisticalAnalysis:
    basic_stats: dict[str, ExtendedStatistics]
    comparative_analysis: ComparativeAnalysis
    summary: AnalysisSummary
    generated_at: datetime = field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Cross-cell helpers
# ---------------------------------------------------------------------------

def rank_configurations(metrics: Mapping[str, tuple[float, float, float]]) -> list[ConfigurationRanking]:
    """Rank cells given ``{name: (mean_ms, success_rate_pct, cv)}``.

    Score = 0.40 speed + 0.35 reliability + 0.25 consistency, each in
    [0, 1].  Ties go to the lower mean, then the higher success rate.
    """
    if not metrics:
        return []
    means = [mean for mean, _, _ in metrics.values()]
    fastest, slowest = min(means), max(means)

    scored = []
    for name, (mean, success_rate, cv) in metrics.items():
        if slowest <= fastest:
            speed = 1.0
        else:
            speed = 1.0 - (mean - fastest) / (slowest - fastest)
        reliability = success_rate / 100.0
        consistency = 1.0 - min(cv, 1.0)
        score = SPEED_WEIGHT * speed + RELIABILITY_WEIGHT * reliability + CONSISTENCY_WEIGHT * consistency
        scores = {"speed": speed, "reliability": reliability, "consistency": consistency}
        scored.append((score, mean, success_rate, name, scores))

    scored.sort(key=lambda item: (-item[0], item[1], -item[2]))
    return [
        ConfigurationRanking(config_name=name, rank=index, score=score, metric_scores=scores)
        for index, (score, _, _, name, scores) in enumerate(scored, start=1)
    ]


def significance_test(name_a: str, a: Statistics, name_b: str, b: Statistics) -> SignificanceTest:
    """Advisory ``|mean_a - mean_b| / ((sd_a + sd_b) / 2)`` comparison."""
    combined = (a.total_std_dev_ms + b.total_std_dev_ms) / 2.0
    t_stat = abs(a.total_avg_ms - b.total_avg_ms) / combined if combined > 0 else 0.0
    return SignificanceTest(
        configurations=(name_a, name_b),
        t_statistic=t_stat,
        is_significant=t_stat > SIGNIFICANCE_THRESHOLD,
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class StatisticsEngine:
    """Compute a :class:`StatisticalAnalysis` from per-cell results."""

    def __init__(self, config: Optional[StatisticsConfig] = None) -> None:
        self.config = config or StatisticsConfig()

    def analyze(self, results: Mapping[str, TestResult]) -> StatisticalAnalysis:
        if not results:
            raise StatisticsError("No test results available for analysis")

        basic_stats: dict[str, ExtendedStatistics] = {}
        for name, result in results.items():
            if result.success_count == 0:
                continue
            basic_stats[name] = self.extended_statistics(result)

        comparative = self.compare(basic_stats)
        failed_cells = [name for name, result in results.items() if result.success_count == 0]
        summary = self.summarize(basic_stats, comparative, failed_cells)
        return StatisticalAnalysis(
            basic_stats=basic_stats,
            comparative_analysis=comparative,
            summary=summary,
        )

    def extended_statistics(self, result: TestResult) -> ExtendedStatistics:
        samples = result.successful_samples
        if not samples:
            raise StatisticsError(f"No successful measurements for {result.config_name}")

        method = self.config.outlier_method
        totals = [s.total_ms for s in samples]
        flagged = method.outlier_indices(totals)
        outliers = OutlierAnalysis(
            outlier_count=len(flagged),
            outlier_percentage=len(flagged) / len(totals) * 100.0,
            detection_method=method.kind.value,
            threshold_values={method.threshold_name: method.threshold},
        )
        if self.config.exclude_outliers and flagged and len(flagged) < len(samples):
            excluded = set(flagged)
            samples = [s for i, s in enumerate(samples) if i not in excluded]
            totals = [s.total_ms for s in samples]

        ordered = sorted(totals)
        return ExtendedStatistics(
            basic=Statistics.from_measurements(samples, result.success_rate),
            percentiles={f"p{p:g}": percentile(ordered, p) for p in self.config.percentiles},
            confidence_intervals=self._confidence_intervals(samples, result),
            outlier_analysis=outliers,
            performance_distribution=_distribution(samples),
            reliability=_reliability(totals, result.success_rate),
        )

    def _confidence_intervals(self, samples: Sequence[TimingMetrics], result: TestResult) -> ConfidenceIntervals:
        totals = [s.total_ms for s in samples]
        dns = [s.dns_ms for s in samples]
        total_mean, dns_mean = _mean(totals), _mean(dns)
        rate = result.success_rate
        level = self.config.confidence_level

        n = len(samples)
        if n < self.config.min_samples:
            return ConfidenceIntervals(
                level=level,
                avg_response_time=(total_mean, total_mean),
                success_rate=(rate, rate),
                dns_resolution_time=(dns_mean, dns_mean),
            )

        z = z_score(level)
        total_margin = z * sample_std_dev(totals, total_mean) / math.sqrt(n)
        dns_margin = z * sample_std_dev(dns, dns_mean) / math.sqrt(n)
        p = rate / 100.0
        rate_margin = z * math.sqrt(p * (1.0 - p) / result.total_count) * 100.0
        return ConfidenceIntervals(
            level=level,
            avg_response_time=(total_mean - total_margin, total_mean + total_margin),
            success_rate=(max(rate - rate_margin, 0.0), min(rate + rate_margin, 100.0)),
            dns_resolution_time=(dns_mean - dns_margin, dns_mean + dns_margin),
        )

    def compare(self, stats: Mapping[str, ExtendedStatistics]) -> ComparativeAnalysis:
        if not stats:
            return ComparativeAnalysis()

        def mean_of(name: str) -> float:
            return stats[name].basic.total_avg_ms

        names = list(stats)
        rankings = rank_configurations({
            name: (s.basic.total_avg_ms, s.reliability.success_rate, s.reliability.consistency_score)
            for name, s in stats.items()
        })
        tests = [
            significance_test(a, stats[a].basic, b, stats[b].basic)
            for a, b in combinations(names, 2)
        ]
        return ComparativeAnalysis(
            fastest_config=min(names, key=mean_of),
            most_reliable_config=min(
                names, key=lambda n: (-stats[n].reliability.success_rate, mean_of(n)),
            ),
            most_consistent_config=min(
                names, key=lambda n: (stats[n].reliability.consistency_score, mean_of(n)),
            ),
            performance_rankings=rankings,
            significance_tests=tests,
        )

    def summarize(
        self,
        stats: Mapping[str, ExtendedStatistics],
        comparative: ComparativeAnalysis,
        failed_cells: Sequence[str] = (),
    ) -> AnalysisSummary:
        summary = AnalysisSummary()
        if comparative.performance_rankings:
            best = comparative.performance_rankings[0]
            summary.recommended_config = best.config_name
            summary.recommendations.append(
                f"Recommended DNS configuration: {best.config_name} (overall score: {best.score:.2f})"
            )

        if comparative.fastest_config is not None:
            fastest = stats[comparative.fastest_config]
            summary.key_findings.append(
                f"Fastest configuration: {comparative.fastest_config} "
                f"({fastest.basic.total_avg_ms:.1f}ms average)"
            )
        if comparative.most_reliable_config is not None:
            reliable = stats[comparative.most_reliable_config]
            summary.key_findings.append(
                f"Most reliable configuration: {comparative.most_reliable_config} "
                f"({reliable.reliability.success_rate:.1f}% success rate)"
            )
        if comparative.most_consistent_config is not None:
            steady = stats[comparative.most_consistent_config]
            summary.key_findings.append(
                f"Most consistent configuration: {comparative.most_consistent_config} "
                f"(CV {steady.reliability.consistency_score:.2f})"
            )

        if stats:
            good = sum(1 for s in stats.values() if s.performance_distribution.good_percentage > 50.0)
            summary.insights.append(
                f"{good} of {len(stats)} configurations show good performance "
                f"(>50% of tests under 1 second)"
            )
        significant = [t for t in comparative.significance_tests if t.is_significant]
        if significant:
            pairs = ", ".join(f"{a} vs {b}" for a, b in (t.configurations for t in significant))
            summary.insights.append(f"Significant response time differences: {pairs}")

        for name, s in stats.items():
            if s.reliability.success_rate < LOW_SUCCESS_RATE:
                summary.warnings.append(
                    f"Low success rate for {name}: {s.reliability.success_rate:.1f}%"
                )
        jittery = [name for name, s in stats.items() if s.reliability.jitter_ms > HIGH_JITTER_MS]
        if jittery:
            summary.warnings.append(
                f"High response time variability detected in: {', '.join(jittery)}"
            )
        if failed_cells:
            summary.warnings.append(
                f"No successful measurements for: {', '.join(failed_cells)}"
            )
        return summary


def _distribution(samples: Sequence[TimingMetrics]) -> PerformanceDistribution:
    if not samples:
        return PerformanceDistribution()
    n = len(samples)
    levels = [s.performance_level for s in samples]
    return PerformanceDistribution(
        good_percentage=levels.count(PerformanceLevel.GOOD) / n * 100.0,
        moderate_percentage=levels.count(PerformanceLevel.MODERATE) / n * 100.0,
        poor_percentage=levels.count(PerformanceLevel.POOR) / n * 100.0,
    )


def _reliability(totals: Sequence[float], success_rate: float) -> ReliabilityMetrics:
    mean = _mean(totals)
    sigma = sample_std_dev(totals, mean)
    return ReliabilityMetrics(
        success_rate=success_rate,
        consistency_score=sigma / mean if mean > 0 else 0.0,
        jitter_ms=sigma,
    )
