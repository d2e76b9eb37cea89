import math

import pytest

from latencyprobe.errors import ConfigError, ErrorKind
from latencyprobe.models import (
    Config,
    DnsStrategy,
    ExecutionResults,
    ExecutionSummary,
    PerformanceLevel,
    Statistics,
    StrategyKind,
    TestStatus,
    TimingMetrics,
    unique_strategies,
)


class TestDnsStrategy:
    def test_names(self):
        assert DnsStrategy.system().name == "System"
        assert DnsStrategy.custom(["8.8.8.8"]).name == "Custom (8.8.8.8)"
        assert DnsStrategy.custom(["8.8.8.8", "1.1.1.1"]).name == "Custom (8.8.8.8, 1.1.1.1)"
        assert DnsStrategy.doh("https://cloudflare-dns.com/dns-query").name == "DoH (cloudflare-dns.com)"
        assert DnsStrategy.doh("https://dns.google/resolve").name == "DoH (dns.google/resolve)"
        assert DnsStrategy.doh("https://doh.test:8443/dns-query").name == "DoH (doh.test:8443)"

    def test_names_tell_resolvers_apart(self):
        strategies = [
            DnsStrategy.doh("https://doh.test/dns-query"),
            DnsStrategy.doh("https://doh.test:8443/dns-query"),
            DnsStrategy.custom(["8.8.8.8", "1.1.1.1"]),
            DnsStrategy.custom(["9.9.9.9", "149.112.112.112"]),
        ]
        assert len({s.name for s in strategies}) == 4

    def test_custom_equality_is_structural(self):
        assert DnsStrategy.custom(["8.8.8.8", "1.1.1.1"]) == DnsStrategy.custom(["8.8.8.8", "1.1.1.1"])
        assert DnsStrategy.custom(["8.8.8.8", "1.1.1.1"]) != DnsStrategy.custom(["1.1.1.1", "8.8.8.8"])
        assert DnsStrategy.doh("https://a.test/dns-query") == DnsStrategy.doh("https://a.test/dns-query")

    def test_cache_key_ignores_server_order(self):
        a = DnsStrategy.custom(["8.8.8.8", "1.1.1.1"])
        b = DnsStrategy.custom(["1.1.1.1", "8.8.8.8"])
        assert a.cache_key == b.cache_key

    @pytest.mark.parametrize("strategy", [
        DnsStrategy.system(),
        DnsStrategy.custom(["8.8.8.8"]),
        DnsStrategy.custom(["2001:4860:4860::8888", "9.9.9.9"]),
        DnsStrategy.doh("https://dns.quad9.net/dns-query"),
    ])
    def test_dict_round_trip(self, strategy):
        assert DnsStrategy.from_dict(strategy.to_dict()) == strategy

    def test_custom_rejects_bad_ip(self):
        with pytest.raises(ConfigError):
            DnsStrategy.custom(["not-an-ip"])

    def test_custom_requires_servers(self):
        with pytest.raises(ConfigError):
            DnsStrategy.custom([])

    def test_doh_requires_https(self):
        with pytest.raises(ConfigError):
            DnsStrategy.doh("http://insecure.example/dns-query")

    def test_unknown_kind(self):
        with pytest.raises(ConfigError):
            DnsStrategy.from_dict({"kind": "carrier-pigeon"})

    def test_kind(self):
        assert DnsStrategy.doh("https://a.test/dns-query").kind is StrategyKind.DOH


class TestTimingMetrics:
    def test_success_clamps_total(self):
        m = TimingMetrics.success(dns_ms=5, tcp_ms=10, tls_ms=30, first_byte_ms=80, total_ms=60, http_status=200)
        assert m.total_ms == 80
        assert m.is_successful

    def test_redirect_counts_as_success(self):
        m = TimingMetrics.success(dns_ms=0, tcp_ms=0, tls_ms=None, first_byte_ms=0, total_ms=1, http_status=301)
        assert m.is_successful

    @pytest.mark.parametrize("status", [199, 404, 500])
    def test_success_rejects_error_status(self, status):
        with pytest.raises(ValueError):
            TimingMetrics.success(dns_ms=0, tcp_ms=0, tls_ms=None, first_byte_ms=0, total_ms=1, http_status=status)

    def test_success_rejects_negative(self):
        with pytest.raises(ValueError):
            TimingMetrics.success(dns_ms=-1, tcp_ms=0, tls_ms=None, first_byte_ms=0, total_ms=1, http_status=200)

    def test_non_success_has_zero_status(self):
        assert TimingMetrics.failed("boom").http_status == 0
        assert TimingMetrics.timeout(1000).http_status == 0
        assert TimingMetrics.skipped("late").http_status == 0

    def test_timeout(self):
        m = TimingMetrics.timeout(1500.0)
        assert m.status is TestStatus.TIMEOUT
        assert m.error_kind is ErrorKind.TIMEOUT
        assert m.total_ms == 1500.0
        assert "1.5s" in m.error_message
        assert not m.is_successful

    @pytest.mark.parametrize("total, level", [
        (999.9, PerformanceLevel.GOOD),
        (1000.0, PerformanceLevel.MODERATE),
        (2999.0, PerformanceLevel.MODERATE),
        (3000.0, PerformanceLevel.POOR),
    ])
    def test_performance_level(self, total, level):
        assert PerformanceLevel.from_ms(total) is level


class TestStatistics:
    def test_identical_samples(self, success_sample):
        stats = Statistics.from_measurements([success_sample(250.0)] * 4)
        assert stats.total_min_ms == stats.total_max_ms == stats.total_avg_ms == 250.0
        assert stats.total_std_dev_ms == 0.0

    def test_single_sample(self, success_sample):
        stats = Statistics.from_measurements([success_sample(42.0)])
        assert stats.sample_count == 1
        assert stats.total_std_dev_ms == 0.0

    def test_bounds_and_finite(self, success_sample):
        stats = Statistics.from_measurements([success_sample(t) for t in (0.1, 0.2, 0.3, 1e6)])
        assert stats.total_min_ms <= stats.total_avg_ms <= stats.total_max_ms
        assert stats.total_std_dev_ms >= 0
        assert all(math.isfinite(v) for v in (stats.total_avg_ms, stats.total_std_dev_ms))

    def test_tls_average_absent_without_tls(self, success_sample):
        stats = Statistics.from_measurements([success_sample(10.0, tls_ms=None)])
        assert stats.tls_avg_ms is None


class TestTestResult:
    def test_counts(self, result_factory):
        result = result_factory([100.0, 110.0], failures=2)
        assert result.total_count == len(result.samples) == 4
        assert result.success_count == 2
        assert result.success_rate == 50.0
        assert result.statistics.success_rate == 50.0
        assert result.completed_at is not None

    def test_all_failures_have_no_statistics(self, result_factory):
        result = result_factory([], failures=3)
        assert result.statistics is None
        assert result.success_rate == 0.0

    def test_skipped(self, result_factory):
        result = result_factory([100.0])
        result.add_measurement(TimingMetrics.skipped("run deadline exceeded"))
        assert result.has_skipped_tests
        assert result.count_status(TestStatus.SKIPPED) == 1


class TestConfig:
    def test_strategies_start_with_system(self):
        config = Config(dns_servers=["8.8.8.8", "8.8.8.8"], doh_providers=["https://a.test/dns-query"])
        names = [s.name for s in config.strategies()]
        assert names == ["System", "Custom (8.8.8.8)", "DoH (a.test)"]

    def test_defaults_validate(self):
        Config().validate()

    def test_doh_providers_on_different_ports_are_distinct(self):
        config = Config(doh_providers=["https://doh.test/dns-query", "https://doh.test:8443/dns-query"])
        names = [s.name for s in config.strategies()]
        assert names == ["System", "DoH (doh.test)", "DoH (doh.test:8443)"]

    def test_name_clash_is_config_error(self):
        config = Config(doh_providers=["https://doh.test/dns-query", "https://doh.test/"])
        with pytest.raises(ConfigError, match="both named"):
            config.validate()


class TestUniqueStrategies:
    def test_merges_strategies_sharing_a_resolver(self):
        first = DnsStrategy.custom(["8.8.8.8", "1.1.1.1"])
        strategies = [DnsStrategy.system(), first, DnsStrategy.custom(["1.1.1.1", "8.8.8.8"]), DnsStrategy.system()]
        assert unique_strategies(strategies) == [DnsStrategy.system(), first]

    def test_rejects_different_resolvers_with_one_name(self):
        with pytest.raises(ConfigError):
            unique_strategies([DnsStrategy.doh("https://doh.test"), DnsStrategy.doh("https://doh.test/dns-query")])


def test_enums_are_not_collected_as_tests():
    assert TestStatus.__test__ is False
    assert "__test__" not in TestStatus.__members__
    assert [s.value for s in TestStatus] == ["success", "failed", "timeout", "skipped"]


class TestExecutionSummary:
    def test_from_results(self, result_factory):
        a = result_factory([100.0, 200.0], failures=1, name="A")
        b = result_factory([], failures=0, name="B")
        b.add_measurement(TimingMetrics.timeout(1000.0))
        b.add_measurement(TimingMetrics.skipped("run deadline exceeded"))
        b.calculate_statistics()

        summary = ExecutionSummary.from_results({"A": a, "B": b}, total_duration_ms=50.0)
        assert summary.total_tests == 5
        assert summary.successful_tests == 2
        assert summary.failed_tests == 1
        assert summary.timeout_tests == 1
        assert summary.skipped_tests == 1
        assert summary.success_rate == pytest.approx(40.0)
        assert summary.performance_summary["A"].avg_response_time_ms == pytest.approx(150.0)
        assert summary.performance_summary["B"].avg_response_time_ms is None

    def test_best_and_worst(self, result_factory):
        results = {
            "fast": result_factory([50.0], name="fast"),
            "slow": result_factory([500.0], name="slow"),
            "dead": result_factory([], failures=2, name="dead"),
        }
        execution = ExecutionResults(
            summary=ExecutionSummary.from_results(results, 0.0), test_results=results,
        )
        assert execution.best_config() == "fast"
        assert execution.worst_config() == "slow"
        assert execution.has_failures
