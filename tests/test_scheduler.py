import pytest

from latencyprobe.errors import ConfigError, ErrorKind, InternalError, NetworkError, ProbeTimeoutError
from latencyprobe.models import DnsStrategy, TestStatus
from latencyprobe.recovery import RetryPolicy
from latencyprobe.scheduler import SKIPPED_REASON, MeasurementScheduler, cell_key

from .conftest import FakeProbe, make_success

URLS = ["https://a.test/", "https://b.test/"]
STRATEGIES = [DnsStrategy.system(), DnsStrategy.custom(["8.8.8.8"])]


def test_cell_key():
    assert cell_key("https://a.test/", DnsStrategy.system()) == "System | https://a.test/"


@pytest.mark.asyncio
async def test_every_cell_gets_every_sample():
    probe = FakeProbe()
    results = await MeasurementScheduler(probe, iterations=3, timeout=5.0).execute(URLS, STRATEGIES)

    assert list(results) == [cell_key(u, s) for u in URLS for s in STRATEGIES]
    for key, result in results.items():
        assert result.total_count == 3
        assert result.success_count == 3
        assert result.statistics.total_avg_ms == pytest.approx(120.0)
        assert result.config_name == key.split(" | ")[0]
    assert len(probe.calls) == 12
    assert all(call[2] == 5.0 for call in probe.calls)


@pytest.mark.asyncio
async def test_iteration_major_dispatch():
    probe = FakeProbe()
    await MeasurementScheduler(probe, iterations=2, concurrency=1).execute(URLS, STRATEGIES)
    order = [(url, strategy.name) for url, strategy, _ in probe.calls]
    one_round = [(u, s.name) for u in URLS for s in STRATEGIES]
    assert order == one_round + one_round


@pytest.mark.asyncio
async def test_samples_keep_dispatch_order_within_cell():
    def outcome(url, strategy, timeout, n):
        return make_success(float(n * 10))

    probe = FakeProbe(outcome)
    results = await MeasurementScheduler(probe, iterations=3, concurrency=1).execute(URLS[:1], STRATEGIES[:1])
    totals = [s.total_ms for s in results[cell_key(URLS[0], STRATEGIES[0])].samples]
    assert totals == [10.0, 20.0, 30.0]


@pytest.mark.asyncio
async def test_probe_errors_become_samples():
    def outcome(url, strategy, timeout, n):
        if n % 3 == 1:
            return NetworkError("connection reset")
        if n % 3 == 2:
            return ProbeTimeoutError("too slow")
        return make_success()

    results = await MeasurementScheduler(FakeProbe(outcome), iterations=3, timeout=2.0, concurrency=1).execute(
        URLS[:1], STRATEGIES[:1],
    )
    failed, timed_out, ok = results[cell_key(URLS[0], STRATEGIES[0])].samples

    assert failed.status is TestStatus.FAILED
    assert failed.error_kind is ErrorKind.NETWORK
    assert failed.error_message == "Network error: connection reset"
    assert timed_out.status is TestStatus.TIMEOUT
    assert timed_out.total_ms == 2000.0
    assert ok.is_successful


@pytest.mark.asyncio
async def test_internal_errors_abort_the_run():
    with pytest.raises(InternalError):
        await MeasurementScheduler(FakeProbe(InternalError("bug")), iterations=2).execute(URLS, STRATEGIES)


@pytest.mark.asyncio
async def test_deadline_skips_outstanding_probes():
    probe = FakeProbe(delay=0.2)
    scheduler = MeasurementScheduler(probe, iterations=3, concurrency=1, run_deadline=0.3, grace_period=0.01)
    result = (await scheduler.execute(URLS[:1], STRATEGIES[:1]))[cell_key(URLS[0], STRATEGIES[0])]

    assert result.total_count == 3
    assert result.success_count == 1
    assert result.count_status(TestStatus.SKIPPED) == 2
    assert result.samples[-1].error_message == SKIPPED_REASON


@pytest.mark.asyncio
async def test_grace_period_lets_in_flight_probe_finish():
    probe = FakeProbe(delay=0.2)
    scheduler = MeasurementScheduler(probe, iterations=3, concurrency=1, run_deadline=0.3, grace_period=0.5)
    result = (await scheduler.execute(URLS[:1], STRATEGIES[:1]))[cell_key(URLS[0], STRATEGIES[0])]

    assert result.success_count == 2
    assert result.count_status(TestStatus.SKIPPED) == 1
    assert len(probe.calls) == 2


@pytest.mark.asyncio
async def test_progress_callback():
    seen = []
    scheduler = MeasurementScheduler(
        FakeProbe(), iterations=3, concurrency=1,
        progress_callback=lambda key, done, total, sample: seen.append((key, done, total, sample.is_successful)),
    )
    await scheduler.execute(URLS[:1], STRATEGIES[:1])
    key = cell_key(URLS[0], STRATEGIES[0])
    assert seen == [(key, 1, 3, True), (key, 2, 3, True), (key, 3, 3, True)]


@pytest.mark.asyncio
async def test_retry_policy_keeps_sample_count():
    def outcome(url, strategy, timeout, n):
        return NetworkError("flaky") if n == 1 else make_success()

    probe = FakeProbe(outcome)
    scheduler = MeasurementScheduler(
        probe, iterations=2, concurrency=1, retry_policy=RetryPolicy.retry(max_attempts=2, delay=0),
    )
    result = (await scheduler.execute(URLS[:1], STRATEGIES[:1]))[cell_key(URLS[0], STRATEGIES[0])]

    assert result.total_count == 2
    assert result.success_count == 2
    assert len(probe.calls) == 3


@pytest.mark.asyncio
async def test_no_cells():
    assert await MeasurementScheduler(FakeProbe()).execute([], STRATEGIES) == {}


@pytest.mark.asyncio
async def test_resolvers_differing_only_by_port_or_servers_get_their_own_cells():
    strategies = [
        DnsStrategy.doh("https://doh.test/dns-query"),
        DnsStrategy.doh("https://doh.test:8443/dns-query"),
        DnsStrategy.custom(["8.8.8.8", "1.1.1.1"]),
        DnsStrategy.custom(["9.9.9.9", "149.112.112.112"]),
    ]
    probe = FakeProbe()
    results = await MeasurementScheduler(probe, iterations=2).execute(URLS[:1], strategies)

    assert len(results) == 4
    assert [r.strategy for r in results.values()] == strategies
    assert all(r.total_count == 2 for r in results.values())
    assert len(probe.calls) == 8


@pytest.mark.asyncio
async def test_duplicate_cells_are_merged():
    probe = FakeProbe()
    strategies = STRATEGIES + [DnsStrategy.custom(["8.8.8.8"])]
    results = await MeasurementScheduler(probe, iterations=2).execute(URLS[:1] * 2, strategies)

    assert list(results) == [cell_key(URLS[0], s) for s in STRATEGIES]
    assert all(r.total_count == 2 for r in results.values())
    assert len(probe.calls) == 4


@pytest.mark.asyncio
async def test_name_clash_is_rejected_before_sending():
    probe = FakeProbe()
    clash = [DnsStrategy.doh("https://doh.test/"), DnsStrategy.doh("https://doh.test/dns-query")]
    with pytest.raises(ConfigError):
        await MeasurementScheduler(probe).execute(URLS, clash)
    assert probe.calls == []
