import csv
import io
import json

import pytest

from latencyprobe.errors import IoError
from latencyprobe.export import export_csv, export_json, write_to_file
from latencyprobe.models import Config, ExecutionResults, ExecutionSummary, TimingMetrics
from latencyprobe.stats import StatisticsEngine

from .conftest import make_result


@pytest.fixture
def results():
    ok = make_result([100.0, 110.0, 120.0, 130.0, 140.0], name="System")
    flaky = make_result([200.0], failures=1, name="Custom (8.8.8.8)")
    flaky.add_measurement(TimingMetrics.timeout(5000.0))
    flaky.calculate_statistics()
    cells = {"System | https://example.test/": ok, "Custom (8.8.8.8) | https://example.test/": flaky}
    return ExecutionResults(
        summary=ExecutionSummary.from_results(cells, 1234.0),
        test_results=cells,
        analysis=StatisticsEngine().analyze(cells),
    )


def test_export_json(results):
    data = json.loads(export_json(results, Config(urls=["https://example.test/"], dns_servers=["8.8.8.8"])))

    assert data["config"]["dns_servers"] == ["8.8.8.8"]
    assert data["summary"]["total_tests"] == 8
    assert data["best_config"] == "System | https://example.test/"
    cell = data["results"]["System | https://example.test/"]
    assert cell["strategy"] == {"kind": "system"}
    assert cell["statistics"]["total_avg_ms"] == pytest.approx(120.0)
    assert cell["samples"][0]["status"] == "success"
    flaky = data["results"]["Custom (8.8.8.8) | https://example.test/"]
    assert [s["status"] for s in flaky["samples"]] == ["success", "failed", "timeout"]
    assert flaky["samples"][2]["error_kind"] == "timeout"
    assert data["analysis"]["summary"]["recommended_config"] is not None
    assert "p95" in data["analysis"]["basic_stats"]["System | https://example.test/"]["percentiles"]


def test_export_json_without_config_or_analysis(results):
    results.analysis = None
    data = json.loads(export_json(results))
    assert "config" not in data
    assert data["analysis"] is None


def test_export_csv(results):
    rows = list(csv.DictReader(io.StringIO(export_csv(results))))
    assert len(rows) == 2
    flaky = rows[1]
    assert flaky["config"] == "Custom (8.8.8.8)"
    assert flaky["successes"] == "1"
    assert flaky["total"] == "3"
    assert flaky["timeouts"] == "1"
    assert flaky["skipped"] == "0"


def test_export_csv_blank_stats_for_dead_cell():
    dead = make_result([], failures=2)
    cells = {"System | https://example.test/": dead}
    results = ExecutionResults(summary=ExecutionSummary.from_results(cells, 0.0), test_results=cells)
    (row,) = csv.DictReader(io.StringIO(export_csv(results)))
    assert row["total_avg_ms"] == ""
    assert row["success_rate"] == "0.0"


def test_write_to_file(tmp_path):
    target = tmp_path / "out.json"
    write_to_file('{"ok": true}', str(target))
    assert target.read_text() == '{"ok": true}'


def test_write_to_file_wraps_os_errors(tmp_path):
    with pytest.raises(IoError):
        write_to_file("x", str(tmp_path / "missing" / "out.json"))
