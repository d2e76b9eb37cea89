import io

import pytest
from rich.console import Console

from latencyprobe import display
from latencyprobe.models import ExecutionResults, ExecutionSummary, TimingMetrics
from latencyprobe.stats import StatisticsEngine

from .conftest import make_result, make_success


@pytest.fixture
def output(monkeypatch):
    buffer = io.StringIO()
    monkeypatch.setattr(display, "console", Console(file=buffer, width=200, no_color=True, highlight=False))
    return buffer


def _results():
    ok = make_result([100.0, 110.0, 120.0, 130.0, 140.0], name="System")
    dead = make_result([], failures=2, name="Custom (8.8.8.8)")
    cells = {"System | https://example.test/": ok, "Custom (8.8.8.8) | https://example.test/": dead}
    return ExecutionResults(
        summary=ExecutionSummary.from_results(cells, 2500.0),
        test_results=cells,
        analysis=StatisticsEngine().analyze(cells),
    )


def test_render_full(output):
    display.render_full(_results())
    text = output.getvalue()
    assert "no successful requests" in text
    assert "120.0ms" in text
    assert "Recommended DNS configuration: System | https://example.test/" in text
    assert "Warning: No successful measurements for: Custom (8.8.8.8) | https://example.test/" in text
    assert "5/7 successful" in text


def test_render_verbose_lists_samples(output):
    display.render_full(_results(), verbose=True)
    text = output.getvalue()
    assert "Network error: refused" in text
    assert "200" in text


def test_fmt_ms():
    assert display._fmt_ms(None).plain == "—"
    assert display._fmt_ms(12.345).plain == "12.3ms"
    assert display._fmt_ms(2500.0).style == "yellow"


def test_progress_tracker_counts_failures():
    tracker = display.ProgressTracker(["a", "b"], total_samples=2)
    tracker.update("a", 1, 2, make_success())
    tracker.update("a", 2, 2, TimingMetrics.failed("Network error: reset"))
    assert tracker.progress == {"a": 2, "b": 0}
    assert tracker.failures == {"a": 1, "b": 0}
    assert tracker._build_table().row_count == 2


def test_render_error(output):
    display.render_error("Configuration error: bad")
    assert output.getvalue().strip() == "Error: Configuration error: bad"
