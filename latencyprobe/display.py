"""Rich terminal output for latencyprobe."""

from __future__ import annotations

from typing import Optional

from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text

from latencyprobe.models import (
    ExecutionResults,
    ExecutionSummary,
    PerformanceLevel,
    TestResult,
    TestStatus,
    TimingMetrics,
)
from latencyprobe.stats import StatisticalAnalysis

console = Console()

_LEVEL_COLORS = {
    PerformanceLevel.GOOD: "green",
    PerformanceLevel.MODERATE: "yellow",
    PerformanceLevel.POOR: "red",
}

_STATUS_COLORS = {
    TestStatus.SUCCESS: "green",
    TestStatus.FAILED: "red",
    TestStatus.TIMEOUT: "yellow",
    TestStatus.SKIPPED: "dim",
}

_DASH = "—"


def configure_console(color: bool = True) -> Console:
    """Replace the module console, honouring ``--color/--no-color``."""
    global console
    console = Console(no_color=not color, highlight=False)
    return console


def _color_for_ms(value: float) -> str:
    return _LEVEL_COLORS[PerformanceLevel.from_ms(value)]


def _fmt_ms(value: Optional[float], colorize: bool = True) -> Text:
    """Format a millisecond value, colored by performance level."""
    if value is None:
        return Text(_DASH, style="dim")
    text = f"{value:.1f}ms"
    if colorize:
        return Text(text, style=_color_for_ms(value))
    return Text(text)


def _fmt_rate(rate: float) -> Text:
    if rate >= 95.0:
        style = "green"
    elif rate >= 80.0:
        style = "yellow"
    else:
        style = "red"
    return Text(f"{rate:.1f}%", style=style)


# ── Progress tracking ─────────────────────────────────────────────────


class ProgressTracker:
    """Live progress display, one row per (strategy, url) cell."""

    def __init__(self, cell_keys: list[str], total_samples: int):
        self.cell_keys = cell_keys
        self.total_samples = total_samples
        self.progress: dict[str, int] = {k: 0 for k in cell_keys}
        self.failures: dict[str, int] = {k: 0 for k in cell_keys}
        self.live: Optional[Live] = None

    def _build_table(self) -> Table:
        table = Table(show_header=True, expand=False, border_style="dim")
        table.add_column("Configuration", style="bold")
        table.add_column("Progress", min_width=20)
        table.add_column("Status")

        for key in self.cell_keys:
            completed = self.progress[key]
            bar_width = 15
            filled = int((completed / self.total_samples) * bar_width) if self.total_samples > 0 else 0
            bar = "[green]" + "█" * filled + "[/green]" + "[dim]░[/dim]" * (bar_width - filled)

            if completed >= self.total_samples:
                status = "[red]done (errors)[/red]" if self.failures[key] else "[green]done[/green]"
            elif completed:
                status = "[yellow]probing[/yellow]"
            else:
                status = "[dim]waiting[/dim]"
            table.add_row(key, f"{bar} {completed}/{self.total_samples}", status)

        return table

    def start(self) -> None:
        self.live = Live(self._build_table(), console=console, refresh_per_second=4)
        self.live.start()

    def update(self, cell_key: str, completed: int, total: int, sample: TimingMetrics) -> None:
        """Progress callback for :class:`~latencyprobe.scheduler.MeasurementScheduler`."""
        self.progress[cell_key] = completed
        if not sample.is_successful:
            self.failures[cell_key] += 1
        if self.live:
            self.live.update(self._build_table())

    def finish(self) -> None:
        if self.live:
            self.live.stop()


# ── Result tables ─────────────────────────────────────────────────────


def _build_results_table(results: dict[str, TestResult]) -> Table:
    table = Table(
        show_header=True,
        border_style="bright_black",
        expand=False,
        header_style="bold",
        title="[bold]Results[/bold] [dim](averages over successful requests)[/dim]",
        title_style="",
    )
    table.add_column("DNS Config", style="bold")
    table.add_column("URL", overflow="fold", max_width=40)
    table.add_column("OK", justify="right")
    table.add_column("Rate", justify="right")
    table.add_column("DNS", justify="right")
    table.add_column("TCP", justify="right")
    table.add_column("TLS", justify="right")
    table.add_column("TTFB", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("StdDev", justify="right")

    for result in results.values():
        ok = f"{result.success_count}/{result.total_count}"
        stats = result.statistics
        if stats is None:
            table.add_row(
                result.config_name, result.url, ok, _fmt_rate(result.success_rate),
                _DASH, _DASH, _DASH, _DASH, Text("no successful requests", style="red"), _DASH,
            )
            continue
        table.add_row(
            result.config_name,
            result.url,
            ok,
            _fmt_rate(result.success_rate),
            _fmt_ms(stats.dns_avg_ms, colorize=False),
            _fmt_ms(stats.tcp_avg_ms, colorize=False),
            _fmt_ms(stats.tls_avg_ms, colorize=False),
            _fmt_ms(stats.first_byte_avg_ms, colorize=False),
            _fmt_ms(stats.total_avg_ms),
            _fmt_ms(stats.total_std_dev_ms, colorize=False),
        )
    return table


def _build_verbose_table(result: TestResult) -> Table:
    """Build per-sample detail table."""
    table = Table(
        show_header=True,
        border_style="bright_black",
        expand=False,
        header_style="bold",
        title=f"{result.config_name} {_DASH} {result.url}",
        title_style="bold",
    )
    table.add_column("#", justify="right", width=3)
    table.add_column("IP")
    table.add_column("DNS", justify="right")
    table.add_column("TCP", justify="right")
    table.add_column("TLS", justify="right")
    table.add_column("TTFB", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Status")

    for index, s in enumerate(result.samples, 1):
        style = _STATUS_COLORS[s.status]
        if s.is_successful:
            table.add_row(
                str(index),
                Text(s.resolved_ip or _DASH, style="dim"),
                _fmt_ms(s.dns_ms, colorize=False),
                _fmt_ms(s.tcp_ms, colorize=False),
                _fmt_ms(s.tls_ms, colorize=False),
                _fmt_ms(s.first_byte_ms, colorize=False),
                _fmt_ms(s.total_ms),
                Text(str(s.http_status), style=style),
            )
        else:
            table.add_row(
                str(index),
                Text(s.resolved_ip or _DASH, style="dim"),
                _DASH, _DASH, _DASH, _DASH,
                _fmt_ms(s.total_ms, colorize=False) if s.total_ms else _DASH,
                Text(s.error_message or s.status.value, style=style),
            )
    return table


# ── Analysis ──────────────────────────────────────────────────────────


def _build_ranking_table(analysis: StatisticalAnalysis) -> Table:
    table = Table(
        show_header=True,
        border_style="bright_black",
        expand=False,
        header_style="bold",
        title="[bold]Ranking[/bold] [dim](0.40 speed + 0.35 reliability + 0.25 consistency)[/dim]",
        title_style="",
    )
    table.add_column("#", justify="right", width=3, style="dim")
    table.add_column("Configuration", style="bold")
    table.add_column("Score", justify="right")
    table.add_column("Speed", justify="right")
    table.add_column("Reliability", justify="right")
    table.add_column("Consistency", justify="right")
    table.add_column("P50", justify="right")
    table.add_column("P95", justify="right")
    table.add_column("Outliers", justify="right")

    for ranking in analysis.comparative_analysis.performance_rankings:
        ext = analysis.basic_stats.get(ranking.config_name)
        p50 = ext.percentiles.get("p50") if ext else None
        p95 = ext.percentiles.get("p95") if ext else None
        outliers = f"{ext.outlier_analysis.outlier_count}" if ext else _DASH
        scores = ranking.metric_scores
        table.add_row(
            str(ranking.rank),
            ranking.config_name,
            Text(f"{ranking.score:.2f}", style="bold green" if ranking.rank == 1 else ""),
            f"{scores.get('speed', 0.0):.2f}",
            f"{scores.get('reliability', 0.0):.2f}",
            f"{scores.get('consistency', 0.0):.2f}",
            _fmt_ms(p50),
            _fmt_ms(p95),
            outliers,
        )
    return table


def render_analysis(analysis: StatisticalAnalysis) -> None:
    """Print the ranking table followed by findings and warnings."""
    summary = analysis.summary
    if analysis.comparative_analysis.performance_rankings:
        console.print()
        console.print(_build_ranking_table(analysis))

    for finding in summary.key_findings:
        console.print(f"  [cyan]•[/cyan] {finding}")
    for insight in summary.insights:
        console.print(f"  [dim]• {insight}[/dim]")
    for recommendation in summary.recommendations:
        console.print(f"  [bold green]→[/bold green] {recommendation}")
    for warning in summary.warnings:
        render_warning(warning)


def render_summary(summary: ExecutionSummary) -> None:
    parts = [
        f"[bold]{summary.successful_tests}/{summary.total_tests}[/bold] successful",
        f"{summary.failed_tests} failed",
        f"{summary.timeout_tests} timed out",
    ]
    if summary.skipped_tests:
        parts.append(f"{summary.skipped_tests} skipped")
    parts.append(f"{summary.total_duration_ms / 1000.0:.1f}s")
    console.print()
    console.print("  ".join(parts))


# ── Full result rendering ─────────────────────────────────────────────


def render_full(results: ExecutionResults, verbose: bool = False) -> None:
    """Render the complete measurement results."""
    console.print()
    console.print(_build_results_table(results.test_results))

    if verbose:
        for result in results.test_results.values():
            console.print()
            console.print(_build_verbose_table(result))

    if results.analysis is not None:
        render_analysis(results.analysis)
    render_summary(results.summary)


def render_error(message: str) -> None:
    """Display an error message."""
    console.print(f"[bold red]Error:[/bold red] {message}")


def render_warning(message: str) -> None:
    """Display a warning message."""
    console.print(f"[yellow]Warning:[/yellow] {message}")
