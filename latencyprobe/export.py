"""JSON and CSV export for measurement results."""

from __future__ import annotations

import csv
import io
import json
from dataclasses import asdict
from typing import Optional

from latencyprobe.errors import IoError
from latencyprobe.models import Config, ExecutionResults, TestResult, TestStatus, TimingMetrics
from latencyprobe.stats import StatisticalAnalysis


def export_json(results: ExecutionResults, config: Optional[Config] = None, indent: int = 2) -> str:
    """Export full results as JSON string."""
    data = _build_export_dict(results, config)
    return json.dumps(data, indent=indent, default=str)


def export_csv(results: ExecutionResults) -> str:
    """Export results as CSV string (one row per cell)."""
    output = io.StringIO()
    writer = csv.writer(output)

    writer.writerow([
        "config",
        "url",
        "successes",
        "total",
        "success_rate",
        "dns_avg_ms",
        "tcp_avg_ms",
        "tls_avg_ms",
        "first_byte_avg_ms",
        "total_avg_ms",
        "total_min_ms",
        "total_max_ms",
        "total_std_dev_ms",
        "timeouts",
        "skipped",
    ])

    for result in results.test_results.values():
        row = [
            result.config_name,
            result.url,
            result.success_count,
            result.total_count,
            round(result.success_rate, 2),
        ]
        stats = result.statistics
        if stats:
            row.extend([
                stats.dns_avg_ms,
                stats.tcp_avg_ms,
                "" if stats.tls_avg_ms is None else stats.tls_avg_ms,
                stats.first_byte_avg_ms,
                stats.total_avg_ms,
                stats.total_min_ms,
                stats.total_max_ms,
                stats.total_std_dev_ms,
            ])
        else:
            row.extend([""] * 8)
        row.extend([
            result.count_status(TestStatus.TIMEOUT),
            result.count_status(TestStatus.SKIPPED),
        ])
        writer.writerow(row)

    return output.getvalue()


def write_to_file(content: str, filepath: str) -> None:
    """Write export content to a file."""
    try:
        with open(filepath, "w") as f:
            f.write(content)
    except OSError as exc:
        raise IoError(f"Failed to write {filepath}: {exc}") from exc


def _build_export_dict(results: ExecutionResults, config: Optional[Config]) -> dict:
    """Build a serializable dictionary from ExecutionResults."""
    data: dict = {}

    if config is not None:
        data["config"] = {
            "urls": list(config.urls),
            "dns_servers": list(config.dns_servers),
            "doh_providers": list(config.doh_providers),
            "iterations": config.iterations,
            "timeout": config.timeout,
            "method": config.method,
            "max_redirects": config.max_redirects,
        }

    data["summary"] = asdict(results.summary)
    data["best_config"] = results.best_config()
    data["worst_config"] = results.worst_config()

    data["results"] = {
        key: _result_to_dict(result) for key, result in results.test_results.items()
    }
    data["analysis"] = _analysis_to_dict(results.analysis) if results.analysis else None
    return data


def _result_to_dict(result: TestResult) -> dict:
    return {
        "config_name": result.config_name,
        "strategy": result.strategy.to_dict(),
        "url": result.url,
        "success_count": result.success_count,
        "total_count": result.total_count,
        "success_rate": result.success_rate,
        "started_at": result.started_at.isoformat(),
        "completed_at": result.completed_at.isoformat() if result.completed_at else None,
        "statistics": asdict(result.statistics) if result.statistics else None,
        "samples": [_sample_to_dict(s) for s in result.samples],
    }


def _sample_to_dict(sample: TimingMetrics) -> dict:
    return {
        "status": sample.status.value,
        "http_status": sample.http_status,
        "dns_ms": sample.dns_ms,
        "tcp_ms": sample.tcp_ms,
        "tls_ms": sample.tls_ms,
        "first_byte_ms": sample.first_byte_ms,
        "total_ms": sample.total_ms,
        "resolved_ip": sample.resolved_ip,
        "timestamp": sample.timestamp.isoformat(),
        "error": sample.error_message,
        "error_kind": sample.error_kind.value if sample.error_kind else None,
    }


def _analysis_to_dict(analysis: StatisticalAnalysis) -> dict:
    data = asdict(analysis)
    data["generated_at"] = analysis.generated_at.isoformat()
    return data
