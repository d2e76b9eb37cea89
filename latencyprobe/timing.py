"""Timing primitives.

A :class:`TimingBuilder` collects monotonic ``time.perf_counter()`` marks
at well-defined points of a request and turns them into a
:class:`~latencyprobe.models.TimingMetrics`.  :class:`TraceRecorder`
feeds the builder from httpx's ``trace`` request extension, which
reports httpcore connection and response events.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from latencyprobe.errors import ErrorKind
from latencyprobe.models import TimingMetrics

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def _span_ms(start: Optional[float], end: Optional[float]) -> Optional[float]:
    if start is None or end is None:
        return None
    return max(end - start, 0.0) * 1000.0


class TimingBuilder:
    """Record lifecycle marks for one request.

    Every ``mark_*`` method keeps only the first call, so events repeated
    by redirects or retries inside the HTTP library do not overwrite the
    initial phase.
    """

    def __init__(self, clock: Clock = time.perf_counter) -> None:
        self._clock = clock
        self.start: float = clock()
        self.dns_start: Optional[float] = None
        self.dns_end: Optional[float] = None
        self.connect_start: Optional[float] = None
        self.connect_end: Optional[float] = None
        self.tls_start: Optional[float] = None
        self.tls_end: Optional[float] = None
        self.first_byte: Optional[float] = None
        self.end: Optional[float] = None
        self.resolved_ip: Optional[str] = None

    def _now(self, current: Optional[float]) -> float:
        return current if current is not None else self._clock()

    def mark_connect_start(self) -> None:
        self.connect_start = self._now(self.connect_start)

    def mark_connect_end(self) -> None:
        self.connect_end = self._now(self.connect_end)

    def mark_tls_start(self) -> None:
        self.tls_start = self._now(self.tls_start)

    def mark_tls_end(self) -> None:
        self.tls_end = self._now(self.tls_end)

    def mark_first_byte(self) -> None:
        self.first_byte = self._now(self.first_byte)

    def mark_end(self) -> None:
        self.end = self._now(self.end)

    def set_dns_ms(self, dns_ms: float) -> None:
        """Attach a DNS duration measured outside this builder."""
        self.dns_start = self.start
        self.dns_end = self.start + max(dns_ms, 0.0) / 1000.0

    def elapsed_ms(self) -> float:
        return max(self._clock() - self.start, 0.0) * 1000.0

    @property
    def dns_ms(self) -> float:
        return _span_ms(self.dns_start, self.dns_end) or 0.0

    @property
    def tcp_ms(self) -> float:
        return _span_ms(self.connect_start, self.connect_end) or 0.0

    @property
    def tls_ms(self) -> Optional[float]:
        return _span_ms(self.tls_start, self.tls_end)

    @property
    def first_byte_ms(self) -> float:
        return _span_ms(self.start, self.first_byte) or 0.0

    @property
    def total_ms(self) -> float:
        end = self.end if self.end is not None else self._clock()
        return _span_ms(self.start, end) or 0.0

    def build(self, http_status: int, resolved_ip: Optional[str] = None) -> TimingMetrics:
        """Produce the final measurement for the observed *http_status*.

        Statuses outside [200, 400) yield a ``Failed`` sample that keeps
        the elapsed total but no phase breakdown.
        """
        self.mark_end()
        if not 200 <= http_status < 400:
            return TimingMetrics.failed(
                f"HTTP {http_status}",
                error_kind=ErrorKind.HTTP_REQUEST,
                total_ms=self.total_ms,
                resolved_ip=resolved_ip,
            )
        return TimingMetrics.success(
            dns_ms=self.dns_ms,
            tcp_ms=self.tcp_ms,
            tls_ms=self.tls_ms,
            first_byte_ms=self.first_byte_ms,
            total_ms=self.total_ms,
            http_status=http_status,
            resolved_ip=resolved_ip,
        )


# httpcore trace event name -> builder method
_TRACE_MARKS = {
    "connection.connect_tcp.started": "mark_connect_start",
    "connection.connect_tcp.complete": "mark_connect_end",
    "connection.connect_unix_socket.started": "mark_connect_start",
    "connection.connect_unix_socket.complete": "mark_connect_end",
    "connection.start_tls.started": "mark_tls_start",
    "connection.start_tls.complete": "mark_tls_end",
    "http11.receive_response_headers.complete": "mark_first_byte",
    "http2.receive_response_headers.complete": "mark_first_byte",
}


class TraceRecorder:
    """Async callable suitable for ``extensions={"trace": ...}`` in httpx."""

    def __init__(self, builder: TimingBuilder) -> None:
        self.builder = builder
        self.events: list[str] = []

    async def __call__(self, event_name: str, info: dict[str, Any]) -> None:
        self.events.append(event_name)
        method = _TRACE_MARKS.get(event_name)
        if method is not None:
            getattr(self.builder, method)()
        elif event_name.endswith(".failed"):
            logger.debug("Trace event %s: %s", event_name, info.get("exception"))
