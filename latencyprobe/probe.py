"""Timed HTTP probe.

One probe resolves the target host through a :class:`DnsStrategy`, pins
the HTTP connection to the first resolved address, and issues a single
request through httpx.  Connect, TLS and first-byte marks come from the
httpx ``trace`` extension; when the transport does not emit them (mock
transports, some proxies) those phases stay at zero and ``total`` remains
authoritative.

Public API:
    HttpProbe.probe  -- run one timed request, return TimingMetrics
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urlparse

import httpx

from latencyprobe.config import DEFAULT_MAX_REDIRECTS, DEFAULT_METHOD, USER_AGENT
from latencyprobe.errors import (
    HttpRequestError,
    NetworkError,
    ProbeError,
    ValidationError,
)
from latencyprobe.models import DnsStrategy, TimingMetrics
from latencyprobe.resolver import DnsManager
from latencyprobe.timing import TimingBuilder, TraceRecorder

logger = logging.getLogger(__name__)

# Builds the transport for one probe given (target_ip, hostname, options).
TransportFactory = Callable[[str, str, "ProbeOptions"], httpx.AsyncBaseTransport]


@dataclass(frozen=True)
class ProbeOptions:
    """Per-request behaviour of :class:`HttpProbe`."""

    method: str = DEFAULT_METHOD
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    user_agent: str = USER_AGENT
    verify_tls: bool = True
    http2: bool = True
    read_body: bool = False

    @property
    def effective_method(self) -> str:
        return "GET" if self.read_body else self.method.upper()


# ---------------------------------------------------------------------------
# Pinned transport
# ---------------------------------------------------------------------------

class PinnedTransport(httpx.AsyncHTTPTransport):
    """Transport that pins DNS resolution for one hostname to a specific IP.

    Requests for *hostname* are rewritten to target *target_ip* while the
    original name is kept in the ``sni_hostname`` extension and the Host
    header, so TLS SNI and certificate validation work normally.  Requests
    for other hosts (cross-host redirects) pass through untouched.
    """

    def __init__(self, target_ip: str, hostname: str, **kwargs):
        self._target_ip = target_ip
        self._hostname = hostname.lower()
        super().__init__(**kwargs)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        url = request.url
        if url.host.lower() == self._hostname and url.host != self._target_ip:
            request = httpx.Request(
                method=request.method,
                url=url.copy_with(host=self._target_ip),
                headers=request.headers,
                stream=request.stream,
                extensions={**request.extensions, "sni_hostname": url.host},
            )
        return await super().handle_async_request(request)


def pinned_transport_factory(target_ip: str, hostname: str, options: ProbeOptions) -> httpx.AsyncBaseTransport:
    return PinnedTransport(
        target_ip=target_ip,
        hostname=hostname,
        http2=options.http2,
        verify=options.verify_tls,
        retries=0,
    )


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

_NETWORK_ERRORS = (
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.CloseError,
    httpx.RemoteProtocolError,
    httpx.ProxyError,
)


def classify_http_error(exc: httpx.HTTPError) -> ProbeError:
    """Map a non-timeout httpx failure onto the error taxonomy."""
    if isinstance(exc, _NETWORK_ERRORS):
        return NetworkError(f"{type(exc).__name__}: {exc}")
    return HttpRequestError(f"{type(exc).__name__}: {exc}")


# ---------------------------------------------------------------------------
# Probe
# ---------------------------------------------------------------------------

class HttpProbe:
    """Execute timed HTTP requests under a chosen DNS strategy."""

    def __init__(
        self,
        dns: DnsManager,
        options: Optional[ProbeOptions] = None,
        transport_factory: TransportFactory = pinned_transport_factory,
    ) -> None:
        self.dns = dns
        self.options = options or ProbeOptions()
        self._transport_factory = transport_factory

    async def probe(self, url: str, strategy: DnsStrategy, timeout: float) -> TimingMetrics:
        """Run one request against *url* and return its measurement.

        A deadline overrun yields ``TimingMetrics.timeout``; a status
        outside [200, 400) yields a ``Failed`` sample.  Every other failure
        raises a classified :class:`~latencyprobe.errors.ProbeError`.
        """
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise ValidationError(f"Unsupported URL scheme {parsed.scheme!r} in {url}")
        hostname = parsed.hostname
        if not hostname:
            raise ValidationError(f"URL has no host: {url}")

        builder = TimingBuilder()
        try:
            return await asyncio.wait_for(
                self._timed_request(url, hostname, strategy, timeout, builder),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.debug("Probe of %s via %s timed out: %s", url, strategy.name, exc)
            return TimingMetrics.timeout(
                max(builder.elapsed_ms(), timeout * 1000.0), resolved_ip=builder.resolved_ip,
            )

    async def _timed_request(
        self,
        url: str,
        hostname: str,
        strategy: DnsStrategy,
        timeout: float,
        builder: TimingBuilder,
    ) -> TimingMetrics:
        addresses, dns_ms = await self.dns.resolve(hostname, strategy)
        builder.set_dns_ms(dns_ms)
        target_ip = addresses[0]
        builder.resolved_ip = target_ip
        logger.debug("%s resolved %s -> %s in %.1fms", strategy.name, hostname, target_ip, dns_ms)

        options = self.options
        transport = self._transport_factory(target_ip, hostname, options)
        recorder = TraceRecorder(builder)
        try:
            async with httpx.AsyncClient(
                transport=transport,
                timeout=httpx.Timeout(timeout),
                follow_redirects=options.max_redirects > 0,
                max_redirects=options.max_redirects,
                headers={"User-Agent": options.user_agent},
            ) as client:
                async with client.stream(
                    options.effective_method, url, extensions={"trace": recorder},
                ) as response:
                    builder.mark_first_byte()
                    if options.read_body:
                        await response.aread()
                    status = response.status_code
        except httpx.TimeoutException:
            raise
        except httpx.TooManyRedirects as exc:
            raise HttpRequestError(f"Too many redirects (limit {options.max_redirects}): {exc}") from exc
        except httpx.HTTPError as exc:
            raise classify_http_error(exc) from exc

        metrics = builder.build(status, resolved_ip=target_ip)
        logger.debug(
            "Probe %s via %s: status=%d total=%.1fms", url, strategy.name, status, metrics.total_ms,
        )
        return metrics
