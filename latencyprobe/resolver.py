"""DNS resolution strategies.

Three resolver variants map a hostname to a list of addresses:

  System  -- dnspython resolver configured from the OS on first use
  Custom  -- dnspython resolver bound to explicit servers on port 53
             (UDP first, TCP when the answer is truncated)
  DoH     -- JSON DNS-over-HTTPS (``application/dns-json``) via httpx

:class:`DnsManager` picks the variant for a :class:`DnsStrategy`, caches
the resolver instance per strategy identity, and times each lookup.
A and AAAA answers are merged in that order.
"""

from __future__ import annotations

import abc
import asyncio
import enum
import ipaddress
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import dns.asyncresolver
import dns.exception
import dns.rdatatype
import dns.resolver
import httpx

from latencyprobe.config import (
    DEFAULT_TIMEOUT,
    DNS_PORT,
    DOH_CONTENT_TYPE,
    MAX_CONCURRENCY,
    TEST_DOMAIN,
    USER_AGENT,
)
from latencyprobe.errors import DnsResolutionError, ProbeError
from latencyprobe.models import DnsStrategy, StrategyKind

logger = logging.getLogger(__name__)

RECORD_TYPES = ("A", "AAAA")


def literal_ip(hostname: str) -> Optional[str]:
    """Return *hostname* normalised if it is already an IP address."""
    try:
        return str(ipaddress.ip_address(hostname.strip("[]")))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Resolver variants
# ---------------------------------------------------------------------------

class Resolver(abc.ABC):
    """Capability shared by every resolver variant."""

    @abc.abstractmethod
    async def resolve(self, hostname: str) -> list[str]:
        """Return A then AAAA addresses for *hostname* (possibly empty)."""

    async def aclose(self) -> None:
        return None


class _DnspythonResolver(Resolver):
    """Common A/AAAA lookup logic on top of ``dns.asyncresolver``."""

    label = "DNS"

    def __init__(self, backend: Any, timeout: float) -> None:
        self._backend = backend
        self._timeout = timeout

    async def _query(self, hostname: str, rdtype: str) -> list[str]:
        try:
            answer = await self._backend.resolve(
                hostname, dns.rdatatype.from_text(rdtype), lifetime=self._timeout,
            )
        except dns.resolver.NoAnswer:
            return []
        except dns.resolver.NXDOMAIN as exc:
            raise DnsResolutionError(f"{hostname} does not exist") from exc
        except dns.exception.Timeout as exc:
            raise DnsResolutionError(
                f"{self.label} lookup for {hostname} ({rdtype}) timed out"
            ) from exc
        except dns.exception.DNSException as exc:
            raise DnsResolutionError(
                f"{self.label} lookup for {hostname} ({rdtype}) failed: {exc}"
            ) from exc
        return [rdata.to_text() for rdata in answer]

    async def resolve(self, hostname: str) -> list[str]:
        addresses: list[str] = []
        first_error: Optional[DnsResolutionError] = None
        for rdtype in RECORD_TYPES:
            try:
                addresses.extend(await self._query(hostname, rdtype))
            except DnsResolutionError as exc:
                logger.debug("%s %s query for %s failed: %s", self.label, rdtype, hostname, exc)
                if first_error is None:
                    first_error = exc
        if not addresses and first_error is not None:
            raise first_error
        return addresses


class SystemResolver(_DnspythonResolver):
    """Resolver that reads the operating system's DNS configuration."""

    label = "System DNS"

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, backend: Any = None) -> None:
        if backend is None:
            try:
                backend = dns.asyncresolver.Resolver(configure=True)
            except dns.exception.DNSException as exc:
                raise DnsResolutionError(f"Failed to read system DNS config: {exc}") from exc
        super().__init__(backend, timeout)


class CustomResolver(_DnspythonResolver):
    """Stub resolver wired to exactly the given servers."""

    label = "Custom DNS"

    def __init__(
        self,
        servers: tuple[str, ...],
        timeout: float = DEFAULT_TIMEOUT,
        backend: Any = None,
    ) -> None:
        if not servers:
            raise DnsResolutionError("No DNS servers provided")
        if backend is None:
            backend = dns.asyncresolver.Resolver(configure=False)
            backend.nameservers = list(servers)
            backend.port = DNS_PORT
        self.servers = servers
        super().__init__(backend, timeout)


def parse_doh_answers(payload: Any, record_type: str) -> list[str]:
    """Extract addresses of *record_type* from a JSON DoH response.

    Entries whose ``data`` is not an address of the matching family are
    ignored; a missing or empty ``Answer`` array yields ``[]``.
    """
    if not isinstance(payload, dict):
        return []
    answers = payload.get("Answer")
    if not isinstance(answers, list):
        return []

    family = ipaddress.IPv4Address if record_type == "A" else ipaddress.IPv6Address
    addresses: list[str] = []
    for answer in answers:
        if not isinstance(answer, dict):
            continue
        data = answer.get("data")
        if not isinstance(data, str):
            continue
        try:
            addresses.append(str(family(data)))
        except ValueError:
            continue
    return addresses


class DohResolver(Resolver):
    """DNS-over-HTTPS client using the JSON GET interface."""

    def __init__(self, url: str, client: httpx.AsyncClient) -> None:
        self.url = url
        self._client = client

    async def query_record(self, hostname: str, record_type: str) -> list[str]:
        params = {"name": hostname, "type": record_type, "ct": DOH_CONTENT_TYPE}
        try:
            response = await self._client.get(
                self.url, params=params, headers={"Accept": DOH_CONTENT_TYPE},
            )
        except httpx.HTTPError as exc:
            raise DnsResolutionError(f"DoH request to {self.url} failed: {exc}") from exc

        if response.status_code != 200:
            raise DnsResolutionError(
                f"DoH query to {self.url} failed with status {response.status_code}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise DnsResolutionError(f"Failed to parse DoH response from {self.url}: {exc}") from exc
        return parse_doh_answers(payload, record_type)

    async def resolve(self, hostname: str) -> list[str]:
        addresses: list[str] = []
        first_error: Optional[DnsResolutionError] = None
        for record_type in RECORD_TYPES:
            try:
                addresses.extend(await self.query_record(hostname, record_type))
            except DnsResolutionError as exc:
                logger.debug("DoH %s query for %s failed: %s", record_type, hostname, exc)
                if first_error is None:
                    first_error = exc
        if not addresses and first_error is not None:
            raise first_error
        return addresses


# ---------------------------------------------------------------------------
# Validation result
# ---------------------------------------------------------------------------

class ValidationStatus(str, enum.Enum):
    VALID = "valid"
    WARNING = "warning"
    INVALID = "invalid"


@dataclass
class DnsValidationResult:
    status: ValidationStatus
    warnings: list[str] = field(default_factory=list)
    test_duration_ms: Optional[float] = None

    @property
    def is_usable(self) -> bool:
        return self.status is not ValidationStatus.INVALID


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class DnsManager:
    """Resolve hostnames under a :class:`DnsStrategy`, caching resolvers.

    The cache is keyed by ``strategy.cache_key``.  Lookups read it without
    locking; inserting a new resolver happens under an ``asyncio.Lock``.
    Failed constructions are not cached.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
        max_connections: int = MAX_CONCURRENCY,
    ) -> None:
        self.timeout = timeout
        self._max_connections = max_connections
        self._resolvers: dict[tuple, Resolver] = {}
        self._lock = asyncio.Lock()
        self._http_client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> DnsManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _doh_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={"User-Agent": USER_AGENT},
                limits=httpx.Limits(max_connections=self._max_connections),
                verify=True,
            )
        return self._http_client

    def _build(self, strategy: DnsStrategy) -> Resolver:
        if strategy.kind is StrategyKind.SYSTEM:
            return SystemResolver(timeout=self.timeout)
        if strategy.kind is StrategyKind.CUSTOM:
            return CustomResolver(strategy.servers, timeout=self.timeout)
        return DohResolver(strategy.url or "", self._doh_client())

    async def get_resolver(self, strategy: DnsStrategy) -> Resolver:
        key = strategy.cache_key
        resolver = self._resolvers.get(key)
        if resolver is not None:
            return resolver
        async with self._lock:
            resolver = self._resolvers.get(key)
            if resolver is None:
                resolver = self._build(strategy)
                self._resolvers[key] = resolver
                logger.debug("Created resolver for %s", strategy.name)
        return resolver

    @property
    def cached_resolver_count(self) -> int:
        return len(self._resolvers)

    async def resolve(self, hostname: str, strategy: DnsStrategy) -> tuple[list[str], float]:
        """Return ``(addresses, elapsed_ms)`` for *hostname* under *strategy*.

        Literal IP addresses are returned as-is with zero duration.
        """
        ip = literal_ip(hostname)
        if ip is not None:
            return [ip], 0.0

        resolver = await self.get_resolver(strategy)
        t0 = time.perf_counter()
        addresses = await resolver.resolve(hostname)
        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        if not addresses:
            raise DnsResolutionError(f"No IP addresses resolved for {hostname} via {strategy.name}")
        return addresses, elapsed_ms

    async def validate(self, strategy: DnsStrategy, test_domain: str = TEST_DOMAIN) -> DnsValidationResult:
        """Check address policy and URL syntax, then try a live lookup."""
        warnings: list[str] = []

        if strategy.kind is StrategyKind.CUSTOM:
            for server in strategy.servers:
                address = ipaddress.ip_address(server)
                if address.is_loopback:
                    warnings.append(f"DNS server {server} is loopback address")
                elif address.is_private:
                    warnings.append(f"DNS server {server} is in private range")
        elif strategy.kind is StrategyKind.DOH:
            parsed = httpx.URL(strategy.url or "")
            if parsed.scheme != "https" or not parsed.host:
                return DnsValidationResult(
                    ValidationStatus.INVALID,
                    [f"DoH URL must use HTTPS: {strategy.url}"],
                )

        t0 = time.perf_counter()
        try:
            await self.resolve(test_domain, strategy)
        except ProbeError as exc:
            elapsed_ms = (time.perf_counter() - t0) * 1000.0
            warnings.append(f"{strategy.name} failed to resolve test domain: {exc.message}")
            return DnsValidationResult(ValidationStatus.INVALID, warnings, elapsed_ms)
        elapsed_ms = (time.perf_counter() - t0) * 1000.0

        status = ValidationStatus.WARNING if warnings else ValidationStatus.VALID
        return DnsValidationResult(status, warnings, elapsed_ms)

    async def reset(self) -> None:
        """Drop every cached resolver."""
        async with self._lock:
            resolvers = list(self._resolvers.values())
            self._resolvers.clear()
        for resolver in resolvers:
            await resolver.aclose()

    async def aclose(self) -> None:
        await self.reset()
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
