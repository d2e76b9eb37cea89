"""Retry policies for probe dispatch.

A :class:`RetryPolicy` wraps a single scheduled sample.  Recoverable
outcomes (DNS, network, HTTP and timeout failures) are attempted again
according to the policy's :class:`RecoveryStrategy`; only the final
outcome is handed back to the scheduler, so retries never inflate the
sample count.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from latencyprobe.config import MAX_TIMEOUT
from latencyprobe.errors import ConfigError, is_recoverable_kind
from latencyprobe.models import DnsStrategy, TestStatus, TimingMetrics

logger = logging.getLogger(__name__)

# One attempt: (strategy, timeout_seconds) -> outcome
Attempt = Callable[[DnsStrategy, float], Awaitable[TimingMetrics]]
Sleep = Callable[[float], Awaitable[None]]


class RecoveryStrategy(str, enum.Enum):
    RETRY = "retry"
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    DNS_FALLBACK = "dns_fallback"
    TIMEOUT_EXPANSION = "timeout_expansion"


def is_retryable(outcome: TimingMetrics) -> bool:
    """True for Failed/Timeout samples whose error kind is recoverable."""
    if outcome.status not in (TestStatus.FAILED, TestStatus.TIMEOUT):
        return False
    return is_recoverable_kind(outcome.error_kind)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times, and how, to re-run a failed probe.

    ``max_attempts`` counts the first try, so ``max_attempts=1`` disables
    retries.  Delays are in seconds.
    """

    max_attempts: int = 3
    strategy: RecoveryStrategy = RecoveryStrategy.RETRY
    initial_delay: float = 0.1
    backoff_multiplier: float = 2.0
    max_delay: float = 5.0
    fallback: Optional[DnsStrategy] = None
    timeout_factor: float = 2.0
    max_timeout: float = MAX_TIMEOUT

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigError("Retry policy needs at least one attempt")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ConfigError("Retry delays cannot be negative")
        if self.strategy is RecoveryStrategy.DNS_FALLBACK and self.fallback is None:
            raise ConfigError("DNS fallback retry policy needs a fallback strategy")
        if self.timeout_factor < 1.0:
            raise ConfigError("Timeout expansion factor must be at least 1")

    @classmethod
    def retry(cls, max_attempts: int = 3, delay: float = 0.1) -> RetryPolicy:
        return cls(max_attempts=max_attempts, initial_delay=delay)

    @classmethod
    def exponential_backoff(
        cls,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        multiplier: float = 2.0,
        max_delay: float = 5.0,
    ) -> RetryPolicy:
        return cls(
            max_attempts=max_attempts,
            strategy=RecoveryStrategy.EXPONENTIAL_BACKOFF,
            initial_delay=base_delay,
            backoff_multiplier=multiplier,
            max_delay=max_delay,
        )

    @classmethod
    def dns_fallback(cls, fallback: DnsStrategy, max_attempts: int = 2, delay: float = 0.0) -> RetryPolicy:
        return cls(
            max_attempts=max_attempts,
            strategy=RecoveryStrategy.DNS_FALLBACK,
            initial_delay=delay,
            fallback=fallback,
        )

    @classmethod
    def timeout_expansion(cls, factor: float = 2.0, max_attempts: int = 2, delay: float = 0.0) -> RetryPolicy:
        return cls(
            max_attempts=max_attempts,
            strategy=RecoveryStrategy.TIMEOUT_EXPANSION,
            initial_delay=delay,
            timeout_factor=factor,
        )

    def delay_for(self, retry_number: int) -> float:
        """Seconds to wait before retry *retry_number* (1-based)."""
        if self.strategy is RecoveryStrategy.EXPONENTIAL_BACKOFF:
            delay = self.initial_delay * self.backoff_multiplier ** (retry_number - 1)
        else:
            delay = self.initial_delay
        return min(delay, self.max_delay)

    def plan(self, retry_number: int, strategy: DnsStrategy, timeout: float) -> tuple[DnsStrategy, float]:
        """Return the (strategy, timeout) to use for retry *retry_number*."""
        if self.strategy is RecoveryStrategy.DNS_FALLBACK and self.fallback is not None:
            return self.fallback, timeout
        if self.strategy is RecoveryStrategy.TIMEOUT_EXPANSION:
            expanded = timeout * self.timeout_factor ** retry_number
            return strategy, min(expanded, self.max_timeout)
        return strategy, timeout

    async def execute(
        self,
        attempt: Attempt,
        strategy: DnsStrategy,
        timeout: float,
        sleep: Sleep = asyncio.sleep,
    ) -> TimingMetrics:
        """Run *attempt* until it succeeds, fails unrecoverably, or attempts run out."""
        outcome = await attempt(strategy, timeout)
        for retry_number in range(1, self.max_attempts):
            if not is_retryable(outcome):
                break
            delay = self.delay_for(retry_number)
            next_strategy, next_timeout = self.plan(retry_number, strategy, timeout)
            logger.debug(
                "Retry %d/%d (%s) via %s after %s: %s",
                retry_number, self.max_attempts - 1, self.strategy.value,
                next_strategy.name, outcome.status.value, outcome.error_message,
            )
            if delay > 0:
                await sleep(delay)
            outcome = await attempt(next_strategy, next_timeout)
        return outcome
