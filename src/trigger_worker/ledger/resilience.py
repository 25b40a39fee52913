"""
Resilience layer for ledger access.

Every remote call goes through bounded retries with a fixed delay. When a
single logical operation exhausts its retries on transport errors, the
layer raises TransportDegradedError instead of failing quietly. The
scheduler treats that as fail-stop: no new cycles until a recovery probe
succeeds. Evaluating triggers against an unreachable ledger risks acting
on stale data.

Only LedgerTransportError is retried. A LedgerCallError is an answer from
the ledger and propagates immediately so callers can isolate it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .client import LedgerClient, LedgerError, LedgerTransportError
from .models import Trigger, TransitionResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransportDegradedError(Exception):
    """Retries for one logical operation were exhausted on transport errors."""

    def __init__(self, operation: str, attempts: int, last_error: Optional[Exception] = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Transport degraded: {operation} failed after {attempts} attempts"
            + (f" ({last_error})" if last_error else "")
        )


@dataclass
class RetryPolicy:
    """Retry settings for remote calls."""

    max_retries: int = 3  # Attempts per logical operation
    retry_delay_seconds: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds must be >= 0")


@dataclass
class ResilienceStats:
    """Counters for the resilience layer."""

    calls: int = 0
    retries: int = 0
    escalations: int = 0
    probes: int = 0
    probe_failures: int = 0


class ResilienceLayer:
    """
    Bounded retry with escalation.

    Usage:
        layer = ResilienceLayer(RetryPolicy(max_retries=3, retry_delay_seconds=2))
        count = await layer.call("get_trigger_count", ledger.get_trigger_count)

        if layer.is_degraded:
            ok = await layer.probe(ledger.ping)
            if ok:
                layer.reset()
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._degraded = False
        self._last_error: Optional[Exception] = None
        self.stats = ResilienceStats()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def is_degraded(self) -> bool:
        """True once an operation escalated, until reset()."""
        return self._degraded

    @property
    def last_error(self) -> Optional[Exception]:
        return self._last_error

    async def call(
        self,
        operation: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """
        Run one logical operation with bounded retries.

        Raises:
            TransportDegradedError: Retries exhausted on transport errors
            LedgerError: Non-transport failures, unretried
        """
        self.stats.calls += 1
        max_retries = self._policy.max_retries
        last_error: Optional[Exception] = None

        for attempt in range(1, max_retries + 1):
            try:
                return await fn(*args, **kwargs)
            except LedgerTransportError as e:
                last_error = e
                if attempt < max_retries:
                    self.stats.retries += 1
                    logger.warning(
                        f"{operation} transport error, retry {attempt}/{max_retries - 1}: {e}"
                    )
                    await self._sleep(self._policy.retry_delay_seconds)

        self._degraded = True
        self._last_error = last_error
        self.stats.escalations += 1
        logger.error(f"{operation} exhausted {max_retries} attempts, escalating: {last_error}")
        raise TransportDegradedError(operation, max_retries, last_error)

    async def probe(self, ping: Callable[[], Awaitable[Any]]) -> bool:
        """Single un-retried connectivity check. Returns True on success."""
        self.stats.probes += 1
        try:
            await ping()
            return True
        except LedgerError as e:
            self.stats.probe_failures += 1
            self._last_error = e
            logger.debug(f"Recovery probe failed: {e}")
            return False

    def reset(self) -> None:
        """Clear degraded state after a successful recovery."""
        self._degraded = False
        self._last_error = None


class ResilientLedgerClient:
    """
    LedgerClient that routes every call through a ResilienceLayer.

    Components take a plain LedgerClient; the process wires this wrapper
    in so that retry policy stays out of the business logic.
    """

    def __init__(self, inner: LedgerClient, layer: ResilienceLayer) -> None:
        self._inner = inner
        self._layer = layer

    @property
    def layer(self) -> ResilienceLayer:
        return self._layer

    async def get_trigger_count(self) -> int:
        return await self._layer.call("get_trigger_count", self._inner.get_trigger_count)

    async def get_trigger(self, trigger_id: int) -> Trigger:
        return await self._layer.call(
            f"get_trigger({trigger_id})", self._inner.get_trigger, trigger_id
        )

    async def get_price(self, feed_index: int) -> Decimal:
        return await self._layer.call(
            f"get_price({feed_index})", self._inner.get_price, feed_index
        )

    async def get_settlement_balance(self, asset: str, holder: Optional[str] = None) -> int:
        return await self._layer.call(
            f"get_settlement_balance({asset})",
            self._inner.get_settlement_balance,
            asset,
            holder,
        )

    async def start_execution(self, trigger_id: int) -> TransitionResult:
        return await self._layer.call(
            f"start_execution({trigger_id})", self._inner.start_execution, trigger_id
        )

    async def complete_execution(self, trigger_id: int, output_amount: int) -> TransitionResult:
        return await self._layer.call(
            f"complete_execution({trigger_id})",
            self._inner.complete_execution,
            trigger_id,
            output_amount,
        )

    async def mark_failed(self, trigger_id: int, reason: str) -> TransitionResult:
        return await self._layer.call(
            f"mark_failed({trigger_id})", self._inner.mark_failed, trigger_id, reason
        )

    async def ping(self) -> int:
        return await self._layer.call("ping", self._inner.ping)

    async def probe(self) -> bool:
        """Recovery probe against the inner client, bypassing retries."""
        return await self._layer.probe(self._inner.ping)
