"""
OracleReader - Fresh prices for the monitored feeds.

Reads every monitored feed concurrently once per cycle. A failed read
for one feed yields "no price" for that feed only. Prices are never
cached between cycles: a trigger must always be evaluated against a
price read in the current cycle.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from trigger_worker.ledger import LedgerClient, LedgerError

from .concurrency import gather_or_cancel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonitoredFeed:
    """A price feed the worker watches."""

    symbol: str
    index: int

    @classmethod
    def parse_list(cls, value: str) -> List["MonitoredFeed"]:
        """
        Parse ``"BTC:3,ETH:4"`` into feeds.

        Raises:
            ValueError: On malformed entries or duplicate indexes
        """
        feeds: List[MonitoredFeed] = []
        seen: set = set()
        for entry in value.split(","):
            entry = entry.strip()
            if not entry:
                continue
            symbol, sep, index = entry.partition(":")
            if not sep or not symbol.strip() or not index.strip().isdigit():
                raise ValueError(f"Invalid feed entry '{entry}', expected SYMBOL:INDEX")
            feed = cls(symbol=symbol.strip().upper(), index=int(index))
            if feed.index in seen:
                raise ValueError(f"Duplicate feed index {feed.index}")
            seen.add(feed.index)
            feeds.append(feed)
        return feeds


@dataclass
class OracleSnapshot:
    """Prices read in one cycle, keyed by feed index."""

    prices: Dict[int, Decimal] = field(default_factory=dict)
    failed: List[int] = field(default_factory=list)
    fetched_at: float = field(default_factory=time.time)

    def get(self, feed_index: int) -> Optional[Decimal]:
        return self.prices.get(feed_index)

    @property
    def is_degraded(self) -> bool:
        """Every feed failed: nothing can start this cycle."""
        return not self.prices and bool(self.failed)


class OracleReader:
    """
    Batch price reader with per-feed failure isolation.

    No retries here; the ledger client passed in is expected to be the
    resilient wrapper. TransportDegradedError is not caught and reaches
    the scheduler.

    Usage:
        reader = OracleReader(ledger, MonitoredFeed.parse_list("BTC:3,ETH:4"))
        snapshot = await reader.read_prices()
        btc = snapshot.get(3)
    """

    def __init__(
        self,
        ledger: LedgerClient,
        feeds: Sequence[MonitoredFeed],
        max_concurrent_reads: int = 8,
    ) -> None:
        self._ledger = ledger
        self._feeds = list(feeds)
        self._semaphore = asyncio.Semaphore(max_concurrent_reads)

    @property
    def feeds(self) -> List[MonitoredFeed]:
        return list(self._feeds)

    def symbol_for(self, feed_index: int) -> str:
        for feed in self._feeds:
            if feed.index == feed_index:
                return feed.symbol
        return f"#{feed_index}"

    async def read_prices(self) -> OracleSnapshot:
        """Read all monitored feeds. Never raises for a single feed failure."""
        results = await gather_or_cancel(*(self._read_one(feed) for feed in self._feeds))

        snapshot = OracleSnapshot()
        for feed, price in zip(self._feeds, results):
            if price is None:
                snapshot.failed.append(feed.index)
            else:
                snapshot.prices[feed.index] = price

        if snapshot.is_degraded:
            logger.warning(f"Oracle degraded: all {len(self._feeds)} feed reads failed")
        elif snapshot.failed:
            logger.info(
                f"Oracle: {len(snapshot.prices)}/{len(self._feeds)} prices, "
                f"failed feeds {snapshot.failed}"
            )

        return snapshot

    async def _read_one(self, feed: MonitoredFeed) -> Optional[Decimal]:
        async with self._semaphore:
            try:
                price = await self._ledger.get_price(feed.index)
            except LedgerError as e:
                logger.warning(f"Price read failed for {feed.symbol} (feed {feed.index}): {e}")
                return None

        logger.debug(f"Price {feed.symbol}: {price}")
        return price
