"""
Trade aggregation buffer.

Tracked accounts often fill a position in many small BUY trades, each below
the venue minimum. The buffer groups them by (account, market, asset, side)
and releases a group once its window has elapsed, either as one combined
order or, when the total is still too small, as skipped trades.

The buffer lives in memory only. Trades it holds are BUFFERED in the store
and go back to PENDING when the pipeline restarts.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from copyrelay.schema import Side, SourceTrade, TradeStatus

logger = logging.getLogger(__name__)

GroupKey = Tuple[str, str, str, Side]


@dataclass
class AggregationGroup:
    """Sub-minimum trades on the same market, asset and side."""

    key: GroupKey
    trades: List[SourceTrade] = field(default_factory=list)
    total_usdc: float = 0.0
    average_price: float = 0.0
    first_seen: float = 0.0
    last_seen: float = 0.0

    @property
    def source_address(self) -> str:
        return self.key[0]

    @property
    def condition_id(self) -> str:
        return self.key[1]

    @property
    def asset(self) -> str:
        return self.key[2]

    @property
    def side(self) -> Side:
        return self.key[3]

    @property
    def trade_ids(self) -> List[str]:
        return [t.id for t in self.trades]

    @property
    def total_size(self) -> float:
        return math.fsum(t.size for t in self.trades)

    def add(self, trade: SourceTrade, now: float) -> None:
        self.trades.append(trade)
        self.total_usdc = math.fsum(t.usdc_size for t in self.trades)
        if self.total_usdc > 0:
            self.average_price = (
                math.fsum(t.usdc_size * t.price for t in self.trades) / self.total_usdc
            )
        else:
            self.average_price = trade.price
        self.last_seen = now

    def subset(self, trades: List[SourceTrade]) -> "AggregationGroup":
        """Same key and window, restricted to the given constituents."""
        group = AggregationGroup(key=self.key, first_seen=self.first_seen)
        for trade in trades:
            group.add(trade, self.last_seen)
        return group


def group_key(trade: SourceTrade) -> GroupKey:
    return (trade.source_address, trade.condition_id, trade.asset, trade.side)


class TradeAggregator:
    """In-memory buffer of aggregation groups, one per pipeline."""

    def __init__(self, store=None, clock: Callable[[], float] = time.time):
        """
        Args:
            store: trade store used to mark expired trades SKIPPED
            clock: time source in seconds
        """
        self._store = store
        self._clock = clock
        self._groups: Dict[GroupKey, AggregationGroup] = {}
        self.skipped_trades = 0

    @staticmethod
    def is_eligible(trade: SourceTrade, min_notional_usd: float) -> bool:
        """Only BUY trades below the venue minimum are buffered."""
        return trade.side == Side.BUY and trade.usdc_size < min_notional_usd

    def add(self, trade: SourceTrade) -> AggregationGroup:
        """Add a trade to its group, creating the group on first sight."""
        key = group_key(trade)
        now = self._clock()

        group = self._groups.get(key)
        if group is None:
            group = AggregationGroup(key=key, first_seen=now, last_seen=now)
            self._groups[key] = group

        group.add(trade, now)

        logger.info(
            f"Buffered trade {trade.id} ${trade.usdc_size:.2f} on {trade.market_label} "
            f"-> group of {len(group.trades)} totalling ${group.total_usdc:.2f}"
        )
        return group

    def collect_ready(
        self, window_seconds: float, min_notional_usd: float
    ) -> List[AggregationGroup]:
        """
        Remove and return groups whose window has elapsed.

        Groups that reached the minimum are returned for execution. Groups
        still below it are dropped and their trades marked SKIPPED, unless
        some follower already copied one of them: those are returned so the
        remaining followers get the copy too.
        """
        now = self._clock()
        ready = []

        for key, group in list(self._groups.items()):
            if now - group.first_seen < window_seconds:
                continue

            del self._groups[key]

            if group.total_usdc >= min_notional_usd:
                logger.info(
                    f"Aggregation ready: {len(group.trades)} trades on {group.asset[:16]} "
                    f"${group.total_usdc:.2f} @ {group.average_price:.4f}"
                )
                ready.append(group)
            elif self._has_copies(group):
                logger.info(
                    f"Aggregation below minimum but already copied for some followers: "
                    f"{group.trade_ids}, completing"
                )
                ready.append(group)
            else:
                logger.info(
                    f"Aggregation expired below minimum: {len(group.trades)} trades "
                    f"${group.total_usdc:.2f} < ${min_notional_usd:.2f}, skipping"
                )
                self._skip(group, min_notional_usd)

        return ready

    def _has_copies(self, group: AggregationGroup) -> bool:
        if self._store is None:
            return False
        for trade in group.trades:
            try:
                if self._store.count_executions(trade.source_address, trade.id):
                    return True
            except Exception as e:
                logger.error(f"Failed to read ledger for trade {trade.id}: {e}")
        return False

    def _skip(self, group: AggregationGroup, min_notional_usd: float) -> None:
        self.skipped_trades += len(group.trades)
        if self._store is None:
            return
        detail = f"aggregated total ${group.total_usdc:.2f} below ${min_notional_usd:.2f}"
        for trade in group.trades:
            try:
                self._store.set_status(trade.id, TradeStatus.SKIPPED, detail)
            except Exception as e:
                logger.error(f"Failed to mark trade {trade.id} skipped: {e}")

    def size(self) -> int:
        return len(self._groups)

    def pending_trade_ids(self) -> List[str]:
        return [t.id for g in self._groups.values() for t in g.trades]

    def get_group(self, trade: SourceTrade) -> Optional[AggregationGroup]:
        return self._groups.get(group_key(trade))
