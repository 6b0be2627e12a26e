"""
Copy PnL: per-follower portfolio summaries from the positions API.

Summaries can be persisted as snapshots for history.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from copyrelay.breaker import BreakerRegistry
from copyrelay.errors import log_error
from copyrelay.schema import Position, short_address

logger = logging.getLogger(__name__)

PNL_BREAKER = "pnl-positions"


@dataclass
class CopyPnlSummary:
    """Portfolio totals for one follower wallet."""

    follower_address: str
    total_value_usd: float = 0.0
    total_initial_usd: float = 0.0
    unrealized_pnl_usd: float = 0.0
    unrealized_pnl_pct: float = 0.0
    realized_pnl_usd: float = 0.0
    position_count: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def realized_pnl_pct(self) -> float:
        if self.total_initial_usd <= 0:
            return 0.0
        return self.realized_pnl_usd / self.total_initial_usd * 100

    @classmethod
    def from_positions(cls, follower_address: str, positions: List[Position]) -> "CopyPnlSummary":
        total_value = math.fsum(p.current_value for p in positions)
        total_initial = math.fsum(p.initial_value for p in positions)
        realized = math.fsum(p.realized_pnl for p in positions)
        unrealized = total_value - total_initial
        unrealized_pct = unrealized / total_initial * 100 if total_initial > 0 else 0.0
        return cls(
            follower_address=follower_address,
            total_value_usd=total_value,
            total_initial_usd=total_initial,
            unrealized_pnl_usd=unrealized,
            unrealized_pnl_pct=unrealized_pct,
            realized_pnl_usd=realized,
            position_count=len(positions),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "follower_address": self.follower_address,
            "total_value_usd": self.total_value_usd,
            "total_initial_usd": self.total_initial_usd,
            "unrealized_pnl_usd": self.unrealized_pnl_usd,
            "unrealized_pnl_pct": self.unrealized_pnl_pct,
            "realized_pnl_usd": self.realized_pnl_usd,
            "realized_pnl_pct": self.realized_pnl_pct,
            "position_count": self.position_count,
            "timestamp": self.timestamp.isoformat(),
        }


class CopyPnlService:
    """Computes and records follower PnL."""

    def __init__(self, positions_client, breakers: BreakerRegistry, store=None):
        self._positions = positions_client
        self._breaker = breakers.get(PNL_BREAKER)
        self._store = store

    async def get_summary(self, follower_address: str) -> Optional[CopyPnlSummary]:
        """Summary for one wallet, or None when positions cannot be fetched."""
        try:
            positions = await self._breaker.execute(
                lambda: self._positions.get_positions(follower_address)
            )
        except Exception as e:
            log_error(e, f"PnL fetch for {short_address(follower_address)}")
            return None
        return CopyPnlSummary.from_positions(follower_address, positions)

    def save_snapshot(self, summary: CopyPnlSummary) -> int:
        if self._store is None:
            raise ValueError("No store configured for PnL snapshots")
        return self._store.save_pnl_snapshot(
            follower_address=summary.follower_address,
            timestamp=summary.timestamp,
            total_value_usd=summary.total_value_usd,
            total_initial_usd=summary.total_initial_usd,
            unrealized_pnl_usd=summary.unrealized_pnl_usd,
            unrealized_pnl_pct=summary.unrealized_pnl_pct,
            realized_pnl_usd=summary.realized_pnl_usd,
            realized_pnl_pct=summary.realized_pnl_pct,
            position_count=summary.position_count,
        )

    async def log_all(
        self, follower_addresses: List[str], save: bool = False
    ) -> List[CopyPnlSummary]:
        """Fetch, log and optionally persist summaries for every follower."""
        results = []
        for address in follower_addresses:
            summary = await self.get_summary(address)
            if summary is None:
                continue
            results.append(summary)
            logger.info(
                f"[PnL] {short_address(address)} | Value: ${summary.total_value_usd:.2f} | "
                f"Initial: ${summary.total_initial_usd:.2f} | "
                f"Unrealized: ${summary.unrealized_pnl_usd:.2f} ({summary.unrealized_pnl_pct:.1f}%) | "
                f"Realized: ${summary.realized_pnl_usd:.2f} | Positions: {summary.position_count}"
            )
            if save:
                self.save_snapshot(summary)
        return results
