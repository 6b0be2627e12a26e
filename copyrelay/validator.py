"""
Pre-trade validation.

Before copying a trade into a follower wallet, look up both accounts'
positions in the market and the follower's spendable balance. A BUY the
follower cannot afford is rejected here rather than at the venue.

Every lookup runs through a circuit breaker. Any fault becomes a rejection
with a reason, never an exception.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from copyrelay.breaker import BreakerRegistry
from copyrelay.errors import log_error
from copyrelay.schema import Follower, Position, Side, SourceTrade

logger = logging.getLogger(__name__)

POSITIONS_BREAKER = "validation-positions"
BALANCE_BREAKER = "validation-balance"


@dataclass
class ValidationResult:
    """Outcome of validating one trade for one follower."""

    approved: bool
    reason: Optional[str] = None
    follower_position: Optional[Position] = None
    source_position: Optional[Position] = None
    follower_balance: float = 0.0
    source_balance: float = 0.0

    @classmethod
    def reject(cls, reason: str) -> "ValidationResult":
        return cls(approved=False, reason=reason)


def find_position(positions: List[Position], condition_id: str) -> Optional[Position]:
    for position in positions:
        if position.condition_id == condition_id:
            return position
    return None


class OrderValidator:
    """
    Validates trades against live account state.

    Args:
        positions_client: object with async get_positions(address)
        gateway: order gateway providing async get_balance(follower)
        breakers: registry holding the validation breakers
    """

    def __init__(self, positions_client, gateway, breakers: BreakerRegistry):
        self._positions = positions_client
        self._gateway = gateway
        self._positions_breaker = breakers.get(POSITIONS_BREAKER)
        self._balance_breaker = breakers.get(BALANCE_BREAKER)

    async def validate(self, trade: SourceTrade, follower: Follower) -> ValidationResult:
        try:
            results = await asyncio.gather(
                self._fetch_positions(follower.address),
                self._fetch_positions(trade.source_address),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            follower_positions, source_positions = results

            if not isinstance(follower_positions, list) or not isinstance(source_positions, list):
                return ValidationResult.reject("Invalid positions data received from API")

            follower_balance = await self._balance_breaker.execute(
                lambda: self._gateway.get_balance(follower)
            )

            source_balance = sum(p.current_value for p in source_positions)
            follower_position = find_position(follower_positions, trade.condition_id)
            source_position = find_position(source_positions, trade.condition_id)

            logger.debug(
                f"Balances for trade {trade.id}: follower {follower.short} ${follower_balance:.2f}, "
                f"source ${source_balance:.2f}"
            )

            if trade.side == Side.BUY and follower_balance < trade.usdc_size:
                return ValidationResult(
                    approved=False,
                    reason=(
                        f"Insufficient balance: ${follower_balance:.2f} < ${trade.usdc_size:.2f}"
                    ),
                    follower_position=follower_position,
                    source_position=source_position,
                    follower_balance=follower_balance,
                    source_balance=source_balance,
                )

            return ValidationResult(
                approved=True,
                follower_position=follower_position,
                source_position=source_position,
                follower_balance=follower_balance,
                source_balance=source_balance,
            )

        except Exception as e:
            error = log_error(e, f"Validation of trade {trade.id} for {follower.short}")
            return ValidationResult.reject(f"Validation failed: {error.message}")

    async def _fetch_positions(self, address: str):
        """One positions lookup, counted separately by the breaker."""
        return await self._positions_breaker.execute(
            lambda: self._positions.get_positions(address)
        )
