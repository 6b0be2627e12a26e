"""
Order gateway - venue isolation boundary.

OrderGateway is the only place orders leave the process. Implementations:
- ClobOrderGateway: real Polymarket CLOB execution via py_clob_client
- tests/mocks/mock_gateway.py: deterministic recording fake

Copy sizing lives here too, so every gateway receives orders already scaled
to the follower's wallet.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from copyrelay.schema import Follower, Position, Side

logger = logging.getLogger(__name__)

# py_clob_client amounts are USDC / shares with 6 decimals on chain
USDC_DECIMALS = 1_000_000
MIN_BUY_USD = 1.0

FILLED_STATUSES = {"MATCHED", "FILLED"}


@dataclass
class OrderRequest:
    """
    An order scaled for one follower.

    amount is USDC to spend for BUY and shares to sell for SELL, matching
    the CLOB market order convention.
    """

    token_id: str
    condition_id: str
    side: Side
    amount: float
    price: float
    source_notional: float
    market_label: str = ""


@dataclass
class OrderResult:
    """Standardized result from any gateway."""

    success: bool
    filled_size: float = 0.0
    order_id: Optional[str] = None
    error: Optional[str] = None


def compute_buy_amount(
    source_notional: float, follower_balance: float, source_balance: float
) -> float:
    """
    USDC the follower spends to mirror a BUY.

    Scales the source notional by the follower's balance relative to the
    source's pre-trade holdings, capped at what the follower has.
    """
    denominator = source_balance + source_notional
    if denominator <= 0:
        return 0.0
    ratio = follower_balance / denominator
    return min(source_notional * ratio, follower_balance)


def compute_sell_amount(
    source_shares: float,
    follower_position: Optional[Position],
    source_position: Optional[Position],
) -> float:
    """
    Shares the follower sells to mirror a SELL.

    Sells the same fraction of the position the source sold. If the source
    no longer holds the asset, the whole follower position is closed.
    """
    if follower_position is None or follower_position.size <= 0:
        return 0.0
    if source_position is None or source_position.size <= 0:
        return follower_position.size
    ratio = source_shares / (source_position.size + source_shares)
    return min(follower_position.size * ratio, follower_position.size)


def build_order_request(
    token_id: str,
    condition_id: str,
    side: Side,
    source_notional: float,
    source_shares: float,
    price: float,
    validation,
    market_label: str = "",
) -> OrderRequest:
    """Scale a source trade for a follower using a ValidationResult."""
    if side == Side.BUY:
        amount = compute_buy_amount(
            source_notional, validation.follower_balance, validation.source_balance
        )
    else:
        if source_shares <= 0 and price > 0:
            source_shares = source_notional / price
        amount = compute_sell_amount(
            source_shares, validation.follower_position, validation.source_position
        )

    return OrderRequest(
        token_id=token_id,
        condition_id=condition_id,
        side=side,
        amount=amount,
        price=price,
        source_notional=source_notional,
        market_label=market_label,
    )


def check_order_size(request: OrderRequest) -> Optional[str]:
    """Reason the venue would refuse this order, or None."""
    if request.side == Side.BUY and request.amount < MIN_BUY_USD:
        return f"Order amount ${request.amount:.2f} below venue minimum ${MIN_BUY_USD:.2f}"
    if request.side == Side.SELL and request.amount <= 0:
        return "No position to sell"
    return None


class OrderGateway(ABC):
    """
    Abstract order gateway.

    All gateways (fake or live) must implement this interface.
    """

    @abstractmethod
    async def place_order(self, request: OrderRequest, follower: Follower) -> OrderResult:
        """
        Submit an order for a follower.

        Returns OrderResult; may raise on transport faults.
        """

    @abstractmethod
    async def get_balance(self, follower: Follower) -> float:
        """Available USDC for the follower."""

    def get_name(self) -> str:
        return type(self).__name__


class ClobOrderGateway(OrderGateway):
    """
    Live gateway for Polymarket CLOB execution.

    One authenticated ClobClient per follower, created on first use.
    py_clob_client is synchronous, so calls run in worker threads.
    """

    def __init__(self, host: str = "https://clob.polymarket.com", chain_id: int = 137):
        self.host = host
        self.chain_id = chain_id
        self._clients: Dict[str, object] = {}

    def _client_for(self, follower: Follower):
        client = self._clients.get(follower.address)
        if client is not None:
            return client

        # Lazy import - only loads when live execution is used
        from py_clob_client.client import ClobClient

        key = follower.private_key.get_secret_value()
        if not key.startswith("0x"):
            key = f"0x{key}"

        kwargs = {}
        if follower.signature_type != 0:
            # Proxy / Gnosis Safe wallets sign for the funder address
            kwargs["funder"] = follower.address

        client = ClobClient(
            host=self.host,
            key=key,
            chain_id=self.chain_id,
            signature_type=follower.signature_type,
            **kwargs,
        )
        creds = client.create_or_derive_api_creds()
        client.set_api_creds(creds)

        logger.info(
            f"CLOB client ready for {follower.short} (signature_type={follower.signature_type})"
        )
        self._clients[follower.address] = client
        return client

    async def get_balance(self, follower: Follower) -> float:
        from py_clob_client.clob_types import AssetType, BalanceAllowanceParams

        def _fetch() -> float:
            client = self._client_for(follower)
            response = client.get_balance_allowance(
                BalanceAllowanceParams(asset_type=AssetType.COLLATERAL)
            )
            return int(response.get("balance", 0)) / USDC_DECIMALS

        return await asyncio.to_thread(_fetch)

    async def place_order(self, request: OrderRequest, follower: Follower) -> OrderResult:
        """
        Execute a Fill-or-Kill market order.

        NOTE: This is the ONLY place where real execution happens.
        """
        from py_clob_client.clob_types import MarketOrderArgs, OrderType

        problem = check_order_size(request)
        if problem:
            return OrderResult(success=False, error=problem)

        def _post() -> dict:
            client = self._client_for(follower)
            order_args = MarketOrderArgs(
                token_id=request.token_id,
                amount=float(request.amount),
                side=request.side.value,
            )
            signed_order = client.create_market_order(order_args)
            return client.post_order(signed_order, orderType=OrderType.FOK)

        logger.info(
            f"Posting {request.side.value} {request.amount:.4f} on {request.market_label or request.token_id[:16]} "
            f"for {follower.short}"
        )
        response = await asyncio.to_thread(_post)

        if not isinstance(response, dict):
            return OrderResult(success=False, error=f"Unexpected response: {response}")

        order_id = response.get("orderID")
        status = str(response.get("status", "")).upper()
        if response.get("success") is False or status not in FILLED_STATUSES:
            error = response.get("errorMsg") or f"Order status: {status or 'unknown'}"
            return OrderResult(success=False, order_id=order_id, error=error)

        if request.side == Side.BUY:
            filled = float(response.get("takingAmount") or 0) or (
                request.amount / request.price if request.price > 0 else 0.0
            )
        else:
            filled = float(response.get("makingAmount") or 0) or request.amount

        return OrderResult(success=True, filled_size=filled, order_id=order_id)
