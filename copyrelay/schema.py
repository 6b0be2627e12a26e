"""
Data model for the copy relay.

SourceTrade is the contract with the external trade monitor: it writes rows
with status PENDING and this process moves them through the state machine.
ExecutionRecord is the ledger entry proving that one follower attempted one
source trade.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def normalize_address(value: str) -> str:
    """Validate an Ethereum address and return it lower-cased."""
    value = value.strip()
    if not ADDRESS_PATTERN.match(value):
        raise ValueError(f"Invalid address: {value!r} (expected 0x + 40 hex chars)")
    return value.lower()


def short_address(address: str) -> str:
    """0x1234...abcd form used in log lines."""
    return f"{address[:6]}...{address[-4:]}"


class Side(str, Enum):
    """Trade side: BUY or SELL"""

    BUY = "BUY"
    SELL = "SELL"


class TradeStatus(str, Enum):
    """
    Processing status of an observed trade.

    PENDING -> PROCESSING -> DONE | FAILED is the main path. BUFFERED marks
    trades held by the in-memory aggregation buffer, SKIPPED marks buffered
    trades whose group expired below the minimum order size.
    """

    PENDING = "PENDING"
    BUFFERED = "BUFFERED"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (TradeStatus.DONE, TradeStatus.FAILED, TradeStatus.SKIPPED)


class RecordStatus(str, Enum):
    """Outcome stored in an ExecutionRecord."""

    SUCCESS = "success"
    FAILED = "failed"


class SourceTrade(BaseModel):
    """
    A trade observed on a tracked account, pending replication.

    Immutable: status changes are written to the store, and a fresh copy is
    read back when needed.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Unique activity id from the monitor")
    source_address: str = Field(..., description="Tracked account that made the trade")
    condition_id: str = Field(..., min_length=1, description="Market condition id")
    asset: str = Field(..., min_length=1, description="Outcome token id")
    side: Side
    usdc_size: float = Field(..., ge=0, description="Notional in USD")
    size: float = Field(0.0, ge=0, description="Size in outcome tokens")
    price: float = Field(..., ge=0, le=1)
    timestamp: datetime
    status: TradeStatus = TradeStatus.PENDING
    slug: Optional[str] = None
    outcome: Optional[str] = None
    transaction_hash: Optional[str] = None

    @field_validator("source_address")
    @classmethod
    def validate_source_address(cls, v: str) -> str:
        return normalize_address(v)

    @property
    def market_label(self) -> str:
        """Human readable market identifier for logs."""
        return self.slug or self.asset[:16]


class Follower(BaseModel):
    """Destination account receiving copied orders."""

    model_config = ConfigDict(frozen=True)

    address: str
    private_key: SecretStr
    signature_type: int = Field(0, ge=0, le=2, description="CLOB signature type")
    label: Optional[str] = None

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return normalize_address(v)

    @property
    def short(self) -> str:
        return self.label or short_address(self.address)


@dataclass(frozen=True)
class ExecutionRecord:
    """Durable fact: follower attempted to copy a source trade."""

    trader_address: str
    activity_id: str
    follower_address: str
    status: RecordStatus
    executed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    filled_size: Optional[float] = None
    preview: bool = False
    detail: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RecordStatus.SUCCESS


@dataclass(frozen=True)
class Position:
    """A position as reported by the Data API."""

    condition_id: str
    asset: str
    size: float
    avg_price: float = 0.0
    current_value: float = 0.0
    initial_value: float = 0.0
    cash_pnl: float = 0.0
    percent_pnl: float = 0.0
    realized_pnl: float = 0.0

    @classmethod
    def from_api(cls, data: dict) -> "Position":
        """Build from a Data API positions row. Raises on malformed rows."""
        if not isinstance(data, dict):
            raise ValueError(f"Position row is not an object: {data!r}")
        return cls(
            condition_id=str(data["conditionId"]),
            asset=str(data.get("asset", "")),
            size=float(data.get("size") or 0),
            avg_price=float(data.get("avgPrice") or 0),
            current_value=float(data.get("currentValue") or 0),
            initial_value=float(data.get("initialValue") or 0),
            cash_pnl=float(data.get("cashPnl") or 0),
            percent_pnl=float(data.get("percentPnl") or 0),
            realized_pnl=float(data.get("realizedPnl") or 0),
        )
