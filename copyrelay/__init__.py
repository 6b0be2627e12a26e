"""
Copy Relay

Replicates Polymarket trades from tracked accounts into follower wallets,
copying each trade at most once per follower.

Components:
- breaker: Circuit breakers for flaky upstream APIs
- aggregator: Buffer merging sub-minimum trades
- validator: Pre-trade balance and position checks
- engine: Per-follower execution state machine
- storage: Trade store and execution ledger
- pipeline: Main orchestrator
"""

from copyrelay.aggregator import AggregationGroup, TradeAggregator
from copyrelay.breaker import BreakerRegistry, BreakerState, CircuitBreaker
from copyrelay.config import CopyRelayConfig
from copyrelay.engine import ExecutionEngine, ExecutionOutcome, PairState
from copyrelay.errors import CopyRelayError, ErrorKind, Severity
from copyrelay.gateway import ClobOrderGateway, OrderGateway, OrderRequest, OrderResult
from copyrelay.pipeline import PipelineLoop, PipelineStats, create_pipeline
from copyrelay.schema import (
    ExecutionRecord,
    Follower,
    Position,
    RecordStatus,
    Side,
    SourceTrade,
    TradeStatus,
)
from copyrelay.storage import CopyRelayStore
from copyrelay.validator import OrderValidator, ValidationResult

__version__ = "1.0.0"
