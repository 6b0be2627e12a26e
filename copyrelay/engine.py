"""
Execution engine.

Runs one (trade, follower) pair through validation, order placement and
bookkeeping:

    PENDING -> VALIDATING -> REJECTED
                          -> EXECUTING -> RECORDED_SUCCESS | RECORDED_FAILURE

Two bookkeeping modes:
- ledger (default): every attempt writes an ExecutionRecord; the pipeline
  marks the trade DONE once all followers have one
- single follower: the trade itself is claimed PENDING -> PROCESSING and
  finished as DONE / FAILED

No exception escapes: gateway and store faults become failed outcomes.
A write that still fails after retrying is held in memory and flushed
later, so a filled order is never placed twice for the same follower.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set, Tuple

from copyrelay.aggregator import AggregationGroup
from copyrelay.errors import log_error
from copyrelay.gateway import OrderGateway, OrderResult, build_order_request
from copyrelay.schema import (
    ExecutionRecord,
    Follower,
    RecordStatus,
    SourceTrade,
    TradeStatus,
    short_address,
)
from copyrelay.storage import CopyRelayStore
from copyrelay.validator import OrderValidator

logger = logging.getLogger(__name__)

RECORD_ATTEMPTS = 3
RECORD_RETRY_DELAY_SECONDS = 0.05

# (trader_address, activity_id, follower_address)
LedgerKey = Tuple[str, str, str]


class PairState(str, Enum):
    PENDING = "PENDING"
    VALIDATING = "VALIDATING"
    REJECTED = "REJECTED"
    EXECUTING = "EXECUTING"
    RECORDED_SUCCESS = "RECORDED_SUCCESS"
    RECORDED_FAILURE = "RECORDED_FAILURE"


@dataclass
class ExecutionOutcome:
    """Result of one execute_* call."""

    trade_ids: List[str]
    follower_address: str
    state: PairState = PairState.PENDING
    success: bool = False
    preview: bool = False
    reason: Optional[str] = None
    filled_size: Optional[float] = None
    order_id: Optional[str] = None
    recorded: List[str] = field(default_factory=list)

    @property
    def rejected(self) -> bool:
        return self.state == PairState.REJECTED


class ExecutionEngine:
    """
    Validates and executes copied trades for one follower at a time.

    Args:
        store: trade store and execution ledger
        validator: pre-trade validator
        gateway: order gateway (never called in preview mode)
        preview: record intended orders without placing them
        use_ledger: ledger bookkeeping (required with several followers)
        alerts: optional AlertService
        record_retry_delay: pause between ledger write attempts
    """

    def __init__(
        self,
        store: CopyRelayStore,
        validator: OrderValidator,
        gateway: OrderGateway,
        preview: bool = False,
        use_ledger: bool = True,
        alerts=None,
        record_retry_delay: float = RECORD_RETRY_DELAY_SECONDS,
    ):
        self.store = store
        self.validator = validator
        self.gateway = gateway
        self.preview = preview
        self.use_ledger = use_ledger
        self.alerts = alerts
        self.record_retry_delay = record_retry_delay
        self.unrecorded: Dict[LedgerKey, ExecutionRecord] = {}

    async def execute_single(self, trade: SourceTrade, follower: Follower) -> ExecutionOutcome:
        """Copy one observed trade into one follower wallet."""
        outcome = ExecutionOutcome(trade_ids=[trade.id], follower_address=follower.address)

        if not self.use_ledger:
            try:
                claimed = self.store.transition(
                    trade.id, TradeStatus.PENDING, TradeStatus.PROCESSING
                )
            except Exception as e:
                error = log_error(e, f"Claiming trade {trade.id}")
                outcome.reason = f"Could not claim trade: {error.message}"
                return outcome
            if not claimed:
                logger.info(f"Trade {trade.id} already claimed, skipping")
                outcome.reason = "already claimed"
                return outcome

        logger.info(
            f"Copying {trade.side.value} ${trade.usdc_size:.2f} @ {trade.price:.4f} on "
            f"{trade.market_label} from {trade.source_address[:10]}... to {follower.short}"
        )

        return await self._execute(
            trades=[trade],
            follower=follower,
            representative=trade,
            notional=trade.usdc_size,
            shares=trade.size,
            price=trade.price,
            outcome=outcome,
        )

    async def execute_aggregated(
        self, group: AggregationGroup, follower: Follower
    ) -> ExecutionOutcome:
        """
        Copy an aggregation group as one order.

        Validation uses the first constituent as representative for the
        whole group; the group succeeds or fails as a unit.
        """
        outcome = ExecutionOutcome(trade_ids=group.trade_ids, follower_address=follower.address)

        if not group.trades:
            outcome.reason = "empty group"
            return outcome

        if not self.use_ledger:
            for trade in group.trades:
                try:
                    self.store.transition(
                        trade.id, TradeStatus.BUFFERED, TradeStatus.PROCESSING
                    )
                except Exception as e:
                    log_error(e, f"Claiming aggregated trade {trade.id}")

        logger.info(
            f"Copying aggregated {group.side.value} of {len(group.trades)} trades "
            f"${group.total_usdc:.2f} @ {group.average_price:.4f} on {group.asset[:16]} "
            f"to {follower.short}"
        )

        return await self._execute(
            trades=group.trades,
            follower=follower,
            representative=group.trades[0],
            notional=group.total_usdc,
            shares=group.total_size,
            price=group.average_price,
            outcome=outcome,
        )

    async def _execute(
        self,
        trades: Sequence[SourceTrade],
        follower: Follower,
        representative: SourceTrade,
        notional: float,
        shares: float,
        price: float,
        outcome: ExecutionOutcome,
    ) -> ExecutionOutcome:
        outcome.state = PairState.VALIDATING
        validation = await self.validator.validate(representative, follower)

        if not validation.approved:
            outcome.state = PairState.REJECTED
            outcome.reason = validation.reason
            logger.warning(
                f"Trade {representative.id} rejected for {follower.short}: {validation.reason}"
            )
            await self._record(trades, follower, outcome, RecordStatus.FAILED, validation.reason)
            if self.alerts:
                self.alerts.notify_trade_rejected(
                    market=representative.market_label,
                    side=representative.side.value,
                    amount=notional,
                    follower=follower.short,
                    reason=validation.reason or "",
                )
            return outcome

        outcome.state = PairState.EXECUTING
        request = build_order_request(
            token_id=representative.asset,
            condition_id=representative.condition_id,
            side=representative.side,
            source_notional=notional,
            source_shares=shares,
            price=price,
            validation=validation,
            market_label=representative.market_label,
        )

        if self.preview:
            logger.info(
                f"[PREVIEW] Would {request.side.value} {request.amount:.4f} on "
                f"{request.market_label} for {follower.short}"
            )
            result = OrderResult(success=True, filled_size=request.amount)
            outcome.preview = True
        else:
            try:
                result = await self.gateway.place_order(request, follower)
            except Exception as e:
                error = log_error(e, f"Order for trade {representative.id} ({follower.short})")
                result = OrderResult(success=False, error=error.message)

        outcome.success = result.success
        outcome.filled_size = result.filled_size if result.success else None
        outcome.order_id = result.order_id
        outcome.reason = result.error

        if result.success:
            logger.info(
                f"{'Previewed' if outcome.preview else 'Filled'} {request.side.value} "
                f"{result.filled_size:.4f} on {request.market_label} for {follower.short}"
            )
        else:
            logger.error(
                f"Order failed for trade {representative.id} ({follower.short}): {result.error}"
            )

        status = RecordStatus.SUCCESS if result.success else RecordStatus.FAILED
        detail = "preview" if outcome.preview else result.error
        await self._record(trades, follower, outcome, status, detail)

        if self.alerts:
            if result.success:
                self.alerts.notify_trade_copied(
                    market=request.market_label,
                    side=request.side.value,
                    amount=request.amount,
                    price=price,
                    follower=follower.short,
                    preview=outcome.preview,
                )
            else:
                self.alerts.notify_order_failed(
                    market=request.market_label,
                    side=request.side.value,
                    amount=request.amount,
                    follower=follower.short,
                    error=result.error or "",
                )

        return outcome

    async def _record(
        self,
        trades: Sequence[SourceTrade],
        follower: Follower,
        outcome: ExecutionOutcome,
        status: RecordStatus,
        detail: Optional[str],
    ) -> None:
        """Persist the outcome: ledger rows or trade status, by mode."""
        failures = []
        for trade in trades:
            record = ExecutionRecord(
                trader_address=trade.source_address,
                activity_id=trade.id,
                follower_address=follower.address,
                status=status,
                filled_size=outcome.filled_size,
                preview=outcome.preview,
                detail=detail,
            )
            try:
                await self._write_with_retry(record)
            except Exception as e:
                error = log_error(e, f"Recording trade {trade.id} for {follower.short}")
                self._keep_unrecorded(record)
                failures.append(error.message)
                continue
            outcome.recorded.append(trade.id)

        if failures:
            outcome.reason = f"{outcome.reason or ''} (record failed: {failures[0]})".strip()
            return

        if outcome.state == PairState.EXECUTING:
            outcome.state = (
                PairState.RECORDED_SUCCESS
                if status == RecordStatus.SUCCESS
                else PairState.RECORDED_FAILURE
            )

    async def _write_with_retry(self, record: ExecutionRecord) -> None:
        for attempt in range(1, RECORD_ATTEMPTS + 1):
            try:
                self._write(record)
                return
            except Exception as e:
                if attempt == RECORD_ATTEMPTS:
                    raise
                logger.warning(
                    f"Write for trade {record.activity_id} "
                    f"({short_address(record.follower_address)}) failed, "
                    f"attempt {attempt}/{RECORD_ATTEMPTS}: {e}"
                )
                await asyncio.sleep(self.record_retry_delay)

    def _write(self, record: ExecutionRecord) -> None:
        if self.use_ledger:
            if not self.store.record_execution(record):
                logger.warning(
                    f"Ledger already has trade {record.activity_id} for "
                    f"{short_address(record.follower_address)}, keeping existing entry"
                )
            return
        trade_status = (
            TradeStatus.DONE if record.status == RecordStatus.SUCCESS else TradeStatus.FAILED
        )
        self.store.set_status(record.activity_id, trade_status, record.detail)

    def _keep_unrecorded(self, record: ExecutionRecord) -> None:
        """
        Hold an outcome that could not be written.

        A claimed trade with nothing filled goes back to PENDING so the next
        iteration can copy it again. Everything else is kept until
        flush_unrecorded() manages to write it.
        """
        if not self.use_ledger and record.status != RecordStatus.SUCCESS:
            try:
                if self.store.transition(
                    record.activity_id, TradeStatus.PROCESSING, TradeStatus.PENDING
                ):
                    logger.info(f"Trade {record.activity_id} returned to PENDING")
                    return
            except Exception as e:
                log_error(e, f"Releasing trade {record.activity_id}")

        key = (record.trader_address, record.activity_id, record.follower_address)
        self.unrecorded[key] = record
        logger.warning(
            f"Holding unrecorded outcome for trade {record.activity_id} "
            f"({short_address(record.follower_address)}); {len(self.unrecorded)} held"
        )

    def flush_unrecorded(self) -> int:
        """Write held outcomes. Returns how many were written."""
        flushed = 0
        for key, record in list(self.unrecorded.items()):
            try:
                self._write(record)
            except Exception as e:
                log_error(e, f"Flushing outcome for trade {record.activity_id}")
                continue
            del self.unrecorded[key]
            flushed += 1
        if flushed:
            logger.info(f"Flushed {flushed} held outcome(s), {len(self.unrecorded)} still held")
        return flushed

    def held_followers(self, trade: SourceTrade) -> Set[str]:
        """Followers with an unwritten outcome for this trade."""
        return {
            follower
            for trader, activity_id, follower in self.unrecorded
            if trader == trade.source_address and activity_id == trade.id
        }
