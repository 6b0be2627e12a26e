"""
Pipeline loop - the executor's main orchestrator.

Each iteration:
1. Read PENDING trades for every tracked account
2. Buffer sub-minimum BUY trades (aggregation on), copy the rest now
3. Execute aggregation groups whose window has elapsed
4. Sleep for the poll interval (wakes early on stop)

A trade is DONE once every follower has a ledger entry for it. Trades
missing entries stay PENDING and are picked up again next iteration. Outcomes
the engine could not write are flushed first, and their followers are never
sent a second order.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from copyrelay.aggregator import AggregationGroup, TradeAggregator
from copyrelay.alerts import AlertConfig, AlertService
from copyrelay.breaker import BreakerRegistry
from copyrelay.config import CopyRelayConfig
from copyrelay.engine import ExecutionEngine, ExecutionOutcome, PairState
from copyrelay.errors import log_error
from copyrelay.gateway import ClobOrderGateway, OrderGateway
from copyrelay.schema import Follower, SourceTrade, TradeStatus
from copyrelay.storage import CopyRelayStore
from copyrelay.validator import OrderValidator
from copyrelay.venue import PositionsClient

logger = logging.getLogger(__name__)


@dataclass
class PipelineStats:
    """Statistics for the executor session."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    iterations: int = 0
    trades_seen: int = 0
    trades_buffered: int = 0
    trades_completed: int = 0
    groups_executed: int = 0
    orders_placed: int = 0
    orders_failed: int = 0
    rejections: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "runtime_seconds": (datetime.now(timezone.utc) - self.started_at).total_seconds(),
            "iterations": self.iterations,
            "trades_seen": self.trades_seen,
            "trades_buffered": self.trades_buffered,
            "trades_completed": self.trades_completed,
            "groups_executed": self.groups_executed,
            "orders_placed": self.orders_placed,
            "orders_failed": self.orders_failed,
            "rejections": self.rejections,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class PipelineLoop:
    """
    Polls the trade store and drives trades through the engine.

    Args:
        config: relay configuration
        store: trade store and execution ledger
        aggregator: aggregation buffer owned by this loop
        engine: execution engine
        followers: wallets to copy into (defaults to config.followers)
        positions_client: closed together with the loop
    """

    def __init__(
        self,
        config: CopyRelayConfig,
        store: CopyRelayStore,
        aggregator: TradeAggregator,
        engine: ExecutionEngine,
        followers: Optional[List[Follower]] = None,
        positions_client: Optional[PositionsClient] = None,
    ):
        self.config = config
        self.store = store
        self.aggregator = aggregator
        self.engine = engine
        self.followers = list(followers if followers is not None else config.followers)
        self._positions_client = positions_client

        self._stopping = False
        self._wakeup = asyncio.Event()
        self._stats = PipelineStats()

    @property
    def stats(self) -> PipelineStats:
        return self._stats

    @property
    def stopping(self) -> bool:
        return self._stopping

    def stop(self) -> None:
        """Request shutdown. The current trade finishes first."""
        if not self._stopping:
            logger.info("Stop requested")
        self._stopping = True
        self._wakeup.set()

    async def run(self, max_iterations: Optional[int] = None) -> None:
        """
        Main run loop.

        Args:
            max_iterations: Max iterations (None = until stop())
        """
        self._stats = PipelineStats()

        logger.info("=" * 60)
        logger.info("COPY RELAY EXECUTOR STARTING")
        logger.info("=" * 60)
        logger.info(self.config.describe())
        logger.info(f"Followers: {[f.short for f in self.followers]}")
        logger.info("=" * 60)

        try:
            released = self.store.release_buffered()
            if released:
                logger.info(f"Released {released} buffered trade(s) from a previous run")
        except Exception as e:
            log_error(e, "Releasing buffered trades")

        iteration = 0
        while not self._stopping:
            iteration += 1
            try:
                await self.run_iteration()
                self._stats.iterations += 1
            except asyncio.CancelledError:
                logger.info("Pipeline cancelled")
                raise
            except Exception as e:
                self._stats.errors += 1
                logger.error(f"Iteration error: {e}", exc_info=True)

            if max_iterations and iteration >= max_iterations:
                logger.info(f"Max iterations ({max_iterations}) reached")
                break
            if self._stopping:
                break

            try:
                await asyncio.wait_for(
                    self._wakeup.wait(), timeout=self.config.poll_interval_seconds
                )
            except asyncio.TimeoutError:
                pass

        if self.aggregator.size():
            logger.warning(
                f"Stopping with {len(self.aggregator.pending_trade_ids())} buffered trade(s); "
                "they return to PENDING on next start"
            )
        logger.info("Copy relay executor stopped")
        logger.info(f"Final stats: {self._stats.to_dict()}")

    async def run_iteration(self) -> None:
        """Run a single iteration."""
        if self._stopping:
            return

        if self.engine.unrecorded:
            self.engine.flush_unrecorded()

        trades = self.store.get_pending_trades(self.config.trader_addresses)
        if trades:
            logger.debug(f"{len(trades)} pending trade(s)")
        self._stats.trades_seen += len(trades)

        for trade in trades:
            if self._stopping:
                return
            try:
                if self.config.aggregation_enabled and self.aggregator.is_eligible(
                    trade, self.config.min_order_size_usd
                ):
                    self._buffer(trade)
                else:
                    await self._process_immediate(trade)
            except Exception as e:
                self._stats.errors += 1
                log_error(e, f"Processing trade {trade.id}")

        if self._stopping or not self.config.aggregation_enabled:
            return

        skipped_before = self.aggregator.skipped_trades
        ready = self.aggregator.collect_ready(
            self.config.aggregation_window_seconds, self.config.min_order_size_usd
        )
        self._stats.skipped += self.aggregator.skipped_trades - skipped_before

        for group in ready:
            try:
                await self._process_group(group)
            except Exception as e:
                self._stats.errors += 1
                log_error(e, f"Processing aggregation group {group.trade_ids}")
                self._release(group)

    def _buffer(self, trade: SourceTrade) -> None:
        if self.engine.use_ledger and self.store.count_executions(
            trade.source_address, trade.id
        ) >= len(self.followers):
            self._complete_if_done(trade, TradeStatus.PENDING)
            return
        if not self.store.transition(trade.id, TradeStatus.PENDING, TradeStatus.BUFFERED):
            logger.debug(f"Trade {trade.id} no longer pending, not buffering")
            return
        self.aggregator.add(trade)
        self._stats.trades_buffered += 1

    async def _process_immediate(self, trade: SourceTrade) -> None:
        if not self.engine.use_ledger:
            outcome = await self.engine.execute_single(trade, self.followers[0])
            self._count(outcome)
            return

        executed = self.store.executed_followers(
            trade.source_address, trade.id
        ) | self.engine.held_followers(trade)
        for follower in self.followers:
            if follower.address in executed:
                continue
            outcome = await self.engine.execute_single(trade, follower)
            self._count(outcome)

        self._complete_if_done(trade, TradeStatus.PENDING)

    async def _process_group(self, group: AggregationGroup) -> None:
        self._stats.groups_executed += 1

        if not self.engine.use_ledger:
            outcome = await self.engine.execute_aggregated(group, self.followers[0])
            self._count(outcome)
            return

        executed = {
            t.id: self.store.executed_followers(t.source_address, t.id)
            | self.engine.held_followers(t)
            for t in group.trades
        }
        for follower in self.followers:
            missing = [t for t in group.trades if follower.address not in executed[t.id]]
            if not missing:
                continue
            target = group if len(missing) == len(group.trades) else group.subset(missing)
            outcome = await self.engine.execute_aggregated(target, follower)
            self._count(outcome)

        for trade in group.trades:
            try:
                if not self._complete_if_done(trade, TradeStatus.BUFFERED):
                    self.store.transition(trade.id, TradeStatus.BUFFERED, TradeStatus.PENDING)
            except Exception as e:
                self._stats.errors += 1
                log_error(e, f"Finishing aggregated trade {trade.id}")

    def _complete_if_done(self, trade: SourceTrade, from_status: TradeStatus) -> bool:
        """Mark DONE when every follower has a ledger entry."""
        count = self.store.count_executions(trade.source_address, trade.id)
        if count < len(self.followers):
            logger.info(
                f"Trade {trade.id} has {count}/{len(self.followers)} executions, retrying next iteration"
            )
            return False
        if self.store.transition(trade.id, from_status, TradeStatus.DONE):
            self._stats.trades_completed += 1
        return True

    def _release(self, group: AggregationGroup) -> None:
        for trade in group.trades:
            try:
                self.store.transition(trade.id, TradeStatus.BUFFERED, TradeStatus.PENDING)
            except Exception as e:
                log_error(e, f"Releasing buffered trade {trade.id}")

    def _count(self, outcome: ExecutionOutcome) -> None:
        if outcome.state == PairState.REJECTED:
            self._stats.rejections += 1
        elif outcome.state in (PairState.EXECUTING, PairState.RECORDED_SUCCESS, PairState.RECORDED_FAILURE):
            if outcome.success:
                self._stats.orders_placed += 1
            else:
                self._stats.orders_failed += 1

    async def close(self) -> None:
        if self._positions_client is not None:
            await self._positions_client.close()


def create_pipeline(
    config: CopyRelayConfig,
    gateway: Optional[OrderGateway] = None,
    positions_client=None,
    store: Optional[CopyRelayStore] = None,
) -> PipelineLoop:
    """
    Wire up a pipeline from configuration.

    Builds the store, breaker registry, alerts, validator, engine and
    aggregation buffer. The live CLOB gateway is used unless one is given.
    """
    store = store or CopyRelayStore(config.db_path)
    breakers = BreakerRegistry()
    alerts = AlertService(
        AlertConfig(
            bot_token=config.telegram_bot_token,
            chat_id=config.telegram_chat_id,
        )
    )
    breakers.add_listener(alerts.notify_breaker_transition)

    if gateway is None:
        if config.preview_mode:
            logger.info("Preview mode - orders will be recorded, not placed")
        else:
            logger.warning("🔴 LIVE GATEWAY ENABLED - Real orders will be placed!")
        gateway = ClobOrderGateway(host=config.clob_http_url, chain_id=config.chain_id)

    owned_client = None
    if positions_client is None:
        positions_client = PositionsClient(
            data_api_url=config.data_api_url,
            timeout_seconds=config.request_timeout_seconds,
        )
        owned_client = positions_client

    validator = OrderValidator(positions_client, gateway, breakers)
    engine = ExecutionEngine(
        store=store,
        validator=validator,
        gateway=gateway,
        preview=config.preview_mode,
        use_ledger=config.use_ledger,
        alerts=alerts,
    )
    aggregator = TradeAggregator(store=store)

    return PipelineLoop(
        config=config,
        store=store,
        aggregator=aggregator,
        engine=engine,
        positions_client=owned_client,
    )
