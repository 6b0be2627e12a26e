"""
Health checks for the copy relay.

Validates that all components are ready before the executor starts:
- Tracked accounts and follower wallets configured
- Storage backend reachable
- Follower balances readable (and above the venue minimum)
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from copyrelay.config import CopyRelayConfig
from copyrelay.schema import short_address
from copyrelay.storage import CopyRelayStore

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckResult:
    """Result of a health check"""

    name: str
    passed: bool
    message: str
    critical: bool = True  # If False, failure is a warning not an error


class HealthChecker:
    """Performs health checks before copying starts."""

    def __init__(
        self,
        config: CopyRelayConfig,
        store: Optional[CopyRelayStore] = None,
        gateway=None,
    ):
        self.config = config
        self.store = store
        self.gateway = gateway

    async def run_all_checks(self) -> List[HealthCheckResult]:
        """Run all health checks and return results"""
        results = [self._check_traders(), self._check_followers()]

        if self.store:
            results.append(self._check_storage())

        if self.gateway:
            for follower in self.config.followers:
                results.append(await self._check_balance(follower))

        for result in results:
            level = logging.INFO if result.passed else (
                logging.ERROR if result.critical else logging.WARNING
            )
            logger.log(level, f"Health check {result.name}: {result.message}")

        return results

    def _check_traders(self) -> HealthCheckResult:
        traders = self.config.trader_addresses
        return HealthCheckResult(
            name="Tracked Accounts",
            passed=True,
            message=f"{len(traders)} account(s): "
            + ", ".join(short_address(a) for a in traders[:3])
            + (" ..." if len(traders) > 3 else ""),
        )

    def _check_followers(self) -> HealthCheckResult:
        followers = self.config.followers
        if len(followers) > 1 and not self.config.use_ledger:
            return HealthCheckResult(
                name="Follower Wallets",
                passed=False,
                message="Multiple followers require COPY_LEDGER_ENABLED=true",
            )
        return HealthCheckResult(
            name="Follower Wallets",
            passed=True,
            message=f"{len(followers)} wallet(s): " + ", ".join(f.short for f in followers),
        )

    def _check_storage(self) -> HealthCheckResult:
        """Verify storage backend is working"""
        try:
            stats = self.store.get_stats()
            pending = stats["trade_stats"].get("PENDING", 0)
            return HealthCheckResult(
                name="Storage Backend",
                passed=True,
                message=f"SQLite DB ready ({pending} pending trade(s))",
            )
        except Exception as e:
            return HealthCheckResult(
                name="Storage Backend",
                passed=False,
                message=f"Storage error: {e}",
            )

    async def _check_balance(self, follower) -> HealthCheckResult:
        name = f"Balance {follower.short}"
        try:
            balance = await self.gateway.get_balance(follower)
        except Exception as e:
            return HealthCheckResult(
                name=name,
                passed=False,
                message=f"Balance check error: {e}",
            )

        if balance < self.config.min_order_size_usd:
            return HealthCheckResult(
                name=name,
                passed=False,
                message=f"Low balance: ${balance:.2f} "
                f"(min ${self.config.min_order_size_usd:.2f} per order)",
                critical=False,
            )
        return HealthCheckResult(name=name, passed=True, message=f"Balance: ${balance:.2f}")


def all_critical_passed(results: List[HealthCheckResult]) -> bool:
    return all(r.passed or not r.critical for r in results)
