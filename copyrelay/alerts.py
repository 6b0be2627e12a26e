"""
Alert system for copy relay notifications.

Every alert is logged. When Telegram credentials are configured, alerts are
also sent to the chat. Delivery failure is logged but doesn't block
operations.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from copyrelay.breaker import BreakerState, BreakerTransition

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


@dataclass
class AlertConfig:
    """Telegram alert configuration."""

    enabled: bool = True
    bot_token: Optional[str] = None
    chat_id: Optional[str] = None
    timeout_seconds: float = 5.0

    @property
    def has_telegram(self) -> bool:
        return bool(self.bot_token and self.chat_id)


class AlertService:
    """Sends notifications for copy events and breaker trips."""

    def __init__(self, config: AlertConfig, client: Optional[httpx.Client] = None):
        """
        Initialize alert service.

        Args:
            config: Telegram configuration
            client: optional HTTP client (tests)
        """
        self.config = config
        self._client = client
        self.sent_count = 0

        if config.enabled and not config.has_telegram:
            logger.info("Telegram credentials not set. Alerts will be logged only.")

    def notify_trade_copied(
        self,
        market: str,
        side: str,
        amount: float,
        price: float,
        follower: str,
        preview: bool = False,
    ):
        """
        Alert: trade copied into a follower wallet.

        Args:
            market: Market label
            side: BUY or SELL
            amount: USDC (BUY) or shares (SELL)
            price: Source price
            follower: Follower label
            preview: Order was simulated
        """
        title = "👀 TRADE PREVIEWED" if preview else "✅ TRADE COPIED"
        message = f"""
{title}

Market: {market}
Side: {side.upper()}
Amount: {amount:.2f}
Price: ${price:.4f}
Follower: {follower}
        """.strip()

        self._send(message)

    def notify_trade_rejected(
        self, market: str, side: str, amount: float, follower: str, reason: str
    ):
        """Alert: trade rejected by validation."""
        message = f"""
⛔ TRADE REJECTED

Market: {market}
Side: {side.upper()}
Size: ${amount:.2f}
Follower: {follower}
Reason: {reason}
        """.strip()

        self._send(message)

    def notify_order_failed(
        self, market: str, side: str, amount: float, follower: str, error: str
    ):
        message = f"""
❌ ORDER FAILED

Market: {market}
Side: {side.upper()}
Amount: {amount:.2f}
Follower: {follower}
Error: {error}
        """.strip()

        self._send(message)

    def notify_breaker_transition(self, event: BreakerTransition):
        """
        Alert: circuit breaker changed state.

        Opening is urgent: the guarded API is failing and copies are paused.
        """
        urgent = event.new_state == BreakerState.OPEN
        message = f"""
⚡ CIRCUIT {event.new_state.value}

Breaker: {event.name}
From: {event.old_state.value}
Failures: {event.failure_count}
Reason: {event.reason or '-'}
        """.strip()

        self._send(message, urgent=urgent)

    def _send(self, message: str, urgent: bool = False):
        """
        Send alert message.

        Note: Delivery failure is logged but doesn't raise.
        """
        prefix = "🚨 URGENT: " if urgent else ""
        full_message = prefix + message

        # Log locally
        log_level = logging.CRITICAL if urgent else logging.INFO
        logger.log(log_level, f"ALERT: {full_message}")

        if not self.config.enabled or not self.config.has_telegram:
            return

        url = f"{TELEGRAM_API_URL}/bot{self.config.bot_token}/sendMessage"
        payload = {"chat_id": self.config.chat_id, "text": full_message}
        try:
            if self._client is not None:
                response = self._client.post(url, json=payload)
            else:
                response = httpx.post(url, json=payload, timeout=self.config.timeout_seconds)
            response.raise_for_status()
            self.sent_count += 1
        except httpx.HTTPError as e:
            # Don't raise - alert delivery failure doesn't block operations
            logger.error(f"Failed to send Telegram alert: {e}")
