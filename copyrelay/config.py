"""
Copy relay configuration.

Loaded from environment variables (and a .env file via python-dotenv).
Defaults follow the production copy-trading bot:
- Copy every tracked account into every follower wallet
- Execution ledger on (mandatory with more than one follower)
- Aggregation of sub-$1 BUY trades off, 300s window when enabled
- Poll the trade store every 300ms
"""

import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from copyrelay.errors import CopyRelayError, ErrorKind
from copyrelay.schema import Follower, normalize_address

TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in TRUE_VALUES


def _split_list(raw: str) -> List[str]:
    """Comma separated list, also accepting a JSON-style ["a", "b"] array."""
    raw = raw.strip()
    if raw.startswith("[") and raw.endswith("]"):
        raw = raw[1:-1]
    return [item.strip().strip("'\"") for item in raw.split(",") if item.strip().strip("'\"")]


def parse_followers(raw: str, default_signature_type: int = 0) -> List[Follower]:
    """
    Parse FOLLOWER_WALLETS.

    Format: "address:private_key[:signature_type]", comma separated.
    """
    followers = []
    for index, entry in enumerate(_split_list(raw)):
        parts = [p.strip() for p in entry.split(":")]
        if len(parts) not in (2, 3) or not all(parts):
            raise ValueError(
                f"FOLLOWER_WALLETS entry #{index + 1} must be address:private_key[:signature_type]"
            )
        signature_type = int(parts[2]) if len(parts) == 3 else default_signature_type
        followers.append(
            Follower(
                address=parts[0],
                private_key=parts[1],
                signature_type=signature_type,
                label=f"follower-{index + 1}",
            )
        )
    return followers


class CopyRelayConfig(BaseModel):
    """Runtime settings for the executor process."""

    # Accounts
    trader_addresses: List[str] = Field(
        ..., min_length=1, description="Tracked (source) accounts to copy"
    )
    followers: List[Follower] = Field(
        ..., min_length=1, description="Follower wallets receiving copied orders"
    )

    # Aggregation
    aggregation_enabled: bool = Field(
        False, description="Merge sub-minimum BUY trades before copying"
    )
    aggregation_window_seconds: float = Field(
        300.0, gt=0, description="How long a group collects trades before flushing"
    )
    min_order_size_usd: float = Field(
        1.0, gt=0, description="Venue minimum order notional in USD"
    )

    # Execution
    preview_mode: bool = Field(
        False, description="Record intended orders without placing them"
    )
    use_ledger: bool = Field(
        True, description="Track per-follower executions in the ledger"
    )
    poll_interval_seconds: float = Field(
        0.3, gt=0, description="Sleep between pipeline iterations"
    )

    # Endpoints
    clob_http_url: str = Field("https://clob.polymarket.com")
    data_api_url: str = Field("https://data-api.polymarket.com")
    chain_id: int = Field(137, description="Polygon mainnet")
    request_timeout_seconds: float = Field(10.0, gt=0)

    # Storage
    db_path: str = Field("copyrelay.db", description="SQLite database path")

    # Telegram alerts
    telegram_bot_token: Optional[str] = Field(
        None, description="Telegram bot token for alerts"
    )
    telegram_chat_id: Optional[str] = Field(
        None, description="Telegram chat ID for alerts"
    )

    log_level: str = Field("INFO")

    @field_validator("trader_addresses")
    @classmethod
    def validate_trader_addresses(cls, v: List[str]) -> List[str]:
        addresses = [normalize_address(a) for a in v]
        if len(set(addresses)) != len(addresses):
            raise ValueError("Duplicate tracked account in USER_ADDRESSES")
        return addresses

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_followers(self) -> "CopyRelayConfig":
        addresses = [f.address for f in self.followers]
        if len(set(addresses)) != len(addresses):
            raise ValueError("Duplicate follower address")
        if len(self.followers) > 1 and not self.use_ledger:
            raise ValueError("The execution ledger is required with more than one follower")
        return self

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "CopyRelayConfig":
        """
        Load config from environment variables.

        Raises:
            CopyRelayError(CONFIGURATION) on missing or invalid settings
        """
        load_dotenv(env_file)

        traders_raw = os.getenv("USER_ADDRESSES", "")
        if not traders_raw.strip():
            raise CopyRelayError(
                ErrorKind.CONFIGURATION,
                "USER_ADDRESSES is required: comma separated list of accounts to copy",
            )

        try:
            default_sig = int(os.getenv("SIGNATURE_TYPE", "0"))
            followers_raw = os.getenv("FOLLOWER_WALLETS", "")
            if followers_raw.strip():
                followers = parse_followers(followers_raw, default_sig)
            else:
                # Single wallet setup
                proxy_wallet = os.getenv("PROXY_WALLET")
                private_key = os.getenv("PRIVATE_KEY")
                if not proxy_wallet or not private_key:
                    raise CopyRelayError(
                        ErrorKind.CONFIGURATION,
                        "Set FOLLOWER_WALLETS, or PROXY_WALLET and PRIVATE_KEY",
                    )
                followers = [
                    Follower(
                        address=proxy_wallet,
                        private_key=private_key,
                        signature_type=default_sig,
                    )
                ]

            return cls(
                trader_addresses=_split_list(traders_raw),
                followers=followers,
                aggregation_enabled=_env_flag("TRADE_AGGREGATION_ENABLED", False),
                aggregation_window_seconds=float(
                    os.getenv("TRADE_AGGREGATION_WINDOW_SECONDS", "300")
                ),
                preview_mode=_env_flag("PREVIEW_MODE", False),
                use_ledger=_env_flag("COPY_LEDGER_ENABLED", True),
                poll_interval_seconds=float(os.getenv("FETCH_INTERVAL_MS", "300")) / 1000.0,
                clob_http_url=os.getenv("CLOB_HTTP_URL", "https://clob.polymarket.com"),
                data_api_url=os.getenv("DATA_API_URL", "https://data-api.polymarket.com"),
                request_timeout_seconds=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10")),
                db_path=os.getenv("DB_PATH", "copyrelay.db"),
                telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
                telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID"),
                log_level=os.getenv("LOG_LEVEL", "INFO"),
            )
        except (ValueError, ValidationError) as e:
            raise CopyRelayError(ErrorKind.CONFIGURATION, f"Invalid configuration: {e}") from e

    def describe(self) -> str:
        """One-line summary for startup logs. Never includes keys."""
        mode = "PREVIEW" if self.preview_mode else "LIVE"
        aggregation = (
            f"on ({self.aggregation_window_seconds:.0f}s)" if self.aggregation_enabled else "off"
        )
        return (
            f"mode={mode} traders={len(self.trader_addresses)} "
            f"followers={len(self.followers)} ledger={'on' if self.use_ledger else 'off'} "
            f"aggregation={aggregation} poll={self.poll_interval_seconds}s"
        )
