"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
raffle trade tracker, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL (or sqlite+aiosqlite) connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class SuiSettings(BaseSettings):
    """Sui full node JSON-RPC settings."""

    model_config = SettingsConfigDict(env_prefix="SUI_", extra="ignore")

    rpc_url: str = Field(
        default="https://fullnode.mainnet.sui.io:443",
        alias="SUI_RPC_URL",
        description="Sui full node JSON-RPC endpoint",
    )
    event_page_limit: int = Field(
        default=50,
        alias="SUI_EVENT_PAGE_LIMIT",
        ge=1,
        le=1000,
        description="Transfer events fetched per native-chain poll",
    )

    @field_validator("rpc_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate RPC URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("SUI_RPC_URL must be an HTTP(S) endpoint")
        return v


class BlockberrySettings(BaseSettings):
    """Blockberry indexer API settings."""

    model_config = SettingsConfigDict(env_prefix="BLOCKBERRY_", extra="ignore")

    api_key: SecretStr | None = Field(
        default=None,
        alias="BLOCKBERRY_API_KEY",
        description="Blockberry API key (indexer source is disabled without it)",
    )
    api_url: str = Field(
        default="https://api.blockberry.one/v1/sui",
        alias="BLOCKBERRY_API_URL",
        description="Blockberry API base URL",
    )
    trades_path: str = Field(
        default="defi/trades",
        alias="BLOCKBERRY_TRADES_PATH",
        description="Trades endpoint path relative to the base URL",
    )
    filter_param: str = Field(
        default="coinType",
        alias="BLOCKBERRY_TRADES_FILTER_PARAM",
        description="Query parameter used to filter trades by coin type",
    )
    order_param: str = Field(
        default="order",
        alias="BLOCKBERRY_TRADES_ORDER_PARAM",
        description="Query parameter used for sort order",
    )
    cursor_param: str = Field(
        default="cursor",
        alias="BLOCKBERRY_TRADES_CURSOR_PARAM",
        description="Query parameter used for pagination cursor",
    )
    poll_limit: int = Field(
        default=100,
        alias="BLOCKBERRY_POLL_LIMIT",
        ge=1,
        le=1000,
        description="Trades requested per indexer poll",
    )
    poll_interval_ms: int | None = Field(
        default=None,
        alias="BLOCKBERRY_POLL_INTERVAL_MS",
        ge=500,
        le=600_000,
        description="Poll interval override while the indexer source is in use",
    )
    enabled: bool = Field(
        default=True,
        alias="BLOCKBERRY_ENABLED",
        description="Allow the indexer source when an API key is present",
    )

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("BLOCKBERRY_API_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")

    @field_validator("trades_path")
    @classmethod
    def validate_trades_path(cls, v: str) -> str:
        return v.lstrip("/")

    @property
    def is_configured(self) -> bool:
        """Check if the indexer source can be used."""
        return self.enabled and self.api_key is not None and bool(self.api_key.get_secret_value())


class PollerSettings(BaseSettings):
    """Trade detector polling and failover settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    poll_interval_seconds: float = Field(
        default=10.0,
        alias="POLL_INTERVAL_SECONDS",
        ge=0.5,
        le=600.0,
        description="Interval between detector poll ticks",
    )
    raffle_refresh_interval_seconds: float = Field(
        default=30.0,
        alias="RAFFLE_REFRESH_INTERVAL_SECONDS",
        ge=1.0,
        le=3600.0,
        description="Interval between active-raffle refreshes",
    )
    failover_threshold: int = Field(
        default=3,
        alias="FAILOVER_THRESHOLD",
        ge=1,
        le=100,
        description="Consecutive indexer failures before switching to the native chain",
    )
    failover_recovery_probability: float = Field(
        default=0.1,
        alias="FAILOVER_RECOVERY_PROBABILITY",
        ge=0.0,
        le=1.0,
        description="Per-tick probability of retrying the indexer while in fallback",
    )
    seen_keys_max: int = Field(
        default=200,
        alias="SEEN_KEYS_MAX",
        ge=2,
        le=1_000_000,
        description="Seen event keys retained before compaction",
    )
    seen_keys_keep: int = Field(
        default=100,
        alias="SEEN_KEYS_KEEP",
        ge=1,
        le=1_000_000,
        description="Newest event keys kept after compaction",
    )


class TicketSettings(BaseSettings):
    """Ticket conversion settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    tickets_per_token: Decimal = Field(
        default=Decimal("100"),
        alias="TICKETS_PER_TOKEN",
        description="Tickets awarded per whole token bought",
    )

    @field_validator("tickets_per_token")
    @classmethod
    def validate_tickets_per_token(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("TICKETS_PER_TOKEN must be > 0")
        return v


class LedgerSettings(BaseSettings):
    """Ledger queue and worker settings."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_", extra="ignore")

    worker_enabled: bool = Field(
        default=True,
        alias="LEDGER_WORKER_ENABLED",
        description="Run the ticket ledger worker inside this process",
    )
    queue_prefix: str = Field(
        default="raffle:queue:",
        alias="LEDGER_QUEUE_PREFIX",
        description="Redis key prefix for work queues",
    )
    dequeue_timeout_seconds: int = Field(
        default=5,
        alias="LEDGER_DEQUEUE_TIMEOUT_SECONDS",
        ge=1,
        le=300,
        description="Blocking pop timeout for the ledger worker",
    )


class StakeSettings(BaseSettings):
    """Staking bonus detector settings."""

    model_config = SettingsConfigDict(env_prefix="STAKE_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="STAKE_ENABLED",
        description="Run the staking bonus detector",
    )
    stake_event_type: str = Field(
        default="0x8f70ad5db84e1a99b542f86ccfb1a932ca7ba010a2fa12a1504d839ff4c111c6::moonbags_stake::StakeEvent",
        alias="STAKE_EVENT_TYPE",
        description="Move event type emitted when tokens are staked",
    )
    unstake_event_type: str = Field(
        default="0x8f70ad5db84e1a99b542f86ccfb1a932ca7ba010a2fa12a1504d839ff4c111c6::moonbags_stake::UnstakeEvent",
        alias="STAKE_UNSTAKE_EVENT_TYPE",
        description="Move event type emitted when tokens are unstaked",
    )
    poll_interval_seconds: float = Field(
        default=10.0,
        alias="STAKE_POLL_INTERVAL_SECONDS",
        ge=0.5,
        le=600.0,
        description="Interval between staking event polls",
    )
    bonus_percent: int = Field(
        default=25,
        alias="STAKE_BONUS_PERCENT",
        ge=0,
        le=1000,
        description="Bonus as a percentage of buy tickets, for raffles that set none",
    )


class BroadcastSettings(BaseSettings):
    """Broadcast channel settings (consumed by the notification layer)."""

    model_config = SettingsConfigDict(env_prefix="BROADCAST_", extra="ignore")

    channel_id: str | None = Field(
        default=None,
        alias="BROADCAST_CHANNEL_ID",
        description="Telegram channel for buy broadcasts",
    )
    buys_enabled: bool = Field(
        default=True,
        alias="BROADCAST_BUYS_ENABLED",
        description="Broadcast detected buys",
    )

    @property
    def enabled(self) -> bool:
        return self.buys_enabled and bool(self.channel_id)


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from raffle_trade_tracker.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.poller.poll_interval_seconds)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    sui: SuiSettings = Field(
        default_factory=lambda: SuiSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    blockberry: BlockberrySettings = Field(
        default_factory=lambda: BlockberrySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    poller: PollerSettings = Field(
        default_factory=lambda: PollerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    tickets: TicketSettings = Field(
        default_factory=lambda: TicketSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ledger: LedgerSettings = Field(
        default_factory=lambda: LedgerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    stake: StakeSettings = Field(
        default_factory=lambda: StakeSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    broadcast: BroadcastSettings = Field(
        default_factory=lambda: BroadcastSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Detect trades without persisting records or enqueueing jobs",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def effective_poll_interval_seconds(self) -> float:
        """Poll interval, honouring the indexer-specific override when it applies."""
        if self.blockberry.is_configured and self.blockberry.poll_interval_ms is not None:
            return self.blockberry.poll_interval_ms / 1000.0
        return self.poller.poll_interval_seconds

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "sui": {
                "rpc_url": self.sui.rpc_url,
                "event_page_limit": str(self.sui.event_page_limit),
            },
            "blockberry": {
                "api_url": self.blockberry.api_url,
                "api_key": "(set)" if self.blockberry.api_key else "(not set)",
                "enabled": str(self.blockberry.enabled),
                "poll_limit": str(self.blockberry.poll_limit),
            },
            "poller": {
                "poll_interval_seconds": str(self.effective_poll_interval_seconds()),
                "failover_threshold": str(self.poller.failover_threshold),
            },
            "tickets_per_token": str(self.tickets.tickets_per_token),
            "ledger_worker_enabled": str(self.ledger.worker_enabled),
            "stake": {
                "enabled": str(self.stake.enabled),
                "poll_interval_seconds": str(self.stake.poll_interval_seconds),
                "bonus_percent": str(self.stake.bonus_percent),
            },
            "broadcast_enabled": str(self.broadcast.enabled),
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
