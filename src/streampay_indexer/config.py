"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
streaming-payments indexer, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or sqlite+aiosqlite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (block timestamp cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; block timestamp caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """EVM chain RPC and contract settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    rpc_url: str | None = Field(
        default=None,
        alias="RPC_URL",
        description="Primary JSON-RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="FALLBACK_RPC_URL",
        description="Fallback JSON-RPC endpoint",
    )
    chain_id: int = Field(
        default=1,
        alias="CHAIN_ID",
        ge=1,
        description="Chain ID of the indexed network",
    )
    contract_address: str | None = Field(
        default=None,
        alias="CONTRACT_ADDRESS",
        description="Streaming-payments contract address",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="RPC_MAX_REQUESTS_PER_SECOND",
        gt=0,
        description="Client-side RPC rate limit",
    )
    max_retries: int = Field(
        default=3,
        alias="RPC_MAX_RETRIES",
        ge=1,
        le=10,
        description="Retry attempts per RPC endpoint before failing over",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("contract_address")
    @classmethod
    def validate_contract_address(cls, v: str | None) -> str | None:
        """Validate and normalize the contract address."""
        if v is None:
            return v
        if not _ADDRESS_RE.match(v):
            raise ValueError("CONTRACT_ADDRESS must be a 0x-prefixed 20-byte hex address")
        return v.lower()


class IndexerSettings(BaseSettings):
    """Worker loop settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    start_block: int = Field(
        default=0,
        alias="START_BLOCK",
        ge=0,
        description="First block to index when no cursor exists yet",
    )
    confirmations: int = Field(
        default=12,
        alias="CONFIRMATIONS",
        ge=0,
        le=10_000,
        description="Blocks behind head treated as not yet final",
    )
    chunk_size: int = Field(
        default=1000,
        alias="CHUNK_SIZE",
        ge=1,
        le=100_000,
        description="Maximum blocks per log query",
    )
    poll_interval_ms: int = Field(
        default=5000,
        alias="POLL_INTERVAL_MS",
        ge=10,
        description="Sleep when caught up or after a failure",
    )
    audit_unknown_events: bool = Field(
        default=False,
        alias="AUDIT_UNKNOWN_EVENTS",
        description="Fetch every contract log and keep unrecognized ones in the audit trail",
    )


class WaitSettings(BaseSettings):
    """Wait gateway defaults."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    timeout_ms: int = Field(
        default=60_000,
        alias="WAIT_TIMEOUT_MS",
        ge=0,
        description="How long to wait for a transaction to be indexed",
    )
    poll_interval_ms: int = Field(
        default=2000,
        alias="WAIT_POLL_INTERVAL_MS",
        ge=10,
        description="Delay between projection polls",
    )


class Settings(BaseSettings):
    """Root application settings."""

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

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
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    wait: WaitSettings = Field(
        default_factory=lambda: WaitSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_url": self._redact_url(self.chain.rpc_url) if self.chain.rpc_url else "(not set)",
                "fallback_rpc_url": (
                    self._redact_url(self.chain.fallback_rpc_url)
                    if self.chain.fallback_rpc_url
                    else "(not set)"
                ),
                "chain_id": str(self.chain.chain_id),
                "contract_address": self.chain.contract_address or "(not set)",
            },
            "indexer": {
                "start_block": str(self.indexer.start_block),
                "confirmations": str(self.indexer.confirmations),
                "chunk_size": str(self.indexer.chunk_size),
                "poll_interval_ms": str(self.indexer.poll_interval_ms),
                "audit_unknown_events": str(self.indexer.audit_unknown_events),
            },
            "log_level": self.log_level,
        }

    def validate_requirements(
        self, *, command: Literal["run", "reset-cursor", "status", "wait", "leaderboard", "init-db"]
    ) -> None:
        """Validate command-specific requirements.

        Missing configuration for a command is fatal: the command must not
        start in a partially configured state.
        """
        if command == "run" and not self.chain.rpc_url:
            raise ValueError("RPC_URL is required to run the indexer")
        if command in ("run", "reset-cursor") and not self.chain.contract_address:
            raise ValueError("CONTRACT_ADDRESS is required to run or reset the indexer")

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

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

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
