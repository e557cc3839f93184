"""Application configuration using pydantic-settings."""

import os
import socket
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_instance_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class Settings(BaseSettings):
    """Resolver settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/resolver.db",
        description="Database connection URL",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug logging")
    dry_run: bool = Field(
        default=True, description="Use simulated chain clients (no real transactions)"
    )

    # ======================
    # Resolver identity
    # ======================
    resolver_address: str = Field(default="", description="Resolver (taker) address")
    instance_id: str = Field(
        default_factory=_default_instance_id,
        description="Unique id of this process, used for the resolver lease",
    )
    lease_ttl_seconds: int = Field(default=60, description="Resolver lease time-to-live")

    # ======================
    # Chains
    # ======================
    chain_ids: list[int] = Field(
        default_factory=lambda: [8453, 10], description="Chains this resolver serves"
    )

    # ======================
    # Polling / retries
    # ======================
    polling_interval: float = Field(default=10.0, description="Seconds between ticks")
    max_retries: int = Field(default=3, ge=1, description="Retry budget per swap and per withdrawal")
    retry_backoff_seconds: float = Field(
        default=1.0, description="Backoff base; attempt n waits 2**n * base seconds"
    )

    # ======================
    # Order intake
    # ======================
    min_profit_bps: int = Field(default=0, description="Minimum profit in basis points")
    pending_orders_dir: Path = Field(
        default=Path("./pending-orders"), description="Queue of signed orders to fill"
    )
    completed_orders_dir: Path = Field(
        default=Path("./completed-orders"), description="Filled order documents"
    )
    auto_approve: bool = Field(default=True, description="Approve token spend before fills")
    auto_create_dst_escrow: bool = Field(
        default=True, description="Create and fund destination escrows after fills"
    )
    auto_withdraw_on_reveal: bool = Field(
        default=True, description="Withdraw escrows as soon as a secret is known"
    )

    # ======================
    # Secrets
    # ======================
    secrets_dir: Optional[Path] = Field(
        default=Path("./data/secrets"), description="JSON mirror of secret records"
    )

    # ======================
    # Indexer
    # ======================
    indexer_url: str = Field(default="", description="Swap indexer SQL-over-HTTP base URL")
    indexer_timeout: float = Field(default=10.0, description="Indexer request timeout")

    # ======================
    # Expiry
    # ======================
    swap_timeout_seconds: int = Field(
        default=3600, description="Expire swaps without timelocks after this age"
    )
    stuck_swap_seconds: int = Field(
        default=600, description="Warn about swaps that have not moved for this long"
    )
    archive_after_seconds: int = Field(
        default=7 * 24 * 3600, description="Archive terminal swaps untouched for this long"
    )
    archive_every_ticks: int = Field(
        default=360, ge=1, description="Ticks between archive passes"
    )

    # ======================
    # Status API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="Status API host")
    api_port: int = Field(default=8002, description="Status API port")

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "database_url": self._redact_url(self.database_url),
            "resolver_address": self.resolver_address or "(not set)",
            "instance_id": self.instance_id,
            "chain_ids": self.chain_ids,
            "polling_interval": self.polling_interval,
            "max_retries": self.max_retries,
            "min_profit_bps": self.min_profit_bps,
            "indexer": self._redact_url(self.indexer_url) if self.indexer_url else "(not set)",
            "automation": {
                "auto_approve": self.auto_approve,
                "auto_create_dst_escrow": self.auto_create_dst_escrow,
                "auto_withdraw_on_reveal": self.auto_withdraw_on_reveal,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of a URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
