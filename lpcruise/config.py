from __future__ import annotations

from decimal import Decimal
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Service ───────────────────────────────────────────────────────────────
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8400
    sqlite_path: Path = Path("./data/lpcruise.db")
    # Optional JSON list of {"agent_id": ..., "config": {...}} registered on boot
    agents_file: Path | None = None

    # ── Chain & collaborators ─────────────────────────────────────────────────
    # mainnet-beta RPC: https://api.mainnet-beta.solana.com
    rpc_url: str = "https://api.devnet.solana.com"
    positions_api_url: str = "http://localhost:8500/positions"
    builder_url: str = "http://localhost:8500/build"
    signer_url: str = "http://localhost:8600/sign"
    recommendations_url: str = "http://localhost:8700/pools/recommended"
    http_timeout_seconds: float = 15.0

    # ── Funds policy ──────────────────────────────────────────────────────────
    funds_cache_ttl_seconds: int = 300
    single_tx_limit_pct: Decimal = Decimal("0.30")
    daily_limit_pct: Decimal = Decimal("0.70")
    emergency_reserve: Decimal = Decimal("0.05")
    ledger_size: int = 1000

    # ── Transactions ──────────────────────────────────────────────────────────
    tx_max_retries: int = 3
    tx_retry_delays_seconds: list[float] = Field(default_factory=lambda: [5.0, 15.0, 30.0])
    tx_confirmations: int = 1
    emergency_exit_max_retries: int = 5

    # ── Risk control ──────────────────────────────────────────────────────────
    risk_check_interval_seconds: int = 300
    high_risk_window_seconds: int = 300
    medium_risk_window_seconds: int = 600
    partial_reduction_pct: float = 0.30
    risk_history_size: int = 100
    state_timeout_minutes: int = 30
    recovery_health_score: float = 3.0
    max_recovery_attempts: int = 3

    # ── Cruise defaults ───────────────────────────────────────────────────────
    scheduler_tick_seconds: float = 1.0
    health_check_interval_minutes: int = 30
    market_check_interval_minutes: int = 15
    optimization_interval_hours: int = 24
    default_max_positions: int = 5
    min_pool_health_score: float = 3.0

    @field_validator("sqlite_path", mode="before")
    @classmethod
    def expand_sqlite_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser()

    @field_validator("agents_file", mode="before")
    @classmethod
    def expand_agents_file(cls, v: str | Path | None) -> Path | None:
        if v is None or v == "":
            return None
        return Path(v).expanduser()

    @field_validator("tx_retry_delays_seconds")
    @classmethod
    def non_empty_ladder(cls, v: list[float]) -> list[float]:
        if not v:
            raise ValueError("tx_retry_delays_seconds needs at least one delay")
        return v

    @property
    def is_devnet(self) -> bool:
        return "devnet" in self.rpc_url or "testnet" in self.rpc_url


# Shared instance; components fall back to it when no override is given
settings = Settings()
