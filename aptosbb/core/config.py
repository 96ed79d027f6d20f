"""Core configuration for the AptosBB harness."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Harness settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="APTOSBB_",
        case_sensitive=False,
        populate_by_name=True,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "AptosBB"
    app_env: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"

    # ── Remote node ──────────────────────────────────────────────────────
    network: Literal["mainnet", "testnet", "devnet", "local"] = "mainnet"
    node_url: str = ""  # overrides the network's default fullnode URL
    api_key: str = Field(default="", validation_alias="APTOSBB_KEY")
    connect_timeout_seconds: float = 30.0
    request_timeout_seconds: float = 30.0

    # ── Execution ────────────────────────────────────────────────────────
    default_account_balance: int = 1_000_000_000_000
    strict_accounts: bool = False

    # ── Move toolchain ───────────────────────────────────────────────────
    aptos_cli_path: str = "aptos"
    build_timeout_seconds: int = 300


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
