"""Pydantic BaseSettings — on-chain amounts as int (wei), durations as seconds."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RelayerEntry(BaseModel):
    """One relay endpoint as written in env (``RELAY_FALLBACKS`` JSON list)."""

    url: str
    address: str


class Settings(BaseSettings):
    """Central configuration loaded from env / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ─────────────────────────────────────────────
    APP_ENV: Literal["dev", "paper", "prod"] = "dev"
    APP_NAME: str = "metatx-relay"
    LOG_LEVEL: str = "INFO"

    # ── Chain ───────────────────────────────────────────────────
    CHAIN_ID: int = 137
    RPC_URL: str = "http://localhost:8545"
    FORWARDER_ADDRESS: str = ""
    POOL_ADDRESS: str = ""
    SWAP_ROUTER_ADDRESS: str = ""
    WRAPPED_NATIVE_ADDRESS: str = ""
    FEE_TOKEN_ADDRESS: str = ""

    # ── Fees ────────────────────────────────────────────────────
    FORWARDER_OVERHEAD_GAS: int = Field(default=50_000, ge=0)
    SWAP_OVERHEAD_GAS: int = Field(default=120_000, ge=0)
    POOL_FEE_NUMERATOR: int = Field(default=997, gt=0)
    POOL_FEE_DENOMINATOR: int = Field(default=1000, gt=0)
    QUOTE_FRESHNESS_SECONDS: float = Field(default=30.0, gt=0)
    SWAP_FEES_TO_NATIVE: bool = False
    SWAP_SLIPPAGE_BPS: int = Field(default=100, ge=0, le=10_000)

    # ── Relay failover (client side) ────────────────────────────
    RELAY_PRIMARY_URL: str = "http://localhost:8600"
    RELAY_PRIMARY_ADDRESS: str = ""
    RELAY_FALLBACKS: list[RelayerEntry] = Field(default_factory=list)
    RELAY_TIMEOUT_SECONDS: float = Field(default=180.0, gt=0)
    CONFIRMATION_POLL_SECONDS: float = Field(default=2.0, gt=0)
    MAX_SUBMISSION_RETRIES: int = Field(default=2, ge=0)

    # ── Relay service (transactor side) ─────────────────────────
    RELAY_HOST: str = "0.0.0.0"
    RELAY_PORT: int = 8600
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # ── Paper ledger (APP_ENV != prod) ──────────────────────────
    PAPER_RESERVE_NATIVE: int = Field(default=1_000 * 10**18, ge=0)
    PAPER_RESERVE_TOKEN: int = Field(default=2_000_000 * 10**18, ge=0)
    PAPER_GAS_PRICE_WEI: int = Field(default=30 * 10**9, gt=0)

    # ── Credentials (never commit real values) ──────────────────
    TRANSACTOR_KEYSTORE_PATH: str = ""
    TRANSACTOR_KEYSTORE_PASSWORD: str = ""
    TRANSACTOR_PRIVATE_KEY: str = ""


settings = Settings()
