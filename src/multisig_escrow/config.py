"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup; if a required setting is missing, the app fails fast with a
clear error message.

Usage:
    from multisig_escrow.config import get_settings
    settings = get_settings()
    print(settings.database_url)
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the multisig escrow engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    scheduler_enabled: bool = True

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://escrow:escrow_dev"
        "@localhost:5432/multisig_escrow"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_idempotency_ttl_seconds: int = 86400  # 24 hours
    redis_notification_channel: str = "deal-events"

    # --- Ledger ---
    ledger_backend: Literal["tron", "simulated"] = "simulated"
    tron_network: str = "mainnet"
    tron_api_key: str = ""
    tron_usdt_contract: str = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"
    tron_fee_limit_sun: int = 100_000_000
    tron_confirmation_timeout_seconds: int = 60
    explorer_tx_url: str = "https://tronscan.org/#/transaction/{tx_hash}"
    native_asset: str = "TRX"

    # --- Custody ---
    # Fernet key (urlsafe base64, 32 bytes). Required outside development.
    wallet_encryption_key: str = ""
    service_wallet_address: str = ""
    service_wallet_private_key: str = ""
    arbiter_address: str = ""
    # Comma-separated identities allowed to resolve disputes.
    arbiter_ids: str = ""
    support_contact: str = "@escrow_support"

    # --- Deal rules ---
    min_deal_amount: Decimal = Decimal("50")
    commission_threshold: Decimal = Decimal("300")
    commission_flat: Decimal = Decimal("15")
    commission_rate: Decimal = Decimal("0.05")
    deposit_tolerance: Decimal = Decimal("0")
    supported_assets: str = "USDT"
    single_active_deal_per_party: bool = True

    # --- Deposit monitor ---
    deposit_check_interval_seconds: int = 30
    deposit_batch_size: int = 8
    deposit_alert_threshold: int = 5

    # --- Deadline monitor ---
    deadline_check_interval_seconds: int = 300
    deadline_batch_size: int = 5
    deadline_refund_grace_hours: float = 12
    deadline_release_grace_hours: float = 6

    # --- Key validation gate ---
    key_session_ttl_hours: float = 24
    key_attempts_before_hint: int = 3

    # --- Resource market ---
    resource_market_enabled: bool = False
    resource_market_url: str = "https://api.feesaver.com"
    resource_market_api_key: str = ""
    resource_rental_duration: str = "1h"
    resource_market_min_balance: Decimal = Decimal("10")
    resource_rental_attempts: int = 3
    resource_rental_retry_wait_seconds: float = 5
    resource_delegation_wait_seconds: float = 10

    # --- Energy estimation ---
    energy_multiplier: Decimal = Decimal("1.1")
    energy_reserve: int = 5000
    energy_default_principal: int = 145_000
    energy_default_commission: int = 72_000
    energy_min_for_transfer: int = 65_000

    # --- Fallback funding ---
    fallback_topup_amount: Decimal = Decimal("30")
    native_tx_fee: Decimal = Decimal("1.1")
    sweep_reserve: Decimal = Decimal("1.1")
    sweep_min_return: Decimal = Decimal("0.5")
    activation_amount: Decimal = Decimal("1")
    transfer_settle_seconds: float = 3

    # --- Reconciliation & housekeeping ---
    reconciliation_interval_seconds: int = 600
    reconciliation_max_attempts: int = 5
    session_purge_interval_seconds: int = 3600

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def arbiter_id_list(self) -> list[str]:
        """Parse comma-separated arbiter identities into a list."""
        if not self.arbiter_ids:
            return []
        return [a.strip() for a in self.arbiter_ids.split(",") if a.strip()]

    @property
    def supported_asset_list(self) -> list[str]:
        return [a.strip().upper() for a in self.supported_assets.split(",") if a.strip()]

    @property
    def sync_database_url(self) -> str:
        """Synchronous database URL for Alembic migrations."""
        return self.database_url.replace("+asyncpg", "+psycopg2")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
