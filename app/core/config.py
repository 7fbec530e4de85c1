from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # ─────────── APP ───────────
    app_name: str = "Agri Shipment Ledger Coordinator"
    environment: str = "dev"
    log_level: str = "INFO"

    # ─────────── API ───────────
    api_prefix: str = "/api/v1"
    request_id_header: str = "X-Request-Id"

    # ─────────── DATABASE ───────────
    database_url: str

    # ─────────── JWT / AUTH ───────────
    jwt_secret_key: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_access_token_minutes: int = 1440  # 24 hours

    # ─────────── LEDGER ───────────
    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: int = 31337
    shipment_token_address: Optional[str] = None
    escrow_payment_address: Optional[str] = None
    dispute_manager_address: Optional[str] = None
    registration_address: Optional[str] = None
    payment_token_address: Optional[str] = None
    payment_token_decimals: int = 18
    confirmation_timeout_seconds: int = 120
    event_confirmations: int = 0

    # ─────────── ATTESTOR ───────────
    oracle_private_key: Optional[str] = None
    oracle_signer_url: Optional[str] = None
    oracle_signer_address: Optional[str] = None
    oracle_signer_timeout_seconds: int = 10
    attestation_max_skew_seconds: int = 300
    nonce_strategy: str = "random"  # random | counter

    # ─────────── ESCROW ───────────
    cancellation_window_seconds: int = 3600
    default_farmer_bps: int = 8000
    default_transporter_bps: int = 1500
    default_platform_bps: int = 500

    # ─────────── WORKERS ───────────
    run_background_workers: bool = False
    retry_max_attempts: int = 3
    retry_backoff_seconds: int = 15
    retry_processing_lease_seconds: int = 300
    retry_poll_interval_seconds: int = 10
    event_poll_interval_seconds: int = 5
    tx_sweep_interval_seconds: int = 5


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
