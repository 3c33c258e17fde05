from functools import lru_cache
import json
from typing import Optional

from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_cors_origins(value: str) -> list[str]:
    if not value:
        return []

    parsed: list[str]
    raw = value.strip()
    if raw.startswith("["):
        try:
            items = json.loads(raw)
            parsed = [str(item).strip() for item in items if str(item).strip()]
        except (TypeError, ValueError):
            parsed = []
    else:
        parsed = [origin.strip() for origin in raw.split(",") if origin.strip()]

    # Preserve order and remove duplicates.
    return list(dict.fromkeys(parsed))


def parse_account_ids(value: str) -> list[int]:
    if not value:
        return []
    ids: list[int] = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            ids.append(int(item))
        except ValueError:
            continue
    return list(dict.fromkeys(ids))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_name: str = "Custody Ledger"
    environment: str = "development"
    api_v1_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # Database
    database_url: str
    db_pool_size: int = 5
    db_max_overflow: int = 5
    db_pool_timeout: int = 15
    db_pool_recycle: int = 1200
    db_pool_pre_ping: bool = True
    auto_create_tables: bool = False

    # Chain endpoints
    chain_rpc_url: AnyHttpUrl = "https://rpc.juno.basementnodes.ca"
    chain_rest_url: AnyHttpUrl = "https://api.juno.basementnodes.ca"
    chain_timeout_seconds: int = 15
    chain_retry_count: int = 2
    chain_denom: str = "ujuno"
    chain_display_symbol: str = "JUNO"
    chain_address_prefix: str = "juno"

    # The single custodial wallet backing every internal balance.
    custodial_address: str = ""

    # Deposits
    deposit_poll_seconds: int = 30
    deposit_page_size: int = 50
    deposit_require_existing_account: bool = False
    deposit_pending_grace_seconds: int = 300
    routing_token_min_digits: int = 5
    routing_token_max_digits: int = 12
    max_account_id: int = 2**53

    # Account locks (seconds)
    lock_ttl_withdrawal_seconds: int = 600
    lock_ttl_transfer_seconds: int = 30
    lock_ttl_deposit_credit_seconds: int = 300
    lock_sweep_seconds: int = 60
    lock_verify_seconds: int = 60

    # Reconciliation
    reconcile_seconds: int = 300
    reconcile_tolerance: str = "0.000001"
    reconcile_alert_threshold: str = "0.01"
    reconcile_excluded_accounts: str = ""

    background_jobs_enabled: bool = False

    # Ops: admin endpoints are disabled when no key is configured.
    admin_api_key: Optional[str] = None

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"


@lru_cache
def get_settings() -> Settings:
    return Settings()
