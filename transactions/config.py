"""Configuration management for the transaction reconciliation service."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service configuration, read from the environment or a ``.env`` file."""

    service_name: str = "transaction-reconciler"
    version: str = "1.0.0"
    log_level: str = "INFO"

    # Payment gateway server key, shared secret of the webhook signature
    gateway_server_key: str = ""

    # Remote Ledger Service
    ledger_service_url: str = "http://localhost:8080/api/v1"
    ledger_service_timeout: float = 30.0
    ledger_api_key: str = ""
    ledger_connect_retries: int = 0

    default_currency: str = "IDR"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
