from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    log_level: str = Field(default="INFO", description="Minimum loguru level for job output")
    database_url: AnyUrl | str = Field(
        default="sqlite:///./data/swipe_cache.db",
        description="SQLAlchemy compatible database URL backing the read-side cache",
    )
    ledger_base_url: AnyUrl | str = Field(
        default="http://localhost:8545",
        description="Base URL of the ledger gateway (submission service and read RPC)",
    )
    ledger_timeout_seconds: float = Field(
        default=10.0, description="HTTP timeout applied to every ledger gateway call", gt=0
    )
    platform_fee_bps: int = Field(
        default=100,
        description="Platform fee in basis points taken from the losing pool at settlement",
        ge=0,
        lt=10_000,
    )
    confirmation_timeout_seconds: float = Field(
        default=120.0,
        description="Upper bound on the wait for a transaction receipt before reporting unknown status",
        gt=0,
    )
    confirmation_poll_interval_seconds: float = Field(
        default=2.0, description="Delay between transaction receipt polls", ge=0
    )
    sync_grace_period_seconds: float = Field(
        default=5.0,
        description="Delay after confirmation before the first canonical re-read, for replica catch-up",
        ge=0,
    )
    sync_max_attempts: int = Field(
        default=3, description="Attempts made to write a confirmed operation into the cache", ge=1
    )
    sync_retry_delay_seconds: float = Field(
        default=1.5, description="Fixed delay between cache sync attempts", ge=0
    )
    resync_interval_seconds: float = Field(
        default=300.0, description="Interval between periodic full resync runs", gt=0
    )
    resync_concurrency: int = Field(
        default=5, description="Predictions re-read concurrently during a full resync", ge=1
    )
    notification_webhook_url: AnyUrl | str | None = Field(
        default=None,
        description="Endpoint receiving user notifications; log-only delivery when unset",
    )
    explorer_tx_url: str = Field(
        default="https://basescan.org/tx/{transaction_id}",
        description="Template used to build block explorer links in transaction history",
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("explorer_tx_url")
    @classmethod
    def _validate_explorer_template(cls, value: str) -> str:
        if "{transaction_id}" not in value:
            raise ValueError("EXPLORER_TX_URL must contain a {transaction_id} placeholder")
        return value

    @field_validator("notification_webhook_url", mode="before")
    @classmethod
    def _blank_webhook_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def resolved_database_url(self) -> str:
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    def explorer_url(self, transaction_id: str) -> str:
        return self.explorer_tx_url.format(transaction_id=transaction_id)


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
