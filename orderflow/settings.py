from __future__ import annotations
from decimal import Decimal
from typing import List, Optional
from pydantic import Field, AliasChoices
from pydantic_settings import BaseSettings, SettingsConfigDict
import json
import logging


LOCAL_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


def _parse_cors(v: Optional[str | List[str]]) -> List[str]:
    """CORS_ORIGINS as a JSON array or a comma-separated list; blank means the local frontend."""
    if isinstance(v, list):
        return v
    s = (v or "").strip()
    if not s:
        return list(LOCAL_ORIGINS)
    try:
        parsed = json.loads(s)
        if isinstance(parsed, list) and all(isinstance(x, str) for x in parsed):
            return parsed
    except ValueError:
        pass
    # fallback: comma separated
    return [p.strip() for p in s.split(",") if p.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",   # ignore unknown env keys instead of raising
    )

    # --- API ---
    cors_origins_raw: Optional[str | List[str]] = Field(
        default=None, validation_alias=AliasChoices("CORS_ORIGINS",)
    )
    log_level: str = Field(default="INFO", validation_alias=AliasChoices("LOG_LEVEL",))

    # --- Postgres ---
    database_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("DATABASE_URL",)
    )
    db_pool_min_size: int = Field(default=2, validation_alias=AliasChoices("DB_POOL_MIN_SIZE",))
    db_pool_max_size: int = Field(default=10, validation_alias=AliasChoices("DB_POOL_MAX_SIZE",))

    # --- Stripe ---
    stripe_secret_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("STRIPE_SECRET_KEY",)
    )
    stripe_publishable_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("STRIPE_PUBLISHABLE_KEY",)
    )
    # "sandbox" or "production"; only reported back to the checkout form
    payment_environment: str = Field(
        default="sandbox", validation_alias=AliasChoices("PAYMENT_ENVIRONMENT",)
    )
    gateway_timeout_seconds: float = Field(
        default=30.0, validation_alias=AliasChoices("GATEWAY_TIMEOUT_SECONDS",)
    )

    # --- Money ---
    default_currency: str = Field(default="CAD", validation_alias=AliasChoices("DEFAULT_CURRENCY",))
    # flat GST + QST estimate, see services.money.estimate_tax
    tax_rate: Decimal = Field(default=Decimal("0.14975"), validation_alias=AliasChoices("TAX_RATE",))
    max_charge_amount: Decimal = Field(
        default=Decimal("999999"), validation_alias=AliasChoices("MAX_CHARGE_AMOUNT",)
    )
    amount_tolerance: Decimal = Field(
        default=Decimal("0.01"), validation_alias=AliasChoices("AMOUNT_TOLERANCE",)
    )

    # --- Order persistence ---
    persist_timeout_seconds: float = Field(
        default=10.0, validation_alias=AliasChoices("PERSIST_TIMEOUT_SECONDS",)
    )
    persist_retry_backoff_seconds: float = Field(
        default=0.5, validation_alias=AliasChoices("PERSIST_RETRY_BACKOFF_SECONDS",)
    )
    order_number_prefix: str = Field(default="DC", validation_alias=AliasChoices("ORDER_NUMBER_PREFIX",))
    order_number_length: int = Field(default=8, validation_alias=AliasChoices("ORDER_NUMBER_LENGTH",))

    # --- Notifications ---
    mail_api_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("SENDGRID_API_KEY", "MAIL_API_KEY")
    )
    mail_api_base: str = Field(
        default="https://api.sendgrid.com", validation_alias=AliasChoices("MAIL_API_BASE",)
    )
    mail_from: str = Field(
        default="orders@localhost", validation_alias=AliasChoices("MAIL_FROM",)
    )
    admin_alert_webhook_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("ADMIN_ALERT_WEBHOOK_URL",)
    )
    admin_orders_url: str = Field(
        default="/admin/orders", validation_alias=AliasChoices("ADMIN_ORDERS_URL",)
    )
    notify_timeout_seconds: float = Field(
        default=15.0, validation_alias=AliasChoices("NOTIFY_TIMEOUT_SECONDS",)
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors(self.cors_origins_raw)


# singleton
settings = Settings()


def setup_logging() -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
