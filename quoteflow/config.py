from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ---- App ----
    app_env: str = "local"  # local|dev|prod
    app_version: str = "2026-10-19.v1"
    database_url: str = "sqlite:///./quoteflow.db"
    # SERIALIZABLE on Postgres; SQLite serializes writers on its own.
    db_isolation_level: str | None = None

    # ---- CORS (used by main.py) ----
    cors_allow_origins: list[str] | str = ["*"]

    # ---- Pricing defaults ----
    default_currency: str = "usd"
    default_deposit_percent: float = 50.0
    allow_zero_price: bool = False

    # ---- Numbering ----
    number_allocation_retries: int = 5

    # ---- Payments ----
    payment_amount_tolerance: float = 0.01
    payment_gateway_base_url: str = "https://api.stripe.com/v1"
    payment_gateway_api_key: str | None = None
    payment_gateway_verify_sessions: bool = False
    payment_webhook_secret: str | None = None

    # ---- Customer portal ----
    portal_open_days: int = 14

    # ---- Notifications ----
    notification_webhook_url: str | None = None
    notification_batch_size: int = 100
    notification_claim_seconds: int = 300

    # ---- Identity (upstream-authenticated) ----
    auth_mode: str = "dev"  # dev|gateway
    dev_header_tenant_id: str = "X-Tenant-Id"
    dev_header_user_id: str = "X-User-Id"
    dev_header_role: str = "X-User-Role"
    gateway_shared_secret: str | None = None

    # ---- Celery ----
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    portal_lock_interval_seconds: int = 900
    notification_dispatch_interval_seconds: int = 60

    def model_post_init(self, __context) -> None:
        env = (self.app_env or "local").strip().lower()
        is_prod = env in ("prod", "production")

        if is_prod:
            if (self.auth_mode or "").strip().lower() == "dev":
                raise ValueError("SECURITY: auth_mode=dev is not allowed in prod")

            origins = self.cors_allow_origins
            if origins == "*" or origins == ["*"] or (isinstance(origins, str) and "*" in origins):
                raise ValueError("SECURITY: cors_allow_origins wildcard is not allowed in prod")

            if (self.auth_mode or "").strip().lower() == "gateway" and not self.gateway_shared_secret:
                raise ValueError("SECURITY: auth_mode=gateway requires gateway_shared_secret in prod")

        if self.payment_amount_tolerance < 0:
            raise ValueError("payment_amount_tolerance must be >= 0")


settings = Settings()
