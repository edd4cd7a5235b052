from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration read from environment variables."""

    # General
    app_env: str = "sandbox"
    api_bearer_token: str = "testtoken"
    api_basic_username: str = "admin"
    api_basic_password: str = "admin"
    default_provider: str = "payu"
    public_base_url: str = "http://localhost:8000"
    # Sandbox traffic from PayU sometimes arrives without a signature header
    allow_unsigned_webhooks: bool = False

    # PayU config (sandbox/production credential sets)
    payu_environment: str = "sandbox"
    payu_pos_id: str = ""
    payu_client_id: str = ""
    payu_client_secret: str = ""
    payu_second_key: str = ""
    payu_sandbox_pos_id: str = ""
    payu_sandbox_client_id: str = ""
    payu_sandbox_client_secret: str = ""
    payu_sandbox_second_key: str = ""
    payu_continue_url: str = "http://localhost:3000/dashboard?payment=success"
    payu_notify_url: str = "http://localhost:8000/api/payu/webhook"

    # Stripe config
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300
    stripe_success_url: str = "http://localhost:3000/subscription/success?session_id={CHECKOUT_SESSION_ID}"
    stripe_cancel_url: str = "http://localhost:3000/subscription?canceled=true"

    # Gateway timeouts and retries
    order_timeout_seconds: float = 30.0
    token_timeout_seconds: float = 10.0
    status_timeout_seconds: float = 15.0
    token_refresh_margin_seconds: int = 60
    checkout_max_attempts: int = 3
    checkout_backoff_base_seconds: float = 0.5

    # Reconciliation and subscriptions
    drift_window_minutes: int = 30
    trial_days: int = 14
    payment_failure_threshold: int = 3

    # Database (PostgreSQL)
    db_host: str = ""
    db_port: int = 5432
    db_user: str = ""
    db_password: str = ""
    db_name: str = ""
    db_schema: str = "billing"

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in {"production", "prod", "live"}

    @property
    def unsigned_webhooks_allowed(self) -> bool:
        return self.allow_unsigned_webhooks and not self.is_production

    @property
    def payu_sandbox(self) -> bool:
        return self.payu_environment.lower() != "production"

    @property
    def payu_base_url(self) -> str:
        if self.payu_sandbox:
            return "https://secure.snd.payu.com"
        return "https://secure.payu.com"

    @property
    def payu_credentials(self) -> dict[str, str]:
        if self.payu_sandbox:
            return {
                "pos_id": self.payu_sandbox_pos_id,
                "client_id": self.payu_sandbox_client_id,
                "client_secret": self.payu_sandbox_client_secret,
                "second_key": self.payu_sandbox_second_key,
            }
        return {
            "pos_id": self.payu_pos_id,
            "client_id": self.payu_client_id,
            "client_secret": self.payu_client_secret,
            "second_key": self.payu_second_key,
        }

    @property
    def db_enabled(self) -> bool:
        return bool(self.db_host and self.db_user and self.db_name)

    @property
    def db_dsn(self) -> str:
        if not self.db_enabled:
            return ""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Pydantic v2 settings config
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
