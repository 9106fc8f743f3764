"""Configuration surface for the UCP commerce server."""
from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WebhookSettings(BaseSettings):
    """Outbound platform webhook delivery and retry policy."""
    max_attempts: int = 5
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 3600.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1
    timeout_seconds: float = 30.0
    retry_interval_seconds: float = 30.0
    retry_batch_size: int = 50
    retention_days: int = 30
    # Run the retry sweep inside the API process
    sweep_enabled: bool = True


class GooglePaySettings(BaseSettings):
    """Google Pay merchant configuration."""
    merchant_id: str = ""
    merchant_name: str = "UCP Merchant"
    environment: Literal["TEST", "PRODUCTION"] = "TEST"
    allowed_card_networks: List[str] = Field(
        default_factory=lambda: ["VISA", "MASTERCARD", "AMEX"]
    )
    allowed_auth_methods: List[str] = Field(
        default_factory=lambda: ["PAN_ONLY", "CRYPTOGRAM_3DS"]
    )
    gateway: str = "example"
    gateway_merchant_id: str = ""

    @field_validator("allowed_card_networks", "allowed_auth_methods", mode="before")
    @classmethod
    def parse_csv(cls, v):
        """Parse comma-separated lists from env vars."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v


class TokenizerSettings(BaseSettings):
    """Business tokenizer routed to a configured PSP."""
    psp_type: Literal["mock", "mollie", "stripe", "adyen"] = "mock"
    public_key: str = ""
    tokenization_url: str = ""
    supported_brands: List[str] = Field(
        default_factory=lambda: ["visa", "mastercard", "amex"]
    )
    supports_3ds: bool = True

    @field_validator("supported_brands", mode="before")
    @classmethod
    def parse_brands(cls, v):
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v


class MollieSettings(BaseSettings):
    """Mollie native handler configuration."""
    api_key: str = ""
    profile_id: str = ""
    test_mode: bool = True
    api_url: str = "https://api.mollie.com/v2"
    redirect_url: str = ""
    webhook_url: str = ""


class UCPSettings(BaseSettings):
    """Main UCP server configuration."""

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Public base URL of this server, used in profile, legal links and redirects
    server_url: str = "http://localhost:3000"
    ucp_version: str = "2026-01-11"

    # Checkout sessions
    session_expiry_hours: int = 6
    default_shop_id: str = "default"
    default_currency: str = "EUR"

    # Storage - PostgreSQL DSN, empty or memory:// keeps everything in process
    database_url: str = ""
    redis_url: str = ""

    # Commerce backend
    use_mock_backend: bool = True

    # Backend app registration
    app_secret: str = "dev-only-app-secret"
    app_name: str = "UcpCommerce"
    registration_ttl_seconds: int = 600

    # Profile document cache
    profile_cache_ttl_seconds: int = 300

    # Webhook signing key (PEM encoded EC P-256 private key); generated when empty
    signing_key_pem: str = ""
    signing_key_id: str = ""

    # CORS - allowed origins
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

    # Logging
    log_level: str = "INFO"
    log_json: Optional[bool] = None

    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)
    google_pay: GooglePaySettings = Field(default_factory=GooglePaySettings)
    tokenizer: TokenizerSettings = Field(default_factory=TokenizerSettings)
    mollie: MollieSettings = Field(default_factory=MollieSettings)

    model_config = SettingsConfigDict(
        env_prefix="UCP_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_origins(cls, v):
        """Parse comma-separated origins from env var."""
        if isinstance(v, str):
            return [o.strip() for o in v.split(",") if o.strip()]
        return v

    @field_validator("server_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def use_postgres(self) -> bool:
        return self.database_url.startswith(("postgresql://", "postgres://"))

    @property
    def json_logs(self) -> bool:
        if self.log_json is not None:
            return self.log_json
        return self.environment != "dev"


def load_settings(env_file: str | None = None) -> UCPSettings:
    """Load settings from the environment and an optional .env file."""
    env_path = Path(env_file) if env_file else None
    return UCPSettings(_env_file=env_path)
