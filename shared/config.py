"""
Shared configuration management for the metered access gateway.
"""

from typing import List, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.errors import ConfigurationError


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="METER_",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        if value.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level '{value}'")
        return value.lower()


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str = "metering"
    port: int = 8000
    host: str = "0.0.0.0"


class MeteringConfig(ServiceConfig):
    """Configuration for the metering gateway.

    ``jwks_url``, ``store_url`` and ``stripe_webhook_secrets`` have no
    defaults: a deployment without them must not start.
    """

    # Token verification
    jwks_url: str
    jwt_issuer: Optional[str] = None
    jwt_audience: Optional[str] = None
    tier_claim: str = "tier"
    jwks_refresh_seconds: int = Field(default=300, gt=0)
    jwks_min_refresh_seconds: float = Field(default=30.0, ge=0)
    jwks_http_timeout: float = Field(default=5.0, gt=0)

    # Counter store
    store_url: str
    store_timeout_seconds: float = Field(default=0.5, gt=0)
    store_retry_backoff_seconds: float = Field(default=0.05, ge=0)
    store_fail_open: bool = False

    # Rate limiting
    rate_limit_window_seconds: int = Field(default=60, gt=0)
    rate_limit_ceiling: int = Field(default=100, gt=0)
    rate_limit_ttl_slack_seconds: int = Field(default=5, ge=0)

    # Usage quota
    free_monthly_quota: int = Field(default=5, ge=0)

    # Billing webhooks
    stripe_webhook_secrets: str
    webhook_tolerance_seconds: int = Field(default=300, gt=0)

    # Identity provider admin API (optional)
    idp_admin_url: Optional[str] = None
    idp_token_url: Optional[str] = None
    idp_client_id: Optional[str] = None
    idp_client_secret: Optional[str] = None
    idp_http_timeout: float = Field(default=5.0, gt=0)

    @field_validator("jwks_url", "store_url", "stripe_webhook_secrets")
    @classmethod
    def _require_value(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    @field_validator("store_url")
    @classmethod
    def _check_store_scheme(cls, value: str) -> str:
        if not value.startswith(("redis://", "rediss://", "unix://", "memory://")):
            raise ValueError("store_url must be a redis:// or memory:// URL")
        return value

    @property
    def webhook_secrets(self) -> List[str]:
        """Trusted webhook signing secrets, newest first."""
        return [secret.strip() for secret in self.stripe_webhook_secrets.split(",") if secret.strip()]

    @property
    def idp_enabled(self) -> bool:
        return bool(self.idp_admin_url)

    def check_consistency(self) -> None:
        """Validate cross-field requirements that field validators cannot see."""
        if not self.webhook_secrets:
            raise ConfigurationError("No webhook signing secret configured", details={"field": "stripe_webhook_secrets"})
        if self.idp_enabled:
            missing = [
                name
                for name in ("idp_token_url", "idp_client_id", "idp_client_secret")
                if not getattr(self, name)
            ]
            if missing:
                raise ConfigurationError(
                    "Identity provider admin API is enabled but incomplete",
                    details={"missing": missing},
                )


def load_config(**overrides) -> MeteringConfig:
    """Load and validate configuration, raising ConfigurationError on any problem."""
    try:
        config = MeteringConfig(**overrides)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        raise ConfigurationError("Invalid or missing configuration", details={"fields": fields}) from exc
    config.check_consistency()
    return config
