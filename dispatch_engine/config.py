from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Settings that must be present before the engine may start in prod
PRODUCTION_REQUIRED = (
    "admin_token",
    "database_url",
    "directory_url",
    "notification_gateway_url",
    "event_relay_url",
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    service_name: str = "dispatch_engine"
    log_level: str = "INFO"

    # Database (unset = in-memory store)
    database_url: str | None = None
    pg_pool_min: int = Field(2, ge=1)
    pg_pool_max: int = Field(20, ge=1)

    # Collaborating services; unset = log-only
    directory_url: str | None = None
    notification_gateway_url: str | None = None
    event_relay_url: str | None = None
    service_token: str | None = None        # Bearer token sent to all three

    # Operator API
    admin_token: str | None = None
    allowed_origins: list[str] = ["*"]

    # Policy resolution
    policy_cache_ttl_seconds: float = Field(300.0, ge=0)
    policy_resolve_retries: int = Field(3, ge=1)
    policy_retry_base_delay: float = 0.2     # doubles per retry

    # Offer / alert delivery and directory calls
    gateway_max_retries: int = Field(3, ge=0)
    gateway_base_retry_delay: float = 0.5
    gateway_max_retry_delay: float = 5.0

    # SLA warning: less than N minutes left, and at least this share of the window used
    sla_warning_minutes_remaining: float = Field(30.0, gt=0)
    sla_warning_min_elapsed_ratio: float = Field(0.7, ge=0, le=1)

    # Fallbacks when no policy row exists at any scope
    default_sla_accept_minutes: float = Field(5, gt=0)
    default_sla_schedule_hours: float = Field(24, gt=0)
    default_escalation_steps: list[int] = [1, 2, 5]
    default_max_dispatch_attempts: int = Field(10, ge=1)
    default_search_radius_km: float = Field(50.0, gt=0)
    default_max_candidates: int = Field(20, ge=1)

    # Recipients of OPERATOR_ALERT / MANAGER_ALERT
    operator_roles: list[str] = ["operator"]
    manager_roles: list[str] = ["manager"]

    # Feature Flags
    enable_metrics: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    def validate_required_for_production(self) -> list[str]:
        """Names of PRODUCTION_REQUIRED settings that are unset (always [] outside prod)"""
        if not self.is_production:
            return []
        return [name for name in PRODUCTION_REQUIRED if not getattr(self, name)]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and "*" in s.allowed_origins:
        warnings.append("prod: allowed_origins contains '*' (CORS is wide open).")

    if not s.admin_token:
        warnings.append("admin_token is not set (operator override endpoints are unauthenticated).")

    if s.pg_pool_min > s.pg_pool_max:
        warnings.append(f"pg_pool_min={s.pg_pool_min} exceeds pg_pool_max={s.pg_pool_max}.")

    if s.policy_cache_ttl_seconds > 900:
        warnings.append(
            f"policy_cache_ttl_seconds={s.policy_cache_ttl_seconds:g}: policy edits will take "
            "more than 15 minutes to reach new dispatches."
        )

    if s.gateway_max_retries < 1:
        warnings.append("gateway_max_retries < 1: offer notifications are never retried.")

    if not s.default_escalation_steps:
        warnings.append("default_escalation_steps is empty: jobs without a policy row go straight to operator alert.")

    unset = {
        "directory_url": "no candidates will be found",
        "notification_gateway_url": "offers and alerts are only logged",
        "event_relay_url": "real-time events are only logged",
    }
    for name, effect in unset.items():
        if not getattr(s, name):
            warnings.append(f"{name} is not set ({effect}).")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """Raise on missing production settings; otherwise log each risky value."""
    missing = s.validate_required_for_production()
    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    from dispatch_engine.infra.logging_config import get_logger
    logger = get_logger(__name__)
    for msg in warn_on_risky_config(s):
        logger.warning(f"[config] {msg}")


settings = Settings()
