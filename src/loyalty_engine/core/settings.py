from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_TIER_THRESHOLDS: dict[str, int] = {
    "bronze": 0,
    "silver": 500,
    "gold": 2000,
    "platinum": 5000,
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./loyalty.db"
    database_echo: bool = False
    log_level: str = "INFO"

    # Request layer
    loyalty_api_key: str | None = None

    # Tracing
    tracing_enabled: bool = False
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None

    # Ledger write discipline
    ledger_retry_attempts: int = 3
    ledger_retry_backoff_seconds: float = 0.05
    ledger_lock_timeout_ms: int = 2000
    ledger_page_size_limit: int = 100

    # Program defaults applied on initialization
    default_points_per_dollar: float = 1.0
    default_minimum_purchase: float = 0.0
    default_minimum_redemption: int = 100
    default_redemption_value: float = 0.01

    # Tier derivation from lifetime earned points
    loyalty_tier_thresholds: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_TIER_THRESHOLDS)
    )

    @field_validator("loyalty_tier_thresholds", mode="before")
    @classmethod
    def _parse_tier_thresholds(cls, value: object) -> dict[str, int]:
        if value is None or value == "":
            return dict(DEFAULT_TIER_THRESHOLDS)
        if isinstance(value, str):
            parsed: dict[str, int] = {}
            for pair in value.split(","):
                if ":" not in pair:
                    continue
                name, threshold = pair.split(":", 1)
                if name.strip():
                    parsed[name.strip()] = int(threshold.strip())
            return parsed
        if isinstance(value, dict):
            return {str(key): int(threshold) for key, threshold in value.items()}
        return dict(DEFAULT_TIER_THRESHOLDS)

    # Point expiration sweep
    expiration_worker_enabled: bool = False
    expiration_worker_interval_seconds: int = 60 * 60


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
