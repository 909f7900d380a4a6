from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration sourced from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    env: str = Field(default="dev", alias="APP_ENV")
    debug: bool = Field(default=False, alias="APP_DEBUG")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")

    # External drug knowledge service (RxNav compatible)
    rxnav_base_url: str = Field(default="https://rxnav.nlm.nih.gov/REST", alias="RXNAV_BASE_URL")
    rxnav_timeout_seconds: float = Field(default=10.0, alias="RXNAV_TIMEOUT_SECONDS")

    # Shared cache tier; local-only when empty
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")

    # Cache TTLs in seconds
    drug_cache_ttl: int = Field(default=86_400, alias="DRUG_CACHE_TTL")
    drug_search_cache_ttl: int = Field(default=3_600, alias="DRUG_SEARCH_CACHE_TTL")
    interaction_cache_ttl: int = Field(default=21_600, alias="INTERACTION_CACHE_TTL")
    allergy_cache_ttl: int = Field(default=300, alias="ALLERGY_CACHE_TTL")

    # Feature flags
    interaction_check_enabled: bool = Field(default=True, alias="INTERACTION_CHECK_ENABLED")
    allergy_check_enabled: bool = Field(default=True, alias="ALLERGY_CHECK_ENABLED")
    drug_suggestions_enabled: bool = Field(default=True, alias="DRUG_SUGGESTIONS_ENABLED")

    cross_reactivity_path: Optional[str] = Field(default=None, alias="CROSS_REACTIVITY_PATH")

    # Housekeeping; an interval of 0 disables the job
    audit_retention_days: int = Field(default=90, alias="AUDIT_RETENTION_DAYS")
    cache_sweep_interval_seconds: int = Field(default=300, alias="CACHE_SWEEP_INTERVAL_SECONDS")
    audit_cleanup_interval_seconds: int = Field(default=0, alias="AUDIT_CLEANUP_INTERVAL_SECONDS")

    max_drugs_per_check: int = Field(default=20, alias="MAX_DRUGS_PER_CHECK")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
