from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AnyUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=False,
        extra="ignore",
    )

    SUPABASE_URL: AnyUrl
    SUPABASE_SERVICE_ROLE_KEY: str
    APP_ENV: str = "local"
    FRONTEND_CORS_ORIGINS: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:5173"],
    )


class PipelineSettings(BaseSettings):
    """Tunables for the auto-find pipeline. Every field has a safe default."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        env_prefix="AUTOFIND_",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Deduplication
    dedupe_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    dedupe_candidate_limit: int = Field(default=50, ge=1)
    dedupe_candidate_statuses: list[str] = Field(default_factory=lambda: ["verified", "community"])
    dedupe_title_distance_cap: int = Field(default=10, ge=1)
    dedupe_name_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    dedupe_ingredient_weight: float = Field(default=0.6, ge=0.0, le=1.0)
    # Duplicate insertion is less harmful than dropping a novel recipe.
    dedupe_fail_open: bool = True
    dedupe_strategy: Literal["first", "best"] = "first"

    # Source fetching
    max_sources: int = Field(default=5, ge=1)
    source_timeout_seconds: float = Field(default=10.0, gt=0)
    source_user_agent: str = "GlobalAuthenticRecipes/1.0 (recipe-research)"
    usda_api_key: str = "DEMO_KEY"

    # Generation
    gemini_api_key: str = Field(default="", validation_alias="GEMINI_API_KEY")
    gemini_model: str = Field(default="gemini-2.5-flash", validation_alias="GEMINI_MODEL")
    generation_max_attempts: int = Field(default=3, ge=1)
    generation_backoff_seconds: float = Field(default=2.0, ge=0)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


@lru_cache(maxsize=1)
def get_pipeline_settings() -> PipelineSettings:
    return PipelineSettings()
