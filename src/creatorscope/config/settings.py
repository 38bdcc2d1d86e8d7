"""
Configuration with Pydantic Settings.

All values can be overridden from the environment using the `CS_` prefix and
`__` as the nested delimiter, e.g. `CS_RESILIENCE__MAX_RETRIES=5` or
`CS_SCRAPER__API_TOKEN=...`.
"""

from functools import lru_cache

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ScraperConfig(BaseModel):
    """External scraping job API (Apify-style actors)."""

    base_url: str = Field("https://api.apify.com", description="Job API base URL")
    api_token: str = Field("", description="Bearer token for the job API")
    platform: str = Field("instagram", description="Platform searched during discovery")
    search_actor: str = Field("apify/google-search-scraper")
    profile_actor: str = Field("apify/instagram-scraper")
    posts_actor: str = Field("clockworks/tiktok-scraper")
    results_per_query: int = Field(100, gt=0)
    posts_per_profile: int = Field(50, gt=0)
    metrics_window_days: int = Field(30, gt=0)
    poll_interval: float = Field(5.0, gt=0, description="Seconds between run status polls")
    run_timeout: float = Field(900.0, gt=0, description="Upper bound for one actor run (s)")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")


class ResilienceConfig(BaseModel):
    """Retry, timeout and circuit breaker tuning for external calls."""

    max_retries: int = Field(3, ge=0)
    initial_delay: float = Field(1.0, ge=0, description="First backoff delay (s)")
    backoff_factor: float = Field(2.0, ge=1.0)
    call_timeout: float = Field(30.0, gt=0, description="Deadline per external call (s)")
    failure_threshold: int = Field(5, gt=0)
    recovery_timeout: float = Field(60.0, gt=0)
    monitoring_period: float = Field(120.0, gt=0)


class StreamingConfig(BaseModel):
    """Progress stream behavior."""

    keepalive_interval: float = Field(15.0, gt=0)
    max_keywords: int = Field(20, gt=0)
    max_handles: int = Field(50, gt=0)


class ObservabilityConfig(BaseModel):
    enable_tracing: bool = Field(True)
    enable_metrics: bool = Field(True)
    console_spans: bool = Field(False)
    log_level: str = Field("INFO")
    service_name: str = Field("creatorscope")
    service_version: str = Field("0.1.0")


class APIConfig(BaseModel):
    host: str = Field("0.0.0.0")
    port: int = Field(8000, gt=0, le=65535)
    reload: bool = Field(False)
    workers: int = Field(1, gt=0)
    enable_cors: bool = Field(True)
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    enable_docs: bool = Field(True)


class Settings(BaseSettings):
    """Main application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="CS_", env_nested_delimiter="__", case_sensitive=False, extra="ignore"
    )

    scraper: ScraperConfig = Field(default_factory=ScraperConfig)
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    environment: str = Field(
        "development", description="Environment: development, staging, production"
    )
    debug: bool = Field(False)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
