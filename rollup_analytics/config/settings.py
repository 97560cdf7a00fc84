"""
Configuration for the Rollup Analytics Engine

Each subsystem reads its own environment prefix (POSTGRES_, METADATA_,
SCHEMA_, PLANNER_); `get_settings()` caches the aggregate.
"""

from functools import lru_cache
from typing import Optional
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """PostgreSQL holding the catalog, collections and rollup tables"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="analytics", alias="database", description="Database name")
    user: str = Field(default="analytics", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, description="Full async URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """SQLAlchemy async URL; `url` wins over the individual parts"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class MetadataSettings(BaseSettings):
    """Materialized view / continuous query metadata store"""

    model_config = SettingsConfigDict(env_prefix="METADATA_")

    cache_ttl_seconds: int = Field(default=60, description="Materialized view cache TTL")
    refresh_lease_seconds: float = Field(
        default=600.0,
        description="Seconds a refresh ticket may hold the row lock before it is rolled back",
    )


class SchemaCacheSettings(BaseSettings):
    """Collection schema cache"""

    model_config = SettingsConfigDict(env_prefix="SCHEMA_")

    cache_ttl_seconds: int = Field(default=60, description="Collection and field cache TTL")
    max_create_retries: int = Field(
        default=3,
        description="Retries when a concurrent writer created the same table or column",
    )


class PlannerSettings(BaseSettings):
    """Query planner limits"""

    model_config = SettingsConfigDict(env_prefix="PLANNER_")

    max_time_buckets: int = Field(default=30000, description="Max buckets across all collections")
    group_limit: int = Field(default=15, description="Groups kept before collapsing into Others")
    segment_limit: int = Field(default=20, description="Segments kept per group")
    single_dimension_limit: int = Field(default=50, description="Values kept for a single dimension")
    result_limit: int = Field(default=100, description="Max rows returned")
    time_column: str = Field(default="_time", description="Event timestamp column")


class MonitoringSettings(BaseSettings):
    """Logging and metrics exposition"""

    model_config = SettingsConfigDict(env_prefix="")

    metrics_port: Optional[int] = Field(
        default=None, alias="METRICS_PORT", description="Serve Prometheus metrics on this port when set"
    )
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or text")


class Settings(BaseSettings):
    """Aggregate of every subsystem's settings"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    metadata: MetadataSettings = Field(default_factory=MetadataSettings)
    schema_cache: SchemaCacheSettings = Field(default_factory=SchemaCacheSettings)
    planner: PlannerSettings = Field(default_factory=PlannerSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()


@lru_cache()
def get_settings() -> Settings:
    """Settings loaded once per process"""
    return Settings()
