"""
Configuration system with Pydantic Settings and validation.

Every value can be overridden from the environment with the ``LANEFLOW_``
prefix and ``__`` as the nesting delimiter, e.g.
``LANEFLOW_ORCHESTRATOR__BATCH_SIZE=5``.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorConfig(BaseModel):
    """Configuration for orchestrator behavior."""

    log_buffer_size: int = Field(50, gt=0, description="Log lines retained per run")
    batch_size: int = Field(3, gt=0, description="Concurrent runs per batch window")
    rollback_step_delay: float = Field(
        0.0, ge=0.0, description="Pause between compensating actions, in seconds"
    )


class SimulationConfig(BaseModel):
    """Configuration for the simulated step operations."""

    duration_scale: float = Field(
        0.0, ge=0.0, description="Multiplier applied to each step kind's duration hint"
    )
    test_pass_rate: float = Field(0.9, ge=0.0, le=1.0)
    security_issue_rate: float = Field(0.2, ge=0.0, le=1.0)
    min_review_score: int = Field(75, ge=0, le=100)
    max_review_score: int = Field(94, ge=0, le=100)
    default_branch: str = Field("feature/workflow")

    @field_validator("max_review_score")
    @classmethod
    def validate_score_range(cls, v, info):
        low = info.data.get("min_review_score", 0)
        if v < low:
            raise ValueError("max_review_score must be >= min_review_score")
        return v


class ObservabilityConfig(BaseModel):
    """Configuration for observability and monitoring."""

    enable_tracing: bool = Field(False)
    enable_metrics: bool = Field(True)
    log_level: str = Field("INFO")

    otlp_endpoint: str | None = Field(None)
    service_name: str = Field("laneflow")
    service_version: str = Field("1.0.0")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v.upper()


class Settings(BaseSettings):
    """Main application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="LANEFLOW_", env_nested_delimiter="__", case_sensitive=False, extra="ignore"
    )

    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    seed: int = Field(1337, description="Seed for simulated operations")
    environment: str = Field(
        "development", description="Environment: development, staging, production"
    )
    debug: bool = Field(False)
    artifacts_directory: Path = Field(Path("./artifacts"))

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
