from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OllamaSettings(BaseModel):
    host: str = Field("http://localhost", description="Base URL where Ollama is running.")
    port: int = Field(11434, ge=1, le=65535)
    request_timeout_seconds: float = Field(120.0, ge=1.0)


class ModelRoutingSettings(BaseModel):
    """Per-kind model overrides; unset kinds fall back to ``default``."""

    default: str = Field("llama3", min_length=1)
    analyst: str | None = None
    lead: str | None = None
    synthesizer: str | None = None
    evaluator: str | None = None
    architect: str | None = None
    planner: str | None = None
    decomposer: str | None = Field(None, description="Model used for sub-task proposals and veto correction.")


class SchedulingSettings(BaseModel):
    max_concurrency: int = Field(4, ge=1, description="Maximum number of node executions holding a gate slot.")
    quota_base_backoff_seconds: float = Field(3.0, ge=0.0)
    quota_backoff_multiplier: float = Field(2.0, ge=1.0)
    quota_max_backoff_seconds: float = Field(30.0, ge=0.0)
    quota_max_retries: int | None = Field(
        8,
        ge=0,
        description="Quota re-attempts before the error is treated as a failure (None retries forever).",
    )
    default_temperature: float = Field(0.7, ge=0.0, le=2.0)


class RateLimitSettings(BaseModel):
    enabled: bool = Field(True, description="Toggle provider request throttling on or off.")
    requests_per_minute: int = Field(10, ge=1)
    requests_per_day: int = Field(250, ge=1)
    poll_interval_seconds: float = Field(1.0, gt=0.0, description="Upper bound on a single wait before re-checking.")


class ValidationSettings(BaseModel):
    enabled: bool = Field(True)
    max_attempts: int = Field(3, ge=1)
    gated_kinds: list[str] = Field(default_factory=lambda: ["analyst", "lead"])
    min_output_chars: int = Field(50, ge=0)
    contradiction_threshold: int = Field(3, ge=0)
    hedging_threshold: int = Field(3, ge=0)
    low_confidence_threshold: float = Field(40.0, ge=0.0, le=100.0)
    disabled_flags: list[str] = Field(default_factory=list)


class ConsensusSettings(BaseModel):
    acceptance_threshold: float = Field(85.0, ge=0.0, le=100.0)
    variance_threshold: float = Field(200.0, ge=0.0)
    escalation_tiers: list[int] = Field(default_factory=lambda: [3, 5, 7])
    escalation_enabled: bool = Field(True)

    @field_validator("escalation_tiers")
    @classmethod
    def _validate_tiers(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("escalation_tiers must not be empty")
        if any(tier < 1 for tier in value) or sorted(set(value)) != value:
            raise ValueError("escalation_tiers must be strictly increasing positive integers")
        return value


class DecompositionSettings(BaseModel):
    max_failures: int = Field(3, ge=1, description="Consecutive execution failures before decomposition.")
    max_graph_nodes: int = Field(60, ge=1, description="Node count above which no automatic expansion happens.")
    min_subtasks: int = Field(3, ge=1)
    max_subtasks: int = Field(6, ge=1)


class RefinementSettings(BaseModel):
    departments: list[str] = Field(default_factory=lambda: ["strategy", "ux", "engineering", "security"])
    initial_judge_count: int = Field(3, ge=1)


class MemorySettings(BaseModel):
    enabled: bool = Field(False)
    max_records_per_persona: int = Field(10, ge=1)
    inject_limit: int = Field(5, ge=1)


class KnowledgeSettings(BaseModel):
    enabled: bool = Field(True)


class PersistenceSettings(BaseModel):
    backend: Literal["memory", "sql"] = Field("memory")
    dsn: str = Field("sqlite:///ouroboros.db", min_length=1)


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    api_v1_prefix: str = Field("/api/v1")

    ollama: OllamaSettings = Field(default_factory=OllamaSettings)  # type: ignore[arg-type]
    models: ModelRoutingSettings = Field(default_factory=ModelRoutingSettings)  # type: ignore[arg-type]
    scheduling: SchedulingSettings = Field(default_factory=SchedulingSettings)  # type: ignore[arg-type]
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)  # type: ignore[arg-type]
    validation: ValidationSettings = Field(default_factory=ValidationSettings)  # type: ignore[arg-type]
    consensus: ConsensusSettings = Field(default_factory=ConsensusSettings)  # type: ignore[arg-type]
    decomposition: DecompositionSettings = Field(default_factory=DecompositionSettings)  # type: ignore[arg-type]
    refinement: RefinementSettings = Field(default_factory=RefinementSettings)  # type: ignore[arg-type]
    memory: MemorySettings = Field(default_factory=MemorySettings)  # type: ignore[arg-type]
    knowledge: KnowledgeSettings = Field(default_factory=KnowledgeSettings)  # type: ignore[arg-type]
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    frontend_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"],
        description="Origins permitted to access the API via CORS.",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        env_prefix="OUROBOROS_",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
