"""
Configuration Settings.

This module defines the runplane configuration using Pydantic's BaseSettings.
Values are bound from environment variables (``RUNPLANE_*``) and the ``.env``
file without explicit dotenv loading.
"""

from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# =====================================================================
# Grouped Configuration Models
# =====================================================================


class WorkerConfig(BaseModel):
    """Worker loop configuration."""

    batch_size: int = Field(
        default=10, ge=1, alias="RUNPLANE_WORKER_BATCH_SIZE", description="Maximum queue jobs claimed per batch"
    )
    wall_clock_budget_ms: int = Field(
        default=50_000,
        ge=1,
        alias="RUNPLANE_WORKER_BUDGET_MS",
        description="Wall-clock budget of one worker invocation in milliseconds",
    )
    stale_step_seconds: float = Field(
        default=300.0,
        gt=0,
        alias="RUNPLANE_STALE_STEP_SECONDS",
        description="Steps running longer than this are reclaimed back to pending",
    )
    visibility_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        alias="RUNPLANE_QUEUE_VISIBILITY_TIMEOUT_SECONDS",
        description="How long a claimed queue job stays invisible before redelivery",
    )
    dependency_retry_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        alias="RUNPLANE_DEPENDENCY_RETRY_DELAY_SECONDS",
        description="Delay before re-checking a step whose dependencies are not finished",
    )
    fail_run_on_step_failure: bool = Field(
        default=True,
        alias="RUNPLANE_FAIL_RUN_ON_STEP_FAILURE",
        description="Mark a run failed once all steps are terminal and at least one failed",
    )

    model_config = {"populate_by_name": True}


class GateConfig(BaseModel):
    """Approval and quality gate configuration."""

    gated_tools: list[str] = Field(
        default_factory=list,
        alias="RUNPLANE_GATED_TOOLS",
        description="Tools that always require a manual approval gate",
    )
    gated_tool_prefixes: list[str] = Field(
        default_factory=list,
        alias="RUNPLANE_GATED_TOOL_PREFIXES",
        description="Tool name prefixes that require a manual approval gate",
    )
    db_writes: str = Field(
        default="dangerous",
        alias="RUNPLANE_GATE_DB_WRITES",
        description="Gate db_write steps: 'dangerous' (update/delete), 'all' or 'none'",
    )
    enabled_quality_gates: list[str] = Field(
        default_factory=lambda: ["typecheck", "lint", "unit", "coverage"],
        alias="RUNPLANE_ENABLED_QUALITY_GATES",
        description="Quality gates that are evaluated; others are skipped",
    )
    coverage_threshold: float = Field(
        default=0.9,
        ge=0.0,
        le=1.0,
        alias="RUNPLANE_COVERAGE_THRESHOLD",
        description="Minimum coverage fraction accepted by the coverage gate",
    )

    model_config = {"populate_by_name": True}


# =====================================================================
# Main Settings Class
# =====================================================================


class Settings(BaseSettings):
    """
    Runplane settings model.

    All properties are automatically bound from environment variables and .env file.
    Pydantic's BaseSettings handles dotenv loading automatically via model_config.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=True,
        populate_by_name=True,
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
        alias="RUNPLANE_LOG_LEVEL",
    )
    log_format: str = Field(
        default="detailed",
        description="Log format (simple, detailed, json)",
        alias="RUNPLANE_LOG_FORMAT",
    )

    # =====================================================================
    # Persistence
    # =====================================================================
    database_url: Optional[str] = Field(
        default=None,
        description="Async database URL; in-memory store and queue are used when unset",
        alias="RUNPLANE_DATABASE_URL",
    )
    create_schema: bool = Field(
        default=False,
        description="Create tables on startup (dev/tests; production uses alembic)",
        alias="RUNPLANE_CREATE_SCHEMA",
    )
    artifact_root: str = Field(
        default="local_data",
        description="Filesystem root for artifact content",
        alias="RUNPLANE_ARTIFACT_ROOT",
    )

    # =====================================================================
    # Worker
    # =====================================================================
    worker_batch_size: int = Field(default=10, alias="RUNPLANE_WORKER_BATCH_SIZE")
    worker_budget_ms: int = Field(default=50_000, alias="RUNPLANE_WORKER_BUDGET_MS")
    stale_step_seconds: float = Field(default=300.0, alias="RUNPLANE_STALE_STEP_SECONDS")
    queue_visibility_timeout_seconds: float = Field(default=30.0, alias="RUNPLANE_QUEUE_VISIBILITY_TIMEOUT_SECONDS")
    dependency_retry_delay_seconds: float = Field(default=2.0, alias="RUNPLANE_DEPENDENCY_RETRY_DELAY_SECONDS")
    fail_run_on_step_failure: bool = Field(default=True, alias="RUNPLANE_FAIL_RUN_ON_STEP_FAILURE")

    # =====================================================================
    # Gates
    # =====================================================================
    blocked_tools: list[str] = Field(default_factory=list, alias="RUNPLANE_BLOCKED_TOOLS")
    gated_tools: list[str] = Field(default_factory=list, alias="RUNPLANE_GATED_TOOLS")
    gated_tool_prefixes: list[str] = Field(default_factory=list, alias="RUNPLANE_GATED_TOOL_PREFIXES")
    gate_db_writes: str = Field(default="dangerous", alias="RUNPLANE_GATE_DB_WRITES")
    enabled_quality_gates: list[str] = Field(
        default_factory=lambda: ["typecheck", "lint", "unit", "coverage"],
        alias="RUNPLANE_ENABLED_QUALITY_GATES",
    )
    coverage_threshold: float = Field(default=0.9, alias="RUNPLANE_COVERAGE_THRESHOLD")

    # =====================================================================
    # Computed Properties (Grouped Configurations)
    # =====================================================================

    @property
    def worker(self) -> WorkerConfig:
        """Get worker loop configuration from environment variables."""
        return WorkerConfig.model_validate(self.model_dump(by_alias=True))

    @property
    def gates(self) -> GateConfig:
        """Get gate configuration from environment variables."""
        return GateConfig.model_validate(self.model_dump(by_alias=True))


settings = Settings()
