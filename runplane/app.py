from __future__ import annotations

"""Application wiring.

``open_application`` builds everything a process needs from ``Settings``:

- root logging, from ``log_level`` and ``log_format``,
- the store and queue (SQL when ``database_url`` is set, in-memory otherwise),
- the handler registry (built-ins plus any extra handlers),
- the policy engine and the artifact store,
- one ``StepWorker`` and one ``OrchestrationService`` sharing those deps.

The SQL engine is disposed when the context exits.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional

from .core.config import Settings
from .core.config import settings as default_settings
from .core.logging_config import get_logger, setup_logging
from .orchestration.artifacts import ArtifactStore
from .orchestration.handlers import StepHandler, build_default_registry
from .orchestration.policy import ApprovalPolicy, PolicyConfig, StepPolicyEngine, ToolPolicy
from .orchestration.queue import InMemoryStepQueue, SqlStepQueue
from .orchestration.repos import (
    build_memory_repos,
    build_sql_repos,
    create_all,
    create_engine,
    create_sessionmaker,
)
from .orchestration.runtime import BatchResult, StepWorker, WorkerDeps, WorkerOptions
from .orchestration.service import OrchestrationService

logger = get_logger(__name__)


@dataclass(frozen=True)
class Application:
    """The wired-up engine for one process."""

    settings: Settings
    deps: WorkerDeps
    worker: StepWorker
    service: OrchestrationService

    async def run_worker_once(self) -> BatchResult:
        """Run one worker batch with the configured batch size and budget."""
        cfg = self.settings.worker
        return await self.worker.run_batch(batch_size=cfg.batch_size, wall_clock_budget_ms=cfg.wall_clock_budget_ms)


def build_policy_config(settings: Settings) -> PolicyConfig:
    """Translate settings into the policy engine configuration."""
    gates = settings.gates
    return PolicyConfig(
        tool_policy=ToolPolicy(blocked_tools=set(settings.blocked_tools)),
        approval_policy=ApprovalPolicy(
            gated_tools=set(gates.gated_tools),
            gated_tool_prefixes=list(gates.gated_tool_prefixes),
            db_writes=gates.db_writes,
        ),
    )


def build_worker_options(settings: Settings) -> WorkerOptions:
    cfg = settings.worker
    return WorkerOptions(
        stale_step_seconds=cfg.stale_step_seconds,
        dependency_retry_delay_seconds=cfg.dependency_retry_delay_seconds,
        fail_run_on_step_failure=cfg.fail_run_on_step_failure,
    )


@asynccontextmanager
async def open_application(
    settings: Optional[Settings] = None,
    *,
    handlers: Optional[Iterable[StepHandler]] = None,
    configure_logging: bool = True,
) -> AsyncIterator[Application]:
    """
    Build the application and tear it down on exit.

    Args:
        settings: Configuration; defaults to the module-level settings.
        handlers: Extra handlers, matched before the built-ins.
        configure_logging: Apply ``log_level`` and ``log_format`` from the
            settings to the root logger. Hosts that own logging pass False.

    Yields:
        The wired Application.
    """
    settings = settings or default_settings
    if configure_logging:
        setup_logging(log_level=settings.log_level, log_format=settings.log_format)
    engine = None
    if settings.database_url:
        engine = create_engine(settings.database_url)
        if settings.create_schema:
            await create_all(engine)
        session_factory = create_sessionmaker(engine)
        store = build_sql_repos(session_factory=session_factory)
        queue = SqlStepQueue(
            session_factory=session_factory,
            visibility_timeout_seconds=settings.worker.visibility_timeout_seconds,
        )
        logger.info(f"Using SQL store at {engine.url.render_as_string(hide_password=True)}")
    else:
        store = build_memory_repos()
        queue = InMemoryStepQueue(visibility_timeout_seconds=settings.worker.visibility_timeout_seconds)
        logger.info("Using in-memory store and queue")

    gates = settings.gates
    registry = build_default_registry(
        enabled_gates=gates.enabled_quality_gates,
        coverage_threshold=gates.coverage_threshold,
        extra=handlers,
    )
    deps = WorkerDeps.from_store(
        store,
        queue=queue,
        registry=registry,
        policy=StepPolicyEngine(build_policy_config(settings)),
        artifact_store=ArtifactStore(Path(settings.artifact_root), store.artifacts),
    )
    options = build_worker_options(settings)
    app = Application(
        settings=settings,
        deps=deps,
        worker=StepWorker(deps=deps, options=options),
        service=OrchestrationService(deps=deps, options=options),
    )
    try:
        yield app
    finally:
        if engine is not None:
            await engine.dispose()
