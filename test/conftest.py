from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator, Callable

import pytest

# Load dotenv files early so test settings can read overrides via os.getenv
try:  # pragma: no cover
    from dotenv import load_dotenv

    TEST_ROOT = Path(__file__).resolve().parent
    # Load test/.env first, then fallback to test/.env.example for defaults
    load_dotenv(TEST_ROOT / ".env", override=False)
    load_dotenv(TEST_ROOT / ".env.example", override=False)
except Exception:
    pass

# Import test settings after dotenv is loaded
from test.settings import test_settings

from runplane.orchestration.artifacts import ArtifactStore
from runplane.orchestration.handlers import StepHandler, build_default_registry
from runplane.orchestration.policy import PolicyConfig, StepPolicyEngine
from runplane.orchestration.queue import InMemoryStepQueue
from runplane.orchestration.repos import (
    InMemoryStoreBundle,
    SqlStoreBundle,
    build_memory_repos,
    build_sql_repos,
    create_all,
    create_engine,
    create_sessionmaker,
)
from runplane.orchestration.runtime import WorkerDeps


@pytest.fixture(scope="session")
def test_config():
    """Fixture providing test configuration from Pydantic settings model.

    Returns:
        TestSettings: Test configuration with all environment variables loaded
    """
    return test_settings


class FakeClock:
    """Manually advanced monotonic clock, in seconds."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> InMemoryStoreBundle:
    return build_memory_repos()


@pytest.fixture
async def sql_store(tmp_path: Path) -> AsyncIterator[SqlStoreBundle]:
    """SQL store on a throwaway SQLite database file."""
    url = test_settings.database.url or f"sqlite+aiosqlite:///{tmp_path / 'runplane.db'}"
    engine = create_engine(url)
    await create_all(engine)
    try:
        yield build_sql_repos(session_factory=create_sessionmaker(engine))
    finally:
        await engine.dispose()


@pytest.fixture
def make_deps(tmp_path: Path) -> Callable[..., WorkerDeps]:
    """Build ``WorkerDeps`` over an in-memory store and queue.

    Keyword overrides: ``store``, ``queue``, ``handlers`` (extra handlers
    matched before the built-ins), ``policy_config``, ``enabled_gates``,
    ``coverage_threshold``.
    """

    def _make(**overrides) -> WorkerDeps:
        store = overrides.get("store") or build_memory_repos()
        queue = overrides.get("queue") or InMemoryStepQueue()
        handlers: list[StepHandler] = list(overrides.get("handlers") or [])
        registry = build_default_registry(
            enabled_gates=overrides.get("enabled_gates", ("typecheck", "lint", "unit", "coverage")),
            coverage_threshold=overrides.get("coverage_threshold", 0.9),
            extra=handlers,
        )
        return WorkerDeps.from_store(
            store,
            queue=queue,
            registry=registry,
            policy=StepPolicyEngine(overrides.get("policy_config") or PolicyConfig()),
            artifact_store=ArtifactStore(tmp_path / "artifacts", store.artifacts),
        )

    return _make
