"""Run/step store: repository interfaces and their implementations.

The orchestration engine talks to persistence only through the Protocols in
``interfaces``. Two implementations share that contract:

- ``sql``: SQLAlchemy async, backed by the ORM models in ``models``.
- ``memory``: process-local dictionaries for development and unit tests.

Both are exposed as bundles (``SqlStoreBundle`` / ``InMemoryStoreBundle``)
with the same attribute names so wiring code can swap them freely.
"""

from .interfaces import (
    ArtifactRepository,
    EventRepository,
    GateRepository,
    InboxRepository,
    RunRepository,
    StepRepository,
)
from .memory import InMemoryStoreBundle, build_memory_repos
from .sql import (
    SqlStoreBundle,
    build_sql_repos,
    create_all,
    create_engine,
    create_sessionmaker,
)

__all__ = [
    "ArtifactRepository",
    "EventRepository",
    "GateRepository",
    "InboxRepository",
    "RunRepository",
    "StepRepository",
    "InMemoryStoreBundle",
    "build_memory_repos",
    "SqlStoreBundle",
    "build_sql_repos",
    "create_all",
    "create_engine",
    "create_sessionmaker",
]
