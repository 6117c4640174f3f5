from __future__ import annotations

"""SQLAlchemy async repository implementations.

This module provides the SQL persistence implementation of the repository
interfaces defined in ``runplane.orchestration.repos.interfaces``.

Usage
-----

- Create an async engine with ``create_engine``.
- Create tables with ``create_all`` (tests/dev; production uses alembic).
- Create a session factory with ``create_sessionmaker``.
- Build repository instances with ``build_sql_repos``.

Transaction model
-----------------

Each repository method opens an ``AsyncSession``, performs its operation, and
commits. Idempotent inserts rely on unique constraints: an ``IntegrityError``
is rolled back and the pre-existing row is returned instead, so
``StoreConflict`` never reaches callers of ``create``. Compare-and-set
updates (``claim``, ``transition``, ``resolve``) are single conditional
``UPDATE`` statements whose row count tells whether the caller won.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..errors import StoreConflict
from ..schemas.domain import (
    LIVE_RUN_STATUSES,
    Artifact,
    Event,
    EventType,
    Gate,
    GateStatus,
    Run,
    RunPlan,
    RunStatus,
    Step,
    StepPatch,
    StepStatus,
)
from .interfaces import (
    ArtifactRepository,
    EventRepository,
    GateRepository,
    InboxRepository,
    RunRepository,
    StepRepository,
)
from .models import ArtifactRow, Base, EventRow, GateRow, InboxRow, RunRow, StepRow

logger = logging.getLogger(__name__)

_SEQ_RETRIES = 8


def create_engine(db_url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Postgres URLs are normalized to the asyncpg driver, e.g. ``postgres://``
    and ``postgresql+psycopg://`` become ``postgresql+asyncpg://``.
    """
    url = re.sub(r"^postgres(?:ql)?(?:\+[a-z0-9_]+)?://", "postgresql+asyncpg://", db_url, count=1)
    return create_async_engine(url, pool_pre_ping=True)


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an ``async_sessionmaker`` with safe defaults for this project."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_all(engine: AsyncEngine) -> None:
    """Create all tables for the current ORM metadata.

    This is mainly intended for tests and local development.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back; every stored value is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _enum_value(value: Any) -> str:
    return str(getattr(value, "value", value))


def _to_run(row: RunRow) -> Run:
    return Run(
        id=row.id,
        status=RunStatus(row.status),
        plan=RunPlan.model_validate(row.plan),
        owner=row.owner,
        project_id=row.project_id,
        created_at=_as_utc(row.created_at),
        ended_at=_as_utc(row.ended_at),
    )


def _to_step(row: StepRow) -> Step:
    return Step(
        id=row.id,
        run_id=row.run_id,
        name=row.name,
        tool=row.tool,
        status=StepStatus(row.status),
        inputs=row.inputs or {},
        outputs=row.outputs,
        idempotency_key=row.idempotency_key,
        created_at=_as_utc(row.created_at),
        started_at=_as_utc(row.started_at),
        ended_at=_as_utc(row.ended_at),
    )


def _to_gate(row: GateRow) -> Gate:
    return Gate(
        id=row.id,
        run_id=row.run_id,
        step_id=row.step_id,
        gate_type=row.gate_type,
        status=GateStatus(row.status),
        approved_by=row.approved_by,
        approved_at=_as_utc(row.approved_at),
        created_at=_as_utc(row.created_at),
    )


def _to_artifact(row: ArtifactRow, step_name: Optional[str] = None) -> Artifact:
    return Artifact(
        id=row.id,
        step_id=row.step_id,
        type=row.type,
        uri=row.uri,
        metadata=row.meta or {},
        created_at=_as_utc(row.created_at),
        step_name=step_name,
    )


@dataclass(frozen=True)
class SqlRunRepository(RunRepository):
    """SQL implementation of ``RunRepository``."""

    session_factory: async_sessionmaker[AsyncSession]

    async def create(self, plan: RunPlan, *, owner: str, project_id: str = "default") -> Run:
        """
        Persist a new run record in ``queued`` status.

        Args:
            plan: The submitted plan.
            owner: The owning identity.
            project_id: The project identifier.

        Returns:
            The created Run.
        """
        run = Run(plan=plan, owner=owner, project_id=project_id)
        async with self.session_factory() as s:
            s.add(
                RunRow(
                    id=run.id,
                    status=run.status.value,
                    plan=plan.model_dump(mode="json"),
                    owner=owner,
                    project_id=project_id,
                    created_at=run.created_at,
                    ended_at=None,
                )
            )
            await s.commit()
        return run

    async def get(self, run_id: str) -> Optional[Run]:
        async with self.session_factory() as s:
            row = await s.get(RunRow, run_id)
            return _to_run(row) if row is not None else None

    async def list(
        self,
        *,
        owner: Optional[str] = None,
        project_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Run]:
        async with self.session_factory() as s:
            stmt = select(RunRow)
            if owner:
                stmt = stmt.where(RunRow.owner == owner)
            if project_id:
                stmt = stmt.where(RunRow.project_id == project_id)
            stmt = stmt.order_by(RunRow.created_at.desc()).offset(offset).limit(limit)
            result = await s.execute(stmt)
            return [_to_run(row) for row in result.scalars().all()]

    async def transition(
        self,
        run_id: str,
        *,
        from_statuses: Iterable[RunStatus],
        to_status: RunStatus,
        ended_at: Optional[datetime] = None,
    ) -> bool:
        """
        Compare-and-set the run status.

        Args:
            run_id: The run identifier.
            from_statuses: Allowed current statuses.
            to_status: The new status.
            ended_at: End timestamp to store (cleared when None).

        Returns:
            True if exactly this call moved the run.
        """
        allowed = [_enum_value(st) for st in from_statuses]
        async with self.session_factory() as s:
            result = await s.execute(
                update(RunRow)
                .where(RunRow.id == run_id, RunRow.status.in_(allowed))
                .values(status=to_status.value, ended_at=ended_at)
            )
            await s.commit()
            return result.rowcount == 1


@dataclass(frozen=True)
class SqlStepRepository(StepRepository):
    """SQL implementation of ``StepRepository``."""

    session_factory: async_sessionmaker[AsyncSession]

    async def create(
        self,
        *,
        run_id: str,
        name: str,
        tool: str,
        inputs: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> Step:
        """
        Insert a step; on a duplicate ``(run_id, idempotency_key)`` return the
        row that won the race.

        Args:
            run_id: The owning run.
            name: The step name.
            tool: The tool the step invokes.
            inputs: Step inputs (including the ``_policy`` block, if any).
            idempotency_key: Deterministic key; None disables deduplication.

        Returns:
            The created or pre-existing Step.
        """
        if idempotency_key is not None:
            existing = await self.get_by_idempotency_key(run_id, idempotency_key)
            if existing is not None:
                return existing

        step = Step(run_id=run_id, name=name, tool=tool, inputs=dict(inputs), idempotency_key=idempotency_key)
        async with self.session_factory() as s:
            s.add(
                StepRow(
                    id=step.id,
                    run_id=run_id,
                    name=name,
                    tool=tool,
                    status=step.status.value,
                    inputs=step.inputs,
                    outputs=None,
                    idempotency_key=idempotency_key,
                    created_at=step.created_at,
                )
            )
            try:
                await s.commit()
                return step
            except IntegrityError:
                await s.rollback()
                if idempotency_key is None:
                    raise
                logger.debug(f"Step insert lost race on key {idempotency_key}; returning existing row")

        existing = await self.get_by_idempotency_key(run_id, idempotency_key)
        if existing is None:
            raise StoreConflict(f"step with key {idempotency_key} conflicted but cannot be read back")
        return existing

    async def get(self, step_id: str) -> Optional[Step]:
        async with self.session_factory() as s:
            row = await s.get(StepRow, step_id)
            return _to_step(row) if row is not None else None

    async def get_by_idempotency_key(self, run_id: str, idempotency_key: str) -> Optional[Step]:
        async with self.session_factory() as s:
            stmt = select(StepRow).where(StepRow.run_id == run_id, StepRow.idempotency_key == idempotency_key)
            row = (await s.execute(stmt)).scalar_one_or_none()
            return _to_step(row) if row is not None else None

    async def update(self, step_id: str, patch: StepPatch) -> Optional[Step]:
        """
        Merge a partial update.

        Args:
            step_id: The step identifier.
            patch: Non-None fields are written.

        Returns:
            The updated Step, or None if it does not exist.
        """
        async with self.session_factory() as s:
            row = await s.get(StepRow, step_id)
            if row is None:
                return None
            if patch.status is not None:
                row.status = patch.status.value
            if patch.outputs is not None:
                row.outputs = patch.outputs
            if patch.started_at is not None:
                row.started_at = patch.started_at
            if patch.ended_at is not None:
                row.ended_at = patch.ended_at
            await s.commit()
            return _to_step(row)

    async def claim(self, step_id: str) -> bool:
        async with self.session_factory() as s:
            result = await s.execute(
                update(StepRow)
                .where(StepRow.id == step_id, StepRow.status == StepStatus.pending.value)
                .values(status=StepStatus.running.value, started_at=_utc_now(), ended_at=None)
            )
            await s.commit()
            return result.rowcount == 1

    async def complete(self, step_id: str, *, status: StepStatus, outputs: Dict[str, Any]) -> bool:
        async with self.session_factory() as s:
            result = await s.execute(
                update(StepRow)
                .where(StepRow.id == step_id, StepRow.status == StepStatus.running.value)
                .values(status=status.value, outputs=outputs, ended_at=_utc_now())
            )
            await s.commit()
            return result.rowcount == 1

    async def cancel(self, step_id: str) -> bool:
        live = [StepStatus.pending.value, StepStatus.running.value]
        async with self.session_factory() as s:
            result = await s.execute(
                update(StepRow)
                .where(StepRow.id == step_id, StepRow.status.in_(live))
                .values(status=StepStatus.cancelled.value, ended_at=_utc_now())
            )
            await s.commit()
            return result.rowcount == 1

    async def reset(self, step_id: str, *, from_statuses: Iterable[StepStatus]) -> bool:
        allowed = [_enum_value(st) for st in from_statuses]
        async with self.session_factory() as s:
            result = await s.execute(
                update(StepRow)
                .where(StepRow.id == step_id, StepRow.status.in_(allowed))
                .values(status=StepStatus.pending.value, outputs=None, started_at=None, ended_at=None)
            )
            await s.commit()
            return result.rowcount == 1

    async def list_by_run(self, run_id: str) -> list[Step]:
        async with self.session_factory() as s:
            stmt = select(StepRow).where(StepRow.run_id == run_id).order_by(StepRow.created_at.asc(), StepRow.id)
            result = await s.execute(stmt)
            return [_to_step(row) for row in result.scalars().all()]

    async def list_pending(self, limit: int) -> list[Step]:
        live = [st.value for st in LIVE_RUN_STATUSES]
        async with self.session_factory() as s:
            stmt = (
                select(StepRow)
                .join(RunRow, RunRow.id == StepRow.run_id)
                .where(StepRow.status == StepStatus.pending.value, RunRow.status.in_(live))
                .order_by(StepRow.created_at.asc())
                .limit(limit)
            )
            result = await s.execute(stmt)
            return [_to_step(row) for row in result.scalars().all()]

    async def list_stale_running(self, *, started_before: datetime, limit: int = 100) -> list[Step]:
        async with self.session_factory() as s:
            stmt = (
                select(StepRow)
                .where(StepRow.status == StepStatus.running.value, StepRow.started_at < started_before)
                .order_by(StepRow.started_at.asc())
                .limit(limit)
            )
            result = await s.execute(stmt)
            return [_to_step(row) for row in result.scalars().all()]


@dataclass(frozen=True)
class SqlEventRepository(EventRepository):
    """SQL implementation of ``EventRepository`` (append-only).

    The next ``seq`` is read as ``max(seq) + 1`` for the run; two writers
    racing for the same number collide on the unique ``(run_id, seq)``
    constraint and the loser retries with a fresh read.
    """

    session_factory: async_sessionmaker[AsyncSession]

    async def append(
        self,
        run_id: str,
        type: EventType,
        payload: Optional[Dict[str, Any]] = None,
        *,
        step_id: Optional[str] = None,
    ) -> Event:
        for _ in range(_SEQ_RETRIES):
            async with self.session_factory() as s:
                current = await s.scalar(select(func.max(EventRow.seq)).where(EventRow.run_id == run_id))
                event = Event(
                    run_id=run_id,
                    step_id=step_id,
                    seq=(current or 0) + 1,
                    type=type,
                    payload=dict(payload or {}),
                )
                s.add(
                    EventRow(
                        id=event.id,
                        run_id=run_id,
                        step_id=step_id,
                        seq=event.seq,
                        type=event.type.value,
                        payload=event.payload,
                        created_at=event.created_at,
                    )
                )
                try:
                    await s.commit()
                    return event
                except IntegrityError:
                    await s.rollback()
        raise StoreConflict(f"could not allocate event sequence for run {run_id}")

    async def list(self, run_id: str, *, after_seq: int = 0, limit: int = 1000) -> list[Event]:
        async with self.session_factory() as s:
            stmt = (
                select(EventRow)
                .where(EventRow.run_id == run_id, EventRow.seq > after_seq)
                .order_by(EventRow.seq.asc())
                .limit(limit)
            )
            result = await s.execute(stmt)
            return [
                Event(
                    id=row.id,
                    run_id=row.run_id,
                    step_id=row.step_id,
                    seq=row.seq,
                    type=EventType(row.type),
                    payload=row.payload or {},
                    created_at=_as_utc(row.created_at),
                )
                for row in result.scalars().all()
            ]


@dataclass(frozen=True)
class SqlArtifactRepository(ArtifactRepository):
    """SQL implementation of ``ArtifactRepository``."""

    session_factory: async_sessionmaker[AsyncSession]

    async def add(
        self,
        *,
        step_id: str,
        type: str,
        uri: str,
        metadata: Optional[Dict[str, Any]] = None,
        artifact_id: Optional[str] = None,
    ) -> Artifact:
        artifact = Artifact(step_id=step_id, type=type, uri=uri, metadata=dict(metadata or {}))
        if artifact_id is not None:
            artifact.id = artifact_id
        async with self.session_factory() as s:
            s.add(
                ArtifactRow(
                    id=artifact.id,
                    step_id=step_id,
                    type=type,
                    uri=uri,
                    meta=artifact.metadata,
                    created_at=artifact.created_at,
                )
            )
            await s.commit()
        return artifact

    async def list_by_step(self, step_id: str) -> list[Artifact]:
        async with self.session_factory() as s:
            stmt = select(ArtifactRow).where(ArtifactRow.step_id == step_id).order_by(ArtifactRow.created_at.asc())
            result = await s.execute(stmt)
            return [_to_artifact(row) for row in result.scalars().all()]

    async def list_by_run(self, run_id: str) -> list[Artifact]:
        async with self.session_factory() as s:
            stmt = (
                select(ArtifactRow, StepRow.name)
                .join(StepRow, StepRow.id == ArtifactRow.step_id)
                .where(StepRow.run_id == run_id)
                .order_by(ArtifactRow.created_at.asc())
            )
            result = await s.execute(stmt)
            return [_to_artifact(row, step_name) for row, step_name in result.all()]


@dataclass(frozen=True)
class SqlGateRepository(GateRepository):
    """SQL implementation of ``GateRepository``."""

    session_factory: async_sessionmaker[AsyncSession]

    async def create_or_get(self, *, run_id: str, step_id: str, gate_type: str) -> tuple[Gate, bool]:
        existing = await self.get(run_id=run_id, step_id=step_id, gate_type=gate_type)
        if existing is not None:
            return existing, False

        gate = Gate(run_id=run_id, step_id=step_id, gate_type=gate_type)
        async with self.session_factory() as s:
            s.add(
                GateRow(
                    id=gate.id,
                    run_id=run_id,
                    step_id=step_id,
                    gate_type=gate_type,
                    status=gate.status.value,
                    created_at=gate.created_at,
                )
            )
            try:
                await s.commit()
                return gate, True
            except IntegrityError:
                await s.rollback()

        existing = await self.get(run_id=run_id, step_id=step_id, gate_type=gate_type)
        if existing is None:
            raise StoreConflict(f"gate {gate_type} for step {step_id} conflicted but cannot be read back")
        return existing, False

    async def get(self, *, run_id: str, step_id: str, gate_type: str) -> Optional[Gate]:
        async with self.session_factory() as s:
            stmt = select(GateRow).where(
                GateRow.run_id == run_id, GateRow.step_id == step_id, GateRow.gate_type == gate_type
            )
            row = (await s.execute(stmt)).scalar_one_or_none()
            return _to_gate(row) if row is not None else None

    async def get_latest(self, *, run_id: str, step_id: str) -> Optional[Gate]:
        async with self.session_factory() as s:
            stmt = (
                select(GateRow)
                .where(GateRow.run_id == run_id, GateRow.step_id == step_id)
                .order_by(GateRow.created_at.desc())
                .limit(1)
            )
            row = (await s.execute(stmt)).scalar_one_or_none()
            return _to_gate(row) if row is not None else None

    async def resolve(
        self,
        gate_id: str,
        *,
        status: GateStatus,
        approved_by: Optional[str] = None,
    ) -> Optional[Gate]:
        values: Dict[str, Any] = {"status": status.value, "approved_by": approved_by}
        if approved_by is not None:
            values["approved_at"] = _utc_now()
        async with self.session_factory() as s:
            result = await s.execute(
                update(GateRow)
                .where(GateRow.id == gate_id, GateRow.status == GateStatus.pending.value)
                .values(**values)
            )
            await s.commit()
            if result.rowcount != 1:
                return None
            row = await s.get(GateRow, gate_id)
            return _to_gate(row) if row is not None else None

    async def list_by_run(self, run_id: str) -> list[Gate]:
        async with self.session_factory() as s:
            stmt = select(GateRow).where(GateRow.run_id == run_id).order_by(GateRow.created_at.asc())
            result = await s.execute(stmt)
            return [_to_gate(row) for row in result.scalars().all()]


@dataclass(frozen=True)
class SqlInboxRepository(InboxRepository):
    """SQL implementation of ``InboxRepository``; the key is the primary key."""

    session_factory: async_sessionmaker[AsyncSession]

    async def mark_if_new(self, key: str) -> bool:
        async with self.session_factory() as s:
            s.add(InboxRow(key=key, created_at=_utc_now()))
            try:
                await s.commit()
                return True
            except IntegrityError:
                await s.rollback()
                return False

    async def delete(self, key: str) -> None:
        async with self.session_factory() as s:
            await s.execute(delete(InboxRow).where(InboxRow.key == key))
            await s.commit()


@dataclass(frozen=True)
class SqlStoreBundle:
    """Convenience bundle of all SQL repositories for dependency injection."""

    runs: SqlRunRepository
    steps: SqlStepRepository
    events: SqlEventRepository
    artifacts: SqlArtifactRepository
    gates: SqlGateRepository
    inbox: SqlInboxRepository


def build_sql_repos(*, session_factory: async_sessionmaker[AsyncSession]) -> SqlStoreBundle:
    """Build a ``SqlStoreBundle`` from a session factory."""
    return SqlStoreBundle(
        runs=SqlRunRepository(session_factory=session_factory),
        steps=SqlStepRepository(session_factory=session_factory),
        events=SqlEventRepository(session_factory=session_factory),
        artifacts=SqlArtifactRepository(session_factory=session_factory),
        gates=SqlGateRepository(session_factory=session_factory),
        inbox=SqlInboxRepository(session_factory=session_factory),
    )
