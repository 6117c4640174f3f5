from __future__ import annotations

"""SQLAlchemy ORM models for run/step persistence.

These ORM models define the SQL schema used by
``runplane.orchestration.repos.sql`` and ``runplane.orchestration.queue.sql``.

Design
------

- Runs hold the submitted plan and a coarse status aggregate.
- Steps carry their own status; ``(run_id, idempotency_key)`` is unique so
  that concurrent materialization of the same step yields one row.
- Events form an append-only timeline; ``(run_id, seq)`` is unique.
- Gates are unique per ``(run_id, step_id, gate_type)``.
- Inbox keys are the primary key of their table, giving at-most-once markers.
- The step queue table backs the durable SQL queue.

JSON columns use JSONB on Postgres and plain JSON elsewhere (SQLite in tests).
Table names are prefixed with ``rp_`` to avoid collisions in shared databases.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class RunRow(Base):
    """Row model for ``rp_runs``."""

    __tablename__ = "rp_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), index=True)
    plan: Mapped[Dict[str, Any]] = mapped_column(JSONType)
    owner: Mapped[str] = mapped_column(String(128), index=True)
    project_id: Mapped[str] = mapped_column(String(128), default="default")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class StepRow(Base):
    """Row model for ``rp_steps``.

    ``idempotency_key`` is nullable; SQL treats NULLs as distinct so steps
    without a key are never deduplicated.
    """

    __tablename__ = "rp_steps"
    __table_args__ = (UniqueConstraint("run_id", "idempotency_key", name="uq_rp_steps_run_idempotency_key"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(256))
    tool: Mapped[str] = mapped_column(String(256))
    status: Mapped[str] = mapped_column(String(32), index=True)
    inputs: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict)
    outputs: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class EventRow(Base):
    """Row model for ``rp_events``. Never updated after insert."""

    __tablename__ = "rp_events"
    __table_args__ = (UniqueConstraint("run_id", "seq", name="uq_rp_events_run_seq"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), index=True)
    step_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    seq: Mapped[int] = mapped_column(Integer)
    type: Mapped[str] = mapped_column(String(64))
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class ArtifactRow(Base):
    """Row model for ``rp_artifacts``."""

    __tablename__ = "rp_artifacts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    step_id: Mapped[str] = mapped_column(String(64), index=True)
    type: Mapped[str] = mapped_column(String(64))
    uri: Mapped[str] = mapped_column(Text)
    # ``metadata`` is reserved on declarative classes
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class GateRow(Base):
    """Row model for ``rp_gates``."""

    __tablename__ = "rp_gates"
    __table_args__ = (UniqueConstraint("run_id", "step_id", "gate_type", name="uq_rp_gates_run_step_type"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), index=True)
    step_id: Mapped[str] = mapped_column(String(64))
    gate_type: Mapped[str] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(String(16))
    approved_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class InboxRow(Base):
    """Row model for ``rp_inbox``."""

    __tablename__ = "rp_inbox"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class StepQueueRow(Base):
    """Row model for ``rp_step_queue``.

    A job is visible when ``available_at`` has passed and it is not claimed,
    or its claim expired (``claimed_until`` in the past).
    """

    __tablename__ = "rp_step_queue"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    step_id: Mapped[str] = mapped_column(String(64), index=True)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    claimed_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
