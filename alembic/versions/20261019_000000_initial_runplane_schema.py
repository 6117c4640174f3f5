"""Initial runplane schema

Revision ID: 20261019_000000
Revises: None
Create Date: 2026-10-19 00:00:00.000000

Creates the run/step orchestration tables:
- rp_runs, rp_steps (unique run_id + idempotency_key)
- rp_events (append-only, unique run_id + seq)
- rp_artifacts, rp_gates (unique run_id + step_id + gate_type)
- rp_inbox (at-most-once markers)
- rp_step_queue (durable step queue)

Revision format: YYYYMMDD_HHMMSS_description

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261019_000000"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(JSONB(), "postgresql")


def upgrade() -> None:
    """Create all runplane tables."""

    op.create_table(
        "rp_runs",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("plan", JSON_TYPE, nullable=False),
        sa.Column("owner", sa.String(128), nullable=False),
        sa.Column("project_id", sa.String(128), nullable=False, server_default="default"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_rp_runs_status", "status"),
        sa.Index("ix_rp_runs_owner", "owner"),
    )

    op.create_table(
        "rp_steps",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("run_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("tool", sa.String(256), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("inputs", JSON_TYPE, nullable=False),
        sa.Column("outputs", JSON_TYPE, nullable=True),
        sa.Column("idempotency_key", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id", "idempotency_key", name="uq_rp_steps_run_idempotency_key"),
        sa.Index("ix_rp_steps_run_id", "run_id"),
        sa.Index("ix_rp_steps_status", "status"),
        sa.Index("ix_rp_steps_created_at", "created_at"),
    )

    op.create_table(
        "rp_events",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("run_id", sa.String(64), nullable=False),
        sa.Column("step_id", sa.String(64), nullable=True),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id", "seq", name="uq_rp_events_run_seq"),
        sa.Index("ix_rp_events_run_id", "run_id"),
    )

    op.create_table(
        "rp_artifacts",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("step_id", sa.String(64), nullable=False),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("uri", sa.Text(), nullable=False),
        sa.Column("metadata", JSON_TYPE, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_rp_artifacts_step_id", "step_id"),
    )

    op.create_table(
        "rp_gates",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("run_id", sa.String(64), nullable=False),
        sa.Column("step_id", sa.String(64), nullable=False),
        sa.Column("gate_type", sa.String(128), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("approved_by", sa.String(128), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id", "step_id", "gate_type", name="uq_rp_gates_run_step_type"),
        sa.Index("ix_rp_gates_run_id", "run_id"),
    )

    op.create_table(
        "rp_inbox",
        sa.Column("key", sa.String(512), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "rp_step_queue",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("step_id", sa.String(64), nullable=False),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_rp_step_queue_step_id", "step_id"),
        sa.Index("ix_rp_step_queue_available_at", "available_at"),
    )


def downgrade() -> None:
    """Drop all tables created in upgrade."""
    op.drop_table("rp_step_queue")
    op.drop_table("rp_inbox")
    op.drop_table("rp_gates")
    op.drop_table("rp_artifacts")
    op.drop_table("rp_events")
    op.drop_table("rp_steps")
    op.drop_table("rp_runs")
