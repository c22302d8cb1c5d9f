"""create jobs, idempotency ledger and result cache tables

Revision ID: 3b1f7c2a9d04
Revises:
Create Date: 2025-09-14 10:21:37.418205

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b1f7c2a9d04"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("type", sa.Text, nullable=False, comment="Handler identifier"),
        sa.Column(
            "payload", sa.JSON, nullable=False, comment="Opaque job parameters"
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            comment="pending|processing|completed|failed|cancelled",
        ),
        sa.Column(
            "priority",
            sa.SmallInteger,
            nullable=False,
            comment="0=low 1=normal 2=high 3=urgent, higher is claimed first",
        ),
        sa.Column(
            "scheduled_for",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Earliest eligibility time",
        ),
        # Retry and timeout budget
        sa.Column(
            "retries", sa.Integer, nullable=False, comment="Failures retried so far"
        ),
        sa.Column("max_retries", sa.Integer, nullable=False, comment="Retry budget"),
        sa.Column(
            "timeout_seconds", sa.Integer, nullable=False, comment="Processing timeout"
        ),
        sa.Column(
            "attempts", sa.Integer, nullable=False, comment="Number of claims made"
        ),
        # Worker coordination fields
        sa.Column(
            "locked_by", sa.Text, nullable=True, comment="Worker holding the claim"
        ),
        sa.Column(
            "heartbeat_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Last worker heartbeat",
        ),
        sa.Column(
            "lease_expires_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Claim is reclaimable by the watchdog after this instant",
        ),
        # Results and progress
        sa.Column("result", sa.JSON, nullable=True, comment="Job result data"),
        sa.Column(
            "progress",
            sa.SmallInteger,
            nullable=False,
            comment="Percent complete 0-100",
        ),
        sa.Column("error", sa.Text, nullable=True, comment="Last error message"),
        sa.Column(
            "error_code", sa.Text, nullable=True, comment="Structured error identifier"
        ),
        # Timestamps
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        # Constraints
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint("priority BETWEEN 0 AND 3", name="jobs_priority_check"),
        sa.CheckConstraint("progress BETWEEN 0 AND 100", name="jobs_progress_check"),
        sa.CheckConstraint(
            "retries >= 0 AND retries <= max_retries", name="jobs_retries_check"
        ),
    )

    # Claim order, watchdog scan, per-type stats and retention sweep
    op.create_index(
        "ix_jobs_status_priority_created_at",
        "jobs",
        ["status", "priority", "created_at"],
    )
    op.create_index(
        "ix_jobs_status_lease_expires_at", "jobs", ["status", "lease_expires_at"]
    )
    op.create_index("ix_jobs_type_status", "jobs", ["type", "status"])
    op.create_index("ix_jobs_updated_at", "jobs", ["updated_at"])

    op.create_table(
        "idempotency_ledger",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=True),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("attempt_count", sa.Integer, nullable=False),
        sa.Column("processed_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('processing', 'success', 'failed')",
            name="idempotency_ledger_status_check",
        ),
        sa.CheckConstraint(
            "attempt_count >= 1", name="idempotency_ledger_attempt_count_check"
        ),
    )

    # Retention sweep only touches successful rows
    op.create_index(
        "ix_idempotency_ledger_status_processed_at",
        "idempotency_ledger",
        ["status", "processed_at"],
    )

    op.create_table(
        "result_cache",
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column(
            "fingerprint",
            sa.String(128),
            nullable=False,
            comment="Caller-supplied content hash",
        ),
        sa.Column(
            "context",
            sa.String(100),
            nullable=False,
            comment="Label of the computation",
        ),
        sa.Column(
            "analysis", sa.JSON, nullable=False, comment="Opaque computed result"
        ),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("hit_count", sa.Integer, nullable=False),
        sa.Column("last_hit_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("tenant_id", "fingerprint", "context"),
        sa.CheckConstraint("hit_count >= 0", name="result_cache_hit_count_check"),
    )

    op.create_index("ix_result_cache_expires_at", "result_cache", ["expires_at"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("result_cache")
    op.drop_table("idempotency_ledger")
    op.drop_table("jobs")
