"""create job, idempotency, update buffer and rate limit tables

Revision ID: 3b1f9c2d7a10
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b1f9c2d7a10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column(
            "vendor_id", sa.Text, nullable=False, comment="Tenant tag of the requesting vendor"
        ),
        sa.Column("type", sa.Text, nullable=False, comment="JobType value"),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="queued",
            comment="Job status: queued|processing|succeeded|failed",
        ),
        sa.Column(
            "entity_key", sa.Text, nullable=True, comment="Business entity the job concerns"
        ),
        sa.Column("payload", sa.JSON, nullable=True),
        sa.Column("result", sa.JSON, nullable=True, comment="Set only on success"),
        sa.Column("error", sa.Text, nullable=True, comment="Last error message, truncated"),
        sa.Column(
            "error_code", sa.Text, nullable=True, comment="Machine-readable failure category"
        ),
        sa.Column(
            "attempts",
            sa.SmallInteger,
            nullable=False,
            server_default="0",
            comment="Deliveries that claimed the job",
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "status IN ('queued', 'processing', 'succeeded', 'failed')",
            name="jobs_status_check",
        ),
    )
    op.create_index("ix_jobs_status_updated_at", "jobs", ["status", "updated_at"])

    op.create_table(
        "idempotency_keys",
        sa.Column("vendor_id", sa.Text, nullable=False),
        sa.Column("key", sa.Text, nullable=False),
        sa.Column("job_id", sa.Text, nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("vendor_id", "key", name="pk_idempotency_keys"),
    )

    op.create_table(
        "update_buffers",
        sa.Column("entity_id", sa.Text, primary_key=True),
        sa.Column("latest_payload", sa.JSON, nullable=False),
        sa.Column("pending", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("last_job_id", sa.Text, nullable=True),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment="Last write; optimistic guard for settling a flush",
        ),
    )

    op.create_table(
        "rate_limit_windows",
        sa.Column("vendor_id", sa.Text, nullable=False),
        sa.Column("route_key", sa.Text, nullable=False),
        sa.Column("window_start", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("count", sa.Integer, nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint(
            "vendor_id", "route_key", "window_start", name="pk_rate_limit_windows"
        ),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("rate_limit_windows")
    op.drop_table("update_buffers")
    op.drop_table("idempotency_keys")
    op.drop_index("ix_jobs_status_updated_at", table_name="jobs")
    op.drop_table("jobs")
