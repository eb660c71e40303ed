"""Task contexts and their append-only entry log."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "task_contexts",
        sa.Column("context_id", sa.String(), nullable=False),
        sa.Column("task_template_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("template_json", sa.Text(), nullable=False),
        sa.Column("audit_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("audit_reason", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("context_id"),
    )
    op.create_index(
        "ix_task_contexts_task_template_id",
        "task_contexts",
        ["task_template_id"],
        unique=False,
    )
    op.create_index("ix_task_contexts_tenant_id", "task_contexts", ["tenant_id"], unique=False)

    op.create_table(
        "context_entries",
        sa.Column("entry_id", sa.String(), nullable=False),
        sa.Column("context_id", sa.String(), nullable=False),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("actor_version", sa.String(), nullable=False),
        sa.Column("operation", sa.String(), nullable=False),
        sa.Column("data_json", sa.Text(), nullable=False),
        sa.Column("reasoning", sa.Text(), nullable=False),
        sa.Column("trigger_json", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(
            ["context_id"],
            ["task_contexts.context_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("entry_id"),
        sa.UniqueConstraint(
            "context_id",
            "sequence_number",
            name="uq_context_entries_sequence",
        ),
    )
    op.create_index(
        "ix_context_entries_context_id",
        "context_entries",
        ["context_id"],
        unique=False,
    )
    op.create_index(
        "ix_context_entries_operation",
        "context_entries",
        ["operation"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_context_entries_operation", table_name="context_entries")
    op.drop_index("ix_context_entries_context_id", table_name="context_entries")
    op.drop_table("context_entries")
    op.drop_index("ix_task_contexts_tenant_id", table_name="task_contexts")
    op.drop_index("ix_task_contexts_task_template_id", table_name="task_contexts")
    op.drop_table("task_contexts")
