"""Create agent session bindings table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agent_sessions",
        sa.Column("principal_id", sa.String(), nullable=False),
        sa.Column("conversation_id", sa.String(), nullable=False),
        sa.Column("thread_key", sa.String(), nullable=False, server_default="direct"),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("last_marker", sa.Text(), nullable=True),
        sa.Column("working_directory", sa.Text(), nullable=True),
        sa.Column("saved_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("principal_id", "conversation_id", "thread_key"),
    )
    op.create_index("ix_agent_sessions_session_id", "agent_sessions", ["session_id"])
    op.create_index("ix_agent_sessions_saved_at", "agent_sessions", ["saved_at"])


def downgrade() -> None:
    op.drop_index("ix_agent_sessions_saved_at", table_name="agent_sessions")
    op.drop_index("ix_agent_sessions_session_id", table_name="agent_sessions")
    op.drop_table("agent_sessions")
