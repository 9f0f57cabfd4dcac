"""Create thread and thread chat tables with status enums."""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "202610010001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


THREAD_STATUS = postgresql.ENUM(
    "draft",
    "scheduled",
    "queued",
    "queued-tasks-concurrency",
    "queued-sandbox-creation-rate-limit",
    "queued-agent-rate-limit",
    "queued-blocked",
    "booting",
    "working",
    "stopping",
    "checkpointing",
    "working-done",
    "working-error",
    "working-stopped",
    "complete",
    "error",
    "stopped",
    name="threadstatus",
    create_type=False,
)

PULL_REQUEST_STATUS = postgresql.ENUM(
    "draft",
    "open",
    "closed",
    "merged",
    name="pullrequeststatus",
    create_type=False,
)

PULL_REQUEST_CHECKS_STATUS = postgresql.ENUM(
    "none",
    "pending",
    "success",
    "failure",
    "unknown",
    name="pullrequestchecksstatus",
    create_type=False,
)

_JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    """Create thread lifecycle schema objects."""

    bind = op.get_bind()
    THREAD_STATUS.create(bind, checkfirst=True)
    PULL_REQUEST_STATUS.create(bind, checkfirst=True)
    PULL_REQUEST_CHECKS_STATUS.create(bind, checkfirst=True)

    op.create_table(
        "threads",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=512), nullable=True),
        sa.Column("github_repo_full_name", sa.String(length=255), nullable=False),
        sa.Column("github_pr_number", sa.Integer(), nullable=True),
        sa.Column(
            "pr_status",
            postgresql.ENUM(name="pullrequeststatus", create_type=False),
            nullable=True,
        ),
        sa.Column(
            "pr_checks_status",
            postgresql.ENUM(name="pullrequestchecksstatus", create_type=False),
            nullable=True,
        ),
        sa.Column("automation_id", sa.String(length=255), nullable=True),
        sa.Column("parent_thread_id", sa.Uuid(), nullable=True),
        sa.Column(
            "archived", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "is_backlog", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "status",
            postgresql.ENUM(name="threadstatus", create_type=False),
            nullable=False,
            server_default=sa.text("'queued'::threadstatus"),
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("schedule_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reattempt_queue_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("messages", _JSON, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(
            ["parent_thread_id"],
            ["threads.id"],
            name="fk_threads_parent_thread_id",
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_threads"),
    )
    op.create_index(
        "ix_threads_user_id_status_created_at",
        "threads",
        ["user_id", "status", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_threads_user_id_archived_updated_at",
        "threads",
        ["user_id", "archived", "updated_at"],
        unique=False,
    )
    op.create_index(
        "ix_threads_automation_id", "threads", ["automation_id"], unique=False
    )

    op.create_table(
        "thread_chats",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("thread_id", sa.Uuid(), nullable=False),
        sa.Column(
            "status",
            postgresql.ENUM(name="threadstatus", create_type=False),
            nullable=False,
            server_default=sa.text("'queued'::threadstatus"),
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("schedule_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reattempt_queue_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("messages", _JSON, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(
            ["thread_id"],
            ["threads.id"],
            name="fk_thread_chats_thread_id",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_thread_chats"),
    )
    op.create_index(
        "ix_thread_chats_user_id_status_created_at",
        "thread_chats",
        ["user_id", "status", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_thread_chats_thread_id", "thread_chats", ["thread_id"], unique=False
    )


def downgrade() -> None:
    """Drop thread lifecycle schema objects."""

    op.drop_index("ix_thread_chats_thread_id", table_name="thread_chats")
    op.drop_index(
        "ix_thread_chats_user_id_status_created_at", table_name="thread_chats"
    )
    op.drop_table("thread_chats")
    op.drop_index("ix_threads_automation_id", table_name="threads")
    op.drop_index("ix_threads_user_id_archived_updated_at", table_name="threads")
    op.drop_index("ix_threads_user_id_status_created_at", table_name="threads")
    op.drop_table("threads")

    bind = op.get_bind()
    PULL_REQUEST_CHECKS_STATUS.drop(bind, checkfirst=True)
    PULL_REQUEST_STATUS.drop(bind, checkfirst=True)
    THREAD_STATUS.drop(bind, checkfirst=True)
