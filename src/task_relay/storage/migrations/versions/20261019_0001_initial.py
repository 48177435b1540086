"""Initial task store, task event audit and broker message tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "background_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("parent_task_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("parameters_json", sa.Text(), nullable=True),
        sa.Column("progress_json", sa.Text(), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error_info_json", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("execution_node_id", sa.String(), nullable=True),
        sa.Column("timestamps_json", sa.Text(), nullable=True),
        sa.Column("sub_task_summary_json", sa.Text(), nullable=True),
        sa.Column("expected_sub_tasks", sa.Integer(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["parent_task_id"],
            ["background_tasks.task_id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_background_tasks_user_id", "background_tasks", ["user_id"])
    op.create_index("ix_background_tasks_task_type", "background_tasks", ["task_type"])
    op.create_index("ix_background_tasks_status", "background_tasks", ["status"])
    op.create_index("ix_background_tasks_parent_task_id", "background_tasks", ["parent_task_id"])
    op.create_index(
        "idx_background_tasks_user_status",
        "background_tasks",
        ["user_id", "status"],
    )
    op.create_index(
        "idx_background_tasks_status_updated",
        "background_tasks",
        ["status", "updated_at"],
    )

    op.create_table(
        "task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=True),
        sa.Column("dead_letter", sa.Boolean(), nullable=True),
        sa.Column("parent_task_id", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["background_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_events_event_id", "task_events", ["event_id"])
    op.create_index("ix_task_events_status", "task_events", ["status"])
    op.create_index("idx_task_events_task_time", "task_events", ["task_id", "created_at"])

    op.create_table(
        "broker_messages",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("exchange", sa.String(), nullable=False),
        sa.Column("routing_key", sa.String(), nullable=False),
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("headers_json", sa.Text(), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("channel_id", sa.String(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("redelivered", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("delivery_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_broker_messages_message_id", "broker_messages", ["message_id"])
    op.create_index("ix_broker_messages_channel_id", "broker_messages", ["channel_id"])
    op.create_index(
        "idx_broker_messages_queue_ready",
        "broker_messages",
        ["queue_name", "channel_id", "id"],
    )
    op.create_index(
        "idx_broker_messages_expiry",
        "broker_messages",
        ["queue_name", "expires_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_broker_messages_expiry", table_name="broker_messages")
    op.drop_index("idx_broker_messages_queue_ready", table_name="broker_messages")
    op.drop_index("ix_broker_messages_channel_id", table_name="broker_messages")
    op.drop_index("ix_broker_messages_message_id", table_name="broker_messages")
    op.drop_table("broker_messages")
    op.drop_index("idx_task_events_task_time", table_name="task_events")
    op.drop_index("ix_task_events_status", table_name="task_events")
    op.drop_index("ix_task_events_event_id", table_name="task_events")
    op.drop_table("task_events")
    op.drop_index("idx_background_tasks_status_updated", table_name="background_tasks")
    op.drop_index("idx_background_tasks_user_status", table_name="background_tasks")
    op.drop_index("ix_background_tasks_parent_task_id", table_name="background_tasks")
    op.drop_index("ix_background_tasks_status", table_name="background_tasks")
    op.drop_index("ix_background_tasks_task_type", table_name="background_tasks")
    op.drop_index("ix_background_tasks_user_id", table_name="background_tasks")
    op.drop_table("background_tasks")
