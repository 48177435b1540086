"""SQLModel ORM tables for the task store and the SQLite broker."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class BackgroundTask(SQLModel, table=True):
    __tablename__ = "background_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_background_tasks_user_status", "user_id", "status"),
        Index("idx_background_tasks_status_updated", "status", "updated_at"),
    )

    task_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    task_type: str = Field(index=True)
    parent_task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("background_tasks.task_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    status: str = Field(index=True)
    parameters_json: str | None = Field(default=None, sa_column=Column(Text))
    progress_json: str | None = Field(default=None, sa_column=Column(Text))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_info_json: str | None = Field(default=None, sa_column=Column(Text))
    retry_count: int = Field(default=0)
    last_attempt_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    next_attempt_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    execution_node_id: str | None = None
    timestamps_json: str | None = Field(default=None, sa_column=Column(Text))
    sub_task_summary_json: str | None = Field(default=None, sa_column=Column(Text))
    expected_sub_tasks: int | None = None
    version: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BackgroundTaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    event_id: str = Field(index=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("background_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    task_type: str
    user_id: str
    status: str = Field(index=True)
    retry_count: int | None = None
    dead_letter: bool | None = None
    parent_task_id: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BrokerMessage(SQLModel, table=True):
    __tablename__ = "broker_messages"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_broker_messages_queue_ready", "queue_name", "channel_id", "id"),
        Index("idx_broker_messages_expiry", "queue_name", "expires_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    queue_name: str
    exchange: str
    routing_key: str
    message_id: str = Field(index=True)
    correlation_id: str | None = None
    headers_json: str | None = Field(default=None, sa_column=Column(Text))
    body: str = Field(sa_column=Column(Text, nullable=False))
    enqueued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    channel_id: str | None = Field(default=None, index=True)
    delivered_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    redelivered: bool = Field(default=False)
    delivery_count: int = Field(default=0)
