"""Versioned persistence for background task records."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from task_relay.orchestrator.models import (
    ExternalTaskEvent,
    TaskEventView,
    TaskRecord,
    TaskStatus,
)
from task_relay.storage.common import (
    dump_json,
    from_iso,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_relay.storage.sqlmodel_models import BackgroundTask, BackgroundTaskEvent

logger = logging.getLogger(__name__)


class TaskRepository:
    """Task record store backed by SQLModel + SQLite.

    Writes after creation go through ``compare_and_swap`` only: the row is
    updated when its version still equals the version the caller read.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def insert_task(self, record: TaskRecord) -> TaskRecord:
        now = utc_now()
        with Session(self.engine) as session:
            row = BackgroundTask(
                task_id=record.task_id,
                user_id=record.user_id,
                task_type=record.task_type,
                parent_task_id=record.parent_task_id,
                status=record.status.value,
                version=0,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            _apply_record(row, record)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_record(row)

    def get_task(self, task_id: str) -> TaskRecord | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(BackgroundTask).where(BackgroundTask.task_id == task_id),
            ).one_or_none()
            return _to_record(row) if row is not None else None

    def compare_and_swap(self, record: TaskRecord, *, expected_version: int) -> TaskRecord | None:
        """Persist ``record`` if the stored version is unchanged; ``None`` on conflict."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BackgroundTask)
                .where(
                    col(BackgroundTask.task_id) == record.task_id,
                    col(BackgroundTask.version) == expected_version,
                )
                .values(
                    status=record.status.value,
                    parameters_json=dump_json(record.parameters),
                    progress_json=dump_json(record.progress),
                    result_json=dump_json(record.result),
                    error_info_json=dump_json(record.error_info),
                    retry_count=record.retry_count,
                    last_attempt_at=_optional_db_datetime(record.last_attempt_at),
                    next_attempt_at=_optional_db_datetime(record.next_attempt_at),
                    execution_node_id=record.execution_node_id,
                    timestamps_json=dump_json(_dump_timestamps(record.timestamps)),
                    sub_task_summary_json=dump_json(record.sub_task_summary or None),
                    expected_sub_tasks=record.expected_sub_tasks,
                    version=expected_version + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            row = session.exec(
                select(BackgroundTask).where(BackgroundTask.task_id == record.task_id),
            ).one()
            session.commit()
            return _to_record(row)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        user_id: str | None = None,
        parent_task_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskRecord]:
        with Session(self.engine) as session:
            statement = select(BackgroundTask)
            if status is not None:
                statement = statement.where(BackgroundTask.status == status.value)
            if user_id is not None:
                statement = statement.where(BackgroundTask.user_id == user_id)
            if parent_task_id is not None:
                statement = statement.where(BackgroundTask.parent_task_id == parent_task_id)
            rows = session.exec(
                statement.order_by(col(BackgroundTask.created_at).desc()).limit(max(1, limit)),
            ).all()
            return [_to_record(row) for row in rows]

    def list_stale_running(self, *, cutoff: datetime, limit: int = 100) -> list[TaskRecord]:
        """Running tasks whose last attempt started before ``cutoff``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(BackgroundTask)
                .where(
                    BackgroundTask.status == TaskStatus.RUNNING.value,
                    col(BackgroundTask.last_attempt_at) < to_db_datetime(cutoff),
                )
                .order_by(col(BackgroundTask.last_attempt_at).asc())
                .limit(max(1, limit)),
            ).all()
            return [_to_record(row) for row in rows]

    def count_sub_tasks_by_status(self, parent_task_id: str) -> dict[TaskStatus, int]:
        """Number of child records of ``parent_task_id`` per status."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(BackgroundTask.status, func.count())
                .where(BackgroundTask.parent_task_id == parent_task_id)
                .group_by(BackgroundTask.status),
            ).all()
            return {TaskStatus(status): count for status, count in rows}

    def list_running_parents(self, *, limit: int = 100) -> list[TaskRecord]:
        """Running tasks that declared an expected sub-task count."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(BackgroundTask)
                .where(
                    BackgroundTask.status == TaskStatus.RUNNING.value,
                    col(BackgroundTask.expected_sub_tasks).is_not(None),
                )
                .order_by(col(BackgroundTask.updated_at).asc())
                .limit(max(1, limit)),
            ).all()
            return [_to_record(row) for row in rows]

    def add_event(self, event: ExternalTaskEvent) -> None:
        details = {
            key: value
            for key, value in {
                "progress": event.progress,
                "result": event.result,
                "error_info": event.error_info,
                "execution_node_id": event.execution_node_id,
            }.items()
            if value is not None
        }
        with Session(self.engine) as session:
            session.add(
                BackgroundTaskEvent(
                    event_id=event.event_id,
                    task_id=event.task_id,
                    task_type=event.task_type,
                    user_id=event.user_id,
                    status=event.status.value,
                    retry_count=event.retry_count,
                    dead_letter=event.dead_letter,
                    parent_task_id=event.parent_task_id,
                    details_json=dump_json(details or None),
                    created_at=to_db_datetime(event.timestamp),
                ),
            )
            session.commit()

    def list_events(self, task_id: str) -> list[TaskEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BackgroundTaskEvent)
                .where(BackgroundTaskEvent.task_id == task_id)
                .order_by(col(BackgroundTaskEvent.created_at).asc(), col(BackgroundTaskEvent.id)),
            ).all()
            return [
                TaskEventView(
                    event_id=row.event_id,
                    task_id=row.task_id,
                    status=TaskStatus(row.status),
                    retry_count=row.retry_count,
                    dead_letter=row.dead_letter,
                    details=load_json(row.details_json),
                    created_at=to_utc_aware_datetime(row.created_at),
                )
                for row in rows
            ]


def _apply_record(row: BackgroundTask, record: TaskRecord) -> None:
    row.parameters_json = dump_json(record.parameters)
    row.progress_json = dump_json(record.progress)
    row.result_json = dump_json(record.result)
    row.error_info_json = dump_json(record.error_info)
    row.retry_count = record.retry_count
    row.last_attempt_at = _optional_db_datetime(record.last_attempt_at)
    row.next_attempt_at = _optional_db_datetime(record.next_attempt_at)
    row.execution_node_id = record.execution_node_id
    row.timestamps_json = dump_json(_dump_timestamps(record.timestamps))
    row.sub_task_summary_json = dump_json(record.sub_task_summary or None)
    row.expected_sub_tasks = record.expected_sub_tasks


def _optional_db_datetime(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _optional_aware_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _dump_timestamps(timestamps: dict[str, datetime]) -> dict[str, str] | None:
    if not timestamps:
        return None
    return {name: value.isoformat() for name, value in timestamps.items()}


def _to_record(row: BackgroundTask) -> TaskRecord:
    raw_timestamps = load_json(row.timestamps_json) or {}
    return TaskRecord(
        task_id=row.task_id,
        user_id=row.user_id,
        task_type=row.task_type,
        status=TaskStatus(row.status),
        parent_task_id=row.parent_task_id,
        parameters=load_json(row.parameters_json),
        progress=load_json(row.progress_json),
        result=load_json(row.result_json),
        error_info=load_json(row.error_info_json),
        retry_count=row.retry_count,
        last_attempt_at=_optional_aware_datetime(row.last_attempt_at),
        next_attempt_at=_optional_aware_datetime(row.next_attempt_at),
        execution_node_id=row.execution_node_id,
        timestamps={name: from_iso(value) for name, value in raw_timestamps.items()},
        sub_task_summary=dict(load_json(row.sub_task_summary_json) or {}),
        expected_sub_tasks=row.expected_sub_tasks,
        version=row.version,
        created_at=_optional_aware_datetime(row.created_at),
        updated_at=_optional_aware_datetime(row.updated_at),
    )
