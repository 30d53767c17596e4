"""Persistence and state transitions for bulk notification tasks."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from .db import session_scope
from .models import ACTIVE_STATUSES, BulkNotificationTask, TaskStatus, utcnow

logger = logging.getLogger(__name__)


class TaskRepository:
    """Reads and writes ``bulk_notifications`` rows.

    Every status change is one conditional UPDATE guarded by the statuses the
    task may legally move from, and reports whether the row actually moved.
    A task in a terminal state is never overwritten.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def create(self, task_id: str, **fields: Any) -> BulkNotificationTask:
        now = utcnow()
        task = BulkNotificationTask(
            id=task_id,
            status=TaskStatus.PENDING,
            total_sent=0,
            total_failed=0,
            created_at=now,
            updated_at=now,
            **fields,
        )
        with session_scope(self.session_factory) as session:
            session.add(task)
        logger.debug("Created task %s", task_id)
        return task

    def get(self, task_id: str) -> BulkNotificationTask | None:
        with session_scope(self.session_factory) as session:
            return session.get(BulkNotificationTask, task_id)

    def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        from_statuses: Iterable[TaskStatus] | None = None,
        **values: Any,
    ) -> bool:
        """Move a task to ``status`` if it is currently in one of ``from_statuses``.

        ``from_statuses`` defaults to the active (non-terminal) statuses.
        """
        allowed = list(from_statuses) if from_statuses is not None else list(ACTIVE_STATUSES)
        stmt = (
            update(BulkNotificationTask)
            .where(BulkNotificationTask.id == task_id, BulkNotificationTask.status.in_(allowed))
            .values(status=status, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        with session_scope(self.session_factory) as session:
            moved = session.execute(stmt).rowcount == 1

        if not moved:
            logger.debug("Task %s not moved to %s (not in %s)", task_id, status.value, [s.value for s in allowed])
        return moved

    def mark_processing(self, task_id: str) -> bool:
        return self.update_status(
            task_id, TaskStatus.PROCESSING, [TaskStatus.PENDING], started_at=utcnow()
        )

    def complete(self, task_id: str) -> bool:
        return self.update_status(
            task_id, TaskStatus.COMPLETED, [TaskStatus.PROCESSING], completed_at=utcnow()
        )

    def fail(self, task_id: str, error: str | None = None) -> bool:
        return self.update_status(task_id, TaskStatus.FAILED, completed_at=utcnow(), last_error=error)

    def cancel(self, task_id: str) -> bool:
        return self.update_status(task_id, TaskStatus.CANCELLED, completed_at=utcnow())

    def increment_counters(self, task_id: str, sent: int, failed: int) -> bool:
        """Add a batch's outcome to the running totals.

        Applies whatever the current status is, so the counts of a batch that
        was in flight when the task got cancelled are still recorded.
        """
        stmt = (
            update(BulkNotificationTask)
            .where(BulkNotificationTask.id == task_id)
            .values(
                total_sent=BulkNotificationTask.total_sent + sent,
                total_failed=BulkNotificationTask.total_failed + failed,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        with session_scope(self.session_factory) as session:
            return session.execute(stmt).rowcount == 1

    def set_total_recipients(self, task_id: str, total: int) -> bool:
        stmt = (
            update(BulkNotificationTask)
            .where(BulkNotificationTask.id == task_id)
            .values(total_recipients=total, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        with session_scope(self.session_factory) as session:
            return session.execute(stmt).rowcount == 1

    def list_by_status(self, *statuses: TaskStatus) -> list[BulkNotificationTask]:
        stmt = (
            select(BulkNotificationTask)
            .where(BulkNotificationTask.status.in_(statuses))
            .order_by(BulkNotificationTask.created_at.asc())
        )
        with session_scope(self.session_factory) as session:
            return list(session.scalars(stmt))

    def find_stale(self, status: TaskStatus, older_than: datetime) -> list[BulkNotificationTask]:
        """Tasks in ``status`` whose last update is before ``older_than``."""
        stmt = (
            select(BulkNotificationTask)
            .where(
                BulkNotificationTask.status == status,
                BulkNotificationTask.updated_at < older_than,
            )
            .order_by(BulkNotificationTask.updated_at.asc())
        )
        with session_scope(self.session_factory) as session:
            return list(session.scalars(stmt))


__all__ = ["TaskRepository"]
