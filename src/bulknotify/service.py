"""Bulk notification orchestrator: enqueue side and worker side."""
from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from .batch import BatchProcessor
from .channels import build_channels
from .config import DispatchConfig, Settings
from .db import create_engine_from_config, create_session_factory
from .exceptions import DispatchError, PersistenceError, QueueError, format_exception_chain
from .logging import LoggingContext
from .models import Channel, Priority, TaskStatus, utcnow
from .queue import DispatchQueue, HandlerResult, create_queue
from .recipients import RecipientResolver, SqlUserDirectory
from .schemas import (
    ActiveTaskView,
    BatchResult,
    RecipientFilter,
    ReconcileReport,
    TaskMessage,
    TaskStatusView,
)
from .store import TaskRepository
from .template import TemplateLoader

logger = logging.getLogger(__name__)


@dataclass
class _ActiveTask:
    """Progress of a task this process is working on right now."""

    id: str
    channel: Channel
    total_sent: int = 0
    total_failed: int = 0
    started_at: datetime | None = None


def _coerce_filter(recipient_filter: RecipientFilter | Mapping[str, Any] | None) -> RecipientFilter | None:
    if recipient_filter is None or isinstance(recipient_filter, RecipientFilter):
        return recipient_filter
    return RecipientFilter.model_validate(dict(recipient_filter))


class BulkNotificationService:
    """Single entry point for enqueueing bulk notifications and processing them.

    The task store is the source of truth. The in-process table of active
    tasks only speeds up status reads for tasks this worker is running.
    """

    def __init__(
        self,
        store: TaskRepository,
        queue: DispatchQueue,
        resolver: RecipientResolver,
        processor: BatchProcessor,
        config: DispatchConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.queue = queue
        self.resolver = resolver
        self.processor = processor
        self.config = config or DispatchConfig()
        self._sleep = sleep
        self._clock = clock
        self._active: dict[str, _ActiveTask] = {}
        self._lock = threading.Lock()

    @property
    def queue_name(self) -> str:
        return self.config.queue_name

    # -- producer side --------------------------------------------------

    def enqueue(
        self,
        channel: Channel,
        body: str,
        creator_id: int,
        *,
        subject: str | None = None,
        recipient_filter: RecipientFilter | Mapping[str, Any] | None = None,
        template_name: str | None = None,
        template_variables: Mapping[str, Any] | None = None,
        sender_id: int | None = None,
        campaign_id: int | None = None,
        priority: Priority = Priority.NORMAL,
    ) -> str:
        """Persist a PENDING task and publish it to the dispatch queue.

        The row is written before the message is published. If publishing
        fails the row stays PENDING and ``reconcile`` will publish it later.

        Returns:
            The new task id

        Raises:
            PersistenceError: If the task row cannot be written
            QueueError: If the task was stored but could not be published
        """
        task_id = f"bulk_{uuid.uuid4()}"
        channel = Channel(channel)
        priority = Priority(priority)
        recipient_filter = _coerce_filter(recipient_filter)
        variables = {key: str(value) for key, value in template_variables.items()} if template_variables else None

        task = self.store.create(
            task_id,
            channel=channel,
            subject=subject,
            body=body,
            recipient_filter=recipient_filter.to_payload() if recipient_filter is not None else None,
            template_name=template_name,
            template_variables=variables,
            priority=priority,
            created_by_id=creator_id,
            sender_id=sender_id,
            campaign_id=campaign_id,
        )
        self._publish(TaskMessage.from_task(task))
        logger.info("Enqueued %s task %s (priority %s)", channel.value, task_id, priority.value)
        return task_id

    def enqueue_bulk_email(
        self,
        subject: str,
        body: str,
        creator_id: int,
        recipient_filter: RecipientFilter | Mapping[str, Any] | None = None,
        **options: Any,
    ) -> str:
        return self.enqueue(
            Channel.EMAIL, body, creator_id, subject=subject, recipient_filter=recipient_filter, **options
        )

    def enqueue_bulk_sms(
        self,
        body: str,
        creator_id: int,
        recipient_filter: RecipientFilter | Mapping[str, Any] | None = None,
        **options: Any,
    ) -> str:
        return self.enqueue(Channel.SMS, body, creator_id, recipient_filter=recipient_filter, **options)

    def enqueue_bulk_push(
        self,
        title: str,
        body: str,
        creator_id: int,
        recipient_filter: RecipientFilter | Mapping[str, Any] | None = None,
        **options: Any,
    ) -> str:
        return self.enqueue(
            Channel.PUSH, body, creator_id, subject=title, recipient_filter=recipient_filter, **options
        )

    def _publish(self, message: TaskMessage) -> None:
        try:
            self.queue.enqueue(self.queue_name, message.to_payload())
        except QueueError:
            logger.error("Task %s stored but not published; it stays PENDING", message.id)
            raise
        except Exception as exc:
            logger.error("Task %s stored but not published; it stays PENDING", message.id)
            raise QueueError(f"Failed to publish task {message.id}: {exc}", cause=exc) from exc

    # -- worker side ----------------------------------------------------

    def run_worker(self, max_messages: int | None = None, idle_timeout: float | None = None) -> int:
        """Consume tasks from the dispatch queue. Returns the number handled."""
        logger.info(
            "Worker consuming %s (batch_size=%s, batch_interval_ms=%s)",
            self.queue_name, self.config.batch_size, self.config.batch_interval_ms,
        )
        handled = self.queue.consume(
            self.queue_name, self.handle_message, max_messages=max_messages, idle_timeout=idle_timeout
        )
        logger.info("Worker stopped after %s messages", handled)
        return handled

    def handle_message(self, payload: dict) -> HandlerResult:
        try:
            message = TaskMessage.from_payload(payload)
        except ValidationError as exc:
            logger.error("Dropping malformed task message: %s", exc)
            return HandlerResult.ACK

        with LoggingContext(logger, task_id=message.id):
            return self._handle(message)

    def _handle(self, message: TaskMessage) -> HandlerResult:
        try:
            task = self.store.get(message.id)
        except PersistenceError as exc:
            logger.error("Cannot read task %s, requeueing: %s", message.id, exc.message)
            return HandlerResult.REQUEUE

        if task is None:
            logger.warning("Task %s not found in store; dropping message", message.id)
            return HandlerResult.ACK
        if task.status != TaskStatus.PENDING:
            # Cancelled before pickup, or a redelivery of a task already taken.
            logger.info("Skipping task %s in status %s", message.id, task.status.value)
            return HandlerResult.ACK

        try:
            if not self.store.mark_processing(message.id):
                logger.info("Task %s left PENDING before it could be started; skipping", message.id)
                return HandlerResult.ACK
        except PersistenceError as exc:
            logger.error("Cannot start task %s, requeueing: %s", message.id, exc.message)
            return HandlerResult.REQUEUE

        with self._lock:
            self._active[message.id] = _ActiveTask(
                id=message.id, channel=message.channel, started_at=self._clock()
            )
        try:
            self._process(message)
        except Exception as exc:
            logger.exception("Task %s failed", message.id)
            self._finish(message.id, TaskStatus.FAILED, error=format_exception_chain(exc))
        finally:
            with self._lock:
                self._active.pop(message.id, None)

        return HandlerResult.ACK

    def _process(self, message: TaskMessage) -> None:
        content = self.processor.prepare(message)
        recipients = self.resolver.resolve(message.recipient_filter)
        try:
            self.store.set_total_recipients(message.id, len(recipients))
        except PersistenceError as exc:
            logger.error("Could not record recipient count for %s: %s", message.id, exc.message)

        if not recipients:
            logger.info("Task %s has no recipients; completing", message.id)
            self._finish(message.id, TaskStatus.COMPLETED)
            return

        size = self.config.batch_size
        batches = [recipients[i:i + size] for i in range(0, len(recipients), size)]
        logger.info("Task %s: %s recipients in %s batches", message.id, len(recipients), len(batches))

        for index, batch in enumerate(batches, start=1):
            result = self.processor.process_batch(message, batch, content)
            self._record(message.id, result)
            logger.info(
                "Task %s batch %s/%s: %s sent, %s failed",
                message.id, index, len(batches), result.success_count, result.failure_count,
            )
            if index == len(batches):
                break
            if self._is_cancelled(message.id):
                logger.info("Task %s cancelled after batch %s/%s", message.id, index, len(batches))
                return
            self._sleep(self.config.batch_interval_ms / 1000.0)

        self._finish(message.id, TaskStatus.COMPLETED)

    def _record(self, task_id: str, result: BatchResult) -> None:
        with self._lock:
            entry = self._active.get(task_id)
            if entry is not None:
                entry.total_sent += result.success_count
                entry.total_failed += result.failure_count
        try:
            self.store.increment_counters(task_id, result.success_count, result.failure_count)
        except PersistenceError as exc:
            logger.error("Could not persist counters for %s: %s", task_id, exc.message)

    def _is_cancelled(self, task_id: str) -> bool:
        try:
            task = self.store.get(task_id)
        except PersistenceError as exc:
            logger.warning("Could not check cancellation of %s: %s", task_id, exc.message)
            return False
        return task is None or task.status == TaskStatus.CANCELLED

    def _finish(self, task_id: str, status: TaskStatus, error: str | None = None) -> None:
        try:
            if status == TaskStatus.COMPLETED:
                moved = self.store.complete(task_id)
            else:
                moved = self.store.fail(task_id, error)
        except PersistenceError as exc:
            logger.critical("Could not mark task %s %s: %s", task_id, status.value, exc.message)
            return

        if moved:
            logger.info("Task %s %s", task_id, status.value)
        else:
            logger.info("Task %s already terminal; not marked %s", task_id, status.value)

    # -- queries and operator actions -----------------------------------

    def get_task_status(self, task_id: str) -> TaskStatusView | None:
        with self._lock:
            entry = self._active.get(task_id)
            if entry is not None:
                return TaskStatusView(
                    id=entry.id,
                    status=TaskStatus.PROCESSING,
                    total_sent=entry.total_sent,
                    total_failed=entry.total_failed,
                    started_at=entry.started_at,
                )

        task = self.store.get(task_id)
        if task is None:
            return None
        return TaskStatusView(
            id=task.id,
            status=task.status,
            total_sent=task.total_sent,
            total_failed=task.total_failed,
            started_at=task.started_at,
            completed_at=task.completed_at,
        )

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a PENDING or PROCESSING task.

        Returns False for unknown or already finished tasks, and when the
        store cannot be reached.
        """
        with self._lock:
            self._active.pop(task_id, None)
        try:
            cancelled = self.store.cancel(task_id)
        except DispatchError as exc:
            logger.error("Could not cancel task %s: %s", task_id, exc.message)
            return False

        if cancelled:
            logger.info("Task %s cancelled", task_id)
        return cancelled

    def list_active_tasks(self) -> list[ActiveTaskView]:
        tasks = self.store.list_by_status(TaskStatus.PENDING, TaskStatus.PROCESSING)
        with self._lock:
            mirror = dict(self._active)

        views = []
        for task in tasks:
            sent, failed = task.total_sent, task.total_failed
            entry = mirror.get(task.id)
            if entry is not None:
                sent = max(sent, entry.total_sent)
                failed = max(failed, entry.total_failed)
            views.append(
                ActiveTaskView(
                    id=task.id,
                    channel=task.channel,
                    status=task.status,
                    total_sent=sent,
                    total_failed=failed,
                    started_at=task.started_at,
                )
            )
        return views

    def reconcile(self, stale_after: timedelta | None = None) -> ReconcileReport:
        """Sweep tasks that stopped making progress.

        PROCESSING tasks not updated within ``stale_after`` are marked FAILED.
        PENDING tasks older than that are published again; the worker skips
        any duplicate delivery because it only starts PENDING tasks.
        """
        if stale_after is None:
            stale_after = timedelta(minutes=self.config.stale_after_minutes)
        cutoff = self._clock() - stale_after
        report = ReconcileReport()

        with self._lock:
            running_here = set(self._active)

        for task in self.store.find_stale(TaskStatus.PROCESSING, cutoff):
            if task.id in running_here:
                continue
            error = f"No progress since {task.updated_at.isoformat()}; worker presumed lost"
            if self.store.fail(task.id, error):
                logger.warning("Reconcile: failed stale task %s", task.id)
                report.failed.append(task.id)

        for task in self.store.find_stale(TaskStatus.PENDING, cutoff):
            try:
                self._publish(TaskMessage.from_task(task))
            except QueueError as exc:
                logger.error("Reconcile: could not republish %s: %s", task.id, exc.message)
                continue
            # Touch updated_at so the next sweep does not publish it again.
            self.store.update_status(task.id, TaskStatus.PENDING, [TaskStatus.PENDING])
            logger.info("Reconcile: republished pending task %s", task.id)
            report.requeued.append(task.id)

        release_stale = getattr(self.queue, "release_stale", None)
        if release_stale is not None:
            release_stale(self.queue_name, cutoff)

        return report


def create_service(
    settings: Settings,
    session_factory: sessionmaker[Session] | None = None,
) -> BulkNotificationService:
    """Wire a service from configuration."""
    if session_factory is None:
        session_factory = create_session_factory(create_engine_from_config(settings.database))
    directory = SqlUserDirectory(session_factory)
    channels = build_channels(settings, token_lookup=directory.get_device_tokens)
    return BulkNotificationService(
        store=TaskRepository(session_factory),
        queue=create_queue(settings, session_factory),
        resolver=RecipientResolver(directory),
        processor=BatchProcessor(channels, TemplateLoader(settings.templates.templates_dir)),
        config=settings.dispatch,
    )


__all__ = ["BulkNotificationService", "create_service"]
