"""End-to-end tests for the bulk notification service."""

import logging
from datetime import timedelta

import pytest

from bulknotify.batch import BatchProcessor
from bulknotify.channels import PushChannel
from bulknotify.config import DispatchConfig
from bulknotify.exceptions import PersistenceError, QueueError
from bulknotify.models import Channel, Priority, TaskStatus, utcnow
from bulknotify.providers import MockPushProvider
from bulknotify.queue import DatabaseQueue, HandlerResult
from bulknotify.recipients import RecipientResolver, SqlUserDirectory
from bulknotify.schemas import RecipientFilter


def spy_batches(monkeypatch, service):
    """Record the size of every batch the service processes."""
    sizes = []
    original = service.processor.process_batch

    def spy(task, recipients, content=None):
        sizes.append(len(recipients))
        return original(task, recipients, content)

    monkeypatch.setattr(service.processor, "process_batch", spy)
    return sizes


class TestEnqueue:
    """Tests for the producer side."""

    def test_persists_pending_then_publishes(self, service, memory_queue):
        task_id = service.enqueue_bulk_email("Hi", "Body", creator_id=7, recipient_filter={"role": "USER"})

        assert task_id.startswith("bulk_")
        task = service.store.get(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.created_by_id == 7
        assert task.recipient_filter == {"role": "USER"}

        (payload,) = memory_queue.pending(service.queue_name)
        assert payload["id"] == task_id
        assert payload["channel"] == "EMAIL"
        assert payload["subject"] == "Hi"

    def test_unique_ids(self, service):
        assert service.enqueue_bulk_sms("a", 1) != service.enqueue_bulk_sms("a", 1)

    def test_options_are_stored(self, service):
        task_id = service.enqueue_bulk_push(
            "Title",
            "Body",
            1,
            recipient_filter=RecipientFilter(has_listings=True),
            template_variables={"promo": 10},
            sender_id=3,
            campaign_id=4,
            priority=Priority.HIGH,
        )
        task = service.store.get(task_id)
        assert task.channel == Channel.PUSH
        assert task.subject == "Title"
        assert task.template_variables == {"promo": "10"}
        assert (task.sender_id, task.campaign_id, task.priority) == (3, 4, Priority.HIGH)

    def test_publish_failure_leaves_task_pending(self, make_service):
        class BrokenQueue:
            def enqueue(self, queue_name, payload):
                raise RuntimeError("broker down")

        service = make_service(queue=BrokenQueue())
        with pytest.raises(QueueError):
            service.enqueue_bulk_sms("Body", 1)

        (task,) = service.store.list_by_status(TaskStatus.PENDING)
        assert task.status == TaskStatus.PENDING


class TestScenarios:
    """The canonical end-to-end dispatch scenarios."""

    def test_email_to_250_users_in_three_batches(self, service, add_user, email_provider, sleeps, monkeypatch):
        for _ in range(250):
            add_user(role="USER")
        sizes = spy_batches(monkeypatch, service)

        task_id = service.enqueue_bulk_email(
            "Hello {{name}}", "Hi {{name}}", 1, recipient_filter={"role": "USER", "isVerified": True}
        )
        assert service.run_worker(idle_timeout=0) == 1

        status = service.get_task_status(task_id)
        assert status.status == TaskStatus.COMPLETED
        assert (status.total_sent, status.total_failed) == (250, 0)
        assert status.completed_at is not None
        assert sizes == [100, 100, 50]
        assert sleeps == [1.0, 1.0]
        assert email_provider.sent[0]["subject"] == "Hello User 1"
        assert service.store.get(task_id).total_recipients == 250

    def test_push_counts_recipient_once_when_one_device_fails(
        self, make_service, channels, add_user, session_factory
    ):
        provider = MockPushProvider(fail_for=["token-bad"])
        push = PushChannel(provider, SqlUserDirectory(session_factory).get_device_tokens)
        service = make_service(processor=BatchProcessor({**channels, Channel.PUSH: push}))
        add_user(id=1, device_tokens=["token-bad", "token-good"])

        task_id = service.enqueue_bulk_push("Title", "Body", 1)
        service.run_worker(idle_timeout=0)

        status = service.get_task_status(task_id)
        assert status.status == TaskStatus.COMPLETED
        assert (status.total_sent, status.total_failed) == (1, 0)

    def test_sms_skips_users_without_phone(self, service, add_user, sms_provider):
        for n in range(1, 6):
            add_user(id=n, phone_number=None if n in (2, 4) else f"+1555000{n}")

        task_id = service.enqueue_bulk_sms("Hi {{name}}", 1)
        service.run_worker(idle_timeout=0)

        status = service.get_task_status(task_id)
        assert status.status == TaskStatus.COMPLETED
        assert (status.total_sent, status.total_failed) == (3, 2)
        assert [m["to"] for m in sms_provider.sent] == ["+15550001", "+15550003", "+15550005"]

    def test_cancel_before_pickup_skips_processing(self, service, add_user, email_provider):
        add_user(id=1)
        task_id = service.enqueue_bulk_email("Hi", "Body", 1)

        assert service.cancel_task(task_id) is True
        assert service.run_worker(idle_timeout=0) == 1

        task = service.store.get(task_id)
        assert task.status == TaskStatus.CANCELLED
        assert (task.total_sent, task.total_failed) == (0, 0)
        assert task.started_at is None
        assert email_provider.sent == []


class TestWorker:
    """Tests for the worker side of the service."""

    def test_empty_recipient_set_completes_immediately(self, service, add_user, sleeps, monkeypatch):
        add_user(id=1)
        sizes = spy_batches(monkeypatch, service)

        task_id = service.enqueue_bulk_email("Hi", "Body", 1, recipient_filter={"specificIds": [999]})
        service.run_worker(idle_timeout=0)

        task = service.store.get(task_id)
        assert task.status == TaskStatus.COMPLETED
        assert (task.total_sent, task.total_failed) == (0, 0)
        assert sizes == []
        assert sleeps == []

    def test_counters_persisted_after_every_batch(self, make_service, add_user):
        for _ in range(25):
            add_user()
        observed = []
        service = None

        def record_progress(seconds):
            task = service.store.get(task_id)
            observed.append((task.status, task.total_sent, service.get_task_status(task_id).total_sent))

        service = make_service(config=DispatchConfig(batch_size=10, batch_interval_ms=250), sleep=record_progress)
        task_id = service.enqueue_bulk_email("Hi", "Body", 1)
        service.run_worker(idle_timeout=0)

        assert observed == [
            (TaskStatus.PROCESSING, 10, 10),
            (TaskStatus.PROCESSING, 20, 20),
        ]
        assert service.store.get(task_id).total_sent == 25

    def test_batch_interval_is_configurable(self, make_service, add_user, sleeps):
        for _ in range(3):
            add_user()
        service = make_service(config=DispatchConfig(batch_size=1, batch_interval_ms=250))
        service.enqueue_bulk_email("Hi", "Body", 1)
        service.run_worker(idle_timeout=0)
        assert sleeps == [0.25, 0.25]

    def test_cancel_between_batches(self, make_service, add_user, monkeypatch):
        for _ in range(30):
            add_user()
        service = make_service(config=DispatchConfig(batch_size=10))
        sizes = spy_batches(monkeypatch, service)
        task_id = service.enqueue_bulk_email("Hi", "Body", 1)

        original = service.processor.process_batch

        def cancel_during_first_batch(task, recipients, content=None):
            result = original(task, recipients, content)
            if len(sizes) == 1:
                assert service.cancel_task(task.id) is True
            return result

        monkeypatch.setattr(service.processor, "process_batch", cancel_during_first_batch)
        service.run_worker(idle_timeout=0)

        task = service.store.get(task_id)
        assert task.status == TaskStatus.CANCELLED
        assert sizes == [10]
        assert task.total_sent == 10

    def test_redelivered_processing_task_is_skipped(self, service, add_user, email_provider, memory_queue):
        add_user(id=1)
        task_id = service.enqueue_bulk_email("Hi", "Body", 1)
        (payload,) = memory_queue.pending(service.queue_name)
        service.store.mark_processing(task_id)

        assert service.handle_message(payload) is HandlerResult.ACK
        assert email_provider.sent == []
        assert service.store.get(task_id).total_sent == 0

    def test_unknown_task_is_dropped(self, service, memory_queue):
        task_id = service.enqueue_bulk_sms("Body", 1)
        (payload,) = memory_queue.pending(service.queue_name)
        payload["id"] = "bulk_unknown"
        assert service.handle_message(payload) is HandlerResult.ACK
        assert service.store.get(task_id).status == TaskStatus.PENDING

    def test_malformed_message_is_dropped(self, service):
        assert service.handle_message({"channel": "FAX"}) is HandlerResult.ACK

    def test_store_outage_on_start_requeues(self, service, memory_queue, monkeypatch):
        service.enqueue_bulk_sms("Body", 1)
        (payload,) = memory_queue.pending(service.queue_name)

        def down(task_id):
            raise PersistenceError("database is locked")

        monkeypatch.setattr(service.store, "mark_processing", down)
        assert service.handle_message(payload) is HandlerResult.REQUEUE

    def test_resolution_failure_fails_task(self, make_service):
        class BrokenDirectory:
            def find_by_filter(self, recipient_filter):
                raise RuntimeError("replica unavailable")

            def get_device_tokens(self, user_id):
                return []

        service = make_service(resolver=RecipientResolver(BrokenDirectory()))
        task_id = service.enqueue_bulk_email("Hi", "Body", 1)
        service.run_worker(idle_timeout=0)

        task = service.store.get(task_id)
        assert task.status == TaskStatus.FAILED
        assert "RecipientResolutionError" in task.last_error
        assert "replica unavailable" in task.last_error
        assert task.completed_at is not None

    def test_missing_template_fails_task(self, service, add_user, email_provider):
        add_user(id=1)
        task_id = service.enqueue(Channel.EMAIL, "", 1, template_name="does-not-exist")
        service.run_worker(idle_timeout=0)

        assert service.store.get(task_id).status == TaskStatus.FAILED
        assert email_provider.sent == []

    def test_named_template_end_to_end(self, service, add_user, email_provider):
        add_user(id=1, name="Ann")
        service.enqueue(
            Channel.EMAIL, "", 1, template_name="welcome", template_variables={"code": "K9"}
        )
        service.run_worker(idle_timeout=0)

        assert email_provider.sent[0]["subject"] == "Welcome Ann"
        assert email_provider.sent[0]["body"] == "Hi Ann, your code is K9."

    def test_counter_write_failure_is_swallowed(self, service, add_user, monkeypatch):
        add_user(id=1)

        def down(task_id, sent, failed):
            raise PersistenceError("disk full")

        monkeypatch.setattr(service.store, "increment_counters", down)
        task_id = service.enqueue_bulk_email("Hi", "Body", 1)
        service.run_worker(idle_timeout=0)

        assert service.store.get(task_id).status == TaskStatus.COMPLETED

    def test_terminal_write_failure_logged_critical(self, service, add_user, monkeypatch, caplog):
        add_user(id=1)

        def down(task_id):
            raise PersistenceError("connection reset")

        monkeypatch.setattr(service.store, "complete", down)
        task_id = service.enqueue_bulk_email("Hi", "Body", 1)

        with caplog.at_level(logging.CRITICAL, logger="bulknotify.service"):
            assert service.run_worker(idle_timeout=0) == 1

        assert any(r.levelno == logging.CRITICAL and task_id in r.getMessage() for r in caplog.records)
        assert service.store.get(task_id).status == TaskStatus.PROCESSING

    def test_log_records_carry_task_id(self, service, add_user, caplog):
        add_user(id=1)
        task_id = service.enqueue_bulk_email("Hi", "Body", 1)

        with caplog.at_level(logging.INFO, logger="bulknotify"):
            service.run_worker(idle_timeout=0)

        tagged = [r for r in caplog.records if getattr(r, "task_id", None) == task_id]
        assert tagged

    def test_durable_queue_end_to_end(self, make_service, session_factory, add_user):
        add_user(id=1)
        queue = DatabaseQueue(session_factory, sleep=lambda seconds: None)
        service = make_service(queue=queue)

        task_id = service.enqueue_bulk_email("Hi", "Body", 1)
        assert service.run_worker(idle_timeout=0) == 1
        assert service.get_task_status(task_id).status == TaskStatus.COMPLETED


class TestQueries:
    """Tests for status, cancellation and listing."""

    def test_status_of_unknown_task(self, service):
        assert service.get_task_status("bulk_nope") is None

    def test_status_of_pending_task(self, service):
        task_id = service.enqueue_bulk_sms("Body", 1)
        status = service.get_task_status(task_id)
        assert status.status == TaskStatus.PENDING
        assert status.to_dict()["status"] == "PENDING"

    def test_cancel_unknown_task(self, service):
        assert service.cancel_task("bulk_nope") is False

    @pytest.mark.parametrize("final", ["complete", "fail", "cancel"])
    def test_cancel_terminal_task_is_a_noop(self, service, final):
        task_id = service.enqueue_bulk_sms("Body", 1)
        service.store.mark_processing(task_id)
        getattr(service.store, final)(task_id)
        before = service.store.get(task_id).status

        assert service.cancel_task(task_id) is False
        assert service.store.get(task_id).status == before

    def test_cancel_never_raises(self, service, monkeypatch):
        def down(task_id):
            raise PersistenceError("connection refused")

        monkeypatch.setattr(service.store, "cancel", down)
        assert service.cancel_task("bulk_any") is False

    def test_list_active_tasks(self, service):
        pending = service.enqueue_bulk_sms("Body", 1)
        running = service.enqueue_bulk_email("Hi", "Body", 1)
        done = service.enqueue_bulk_push("T", "Body", 1)
        service.store.mark_processing(running)
        service.store.increment_counters(running, 4, 1)
        service.cancel_task(done)

        active = {view.id: view for view in service.list_active_tasks()}
        assert set(active) == {pending, running}
        assert active[running].status == TaskStatus.PROCESSING
        assert (active[running].total_sent, active[running].total_failed) == (4, 1)
        assert active[pending].channel == Channel.SMS


class TestReconcile:
    """Tests for the stale task sweep."""

    def test_fails_stale_processing_tasks(self, make_service):
        service = make_service(clock=lambda: utcnow() + timedelta(hours=1))
        task_id = service.enqueue_bulk_sms("Body", 1)
        service.store.mark_processing(task_id)

        report = service.reconcile(timedelta(minutes=30))

        assert report.failed == [task_id]
        task = service.store.get(task_id)
        assert task.status == TaskStatus.FAILED
        assert "presumed lost" in task.last_error

    def test_republishes_stale_pending_tasks(self, make_service, memory_queue):
        service = make_service(clock=lambda: utcnow() + timedelta(hours=1))
        task_id = service.enqueue_bulk_sms("Body", 1)
        memory_queue.consume(service.queue_name, lambda payload: HandlerResult.ACK, idle_timeout=0)

        report = service.reconcile()

        assert report.requeued == [task_id]
        assert [p["id"] for p in memory_queue.pending(service.queue_name)] == [task_id]

    def test_recent_tasks_left_alone(self, service):
        task_id = service.enqueue_bulk_sms("Body", 1)
        service.store.mark_processing(task_id)

        report = service.reconcile(timedelta(minutes=30))

        assert report.failed == []
        assert report.requeued == []
        assert service.store.get(task_id).status == TaskStatus.PROCESSING
