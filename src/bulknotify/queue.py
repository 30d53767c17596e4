"""Dispatch queue backends with at-least-once delivery.

Queue backends:
- InMemoryQueue: single-process, for tests and local runs
- DatabaseQueue: durable rows in the ``dispatch_messages`` table
- RedisQueue: reliable-list pattern on a Redis server
"""
from __future__ import annotations

import enum
import json
import logging
import threading
import time
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Callable, Protocol

import redis
from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings
from .db import session_scope
from .exceptions import ConfigurationError, PersistenceError, QueueError
from .models import DispatchMessage, utcnow

logger = logging.getLogger(__name__)


class HandlerResult(enum.Enum):
    """What the consumer should do with a message once the handler returns."""

    ACK = "ack"
    REQUEUE = "requeue"


Handler = Callable[[dict], HandlerResult]


class DispatchQueue(Protocol):
    """Queue interface used by the dispatch service."""

    def enqueue(self, queue_name: str, payload: dict) -> None: ...

    def consume(
        self,
        queue_name: str,
        handler: Handler,
        *,
        max_messages: int | None = None,
        idle_timeout: float | None = None,
    ) -> int: ...


class _PollingQueue:
    """Consume loop shared by the backends.

    Subclasses implement ``_claim`` (take one message, waiting at most
    ``timeout`` seconds), ``_ack`` and ``_requeue``.
    """

    poll_interval: float = 1.0

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep

    def _claim(self, queue_name: str, timeout: float) -> tuple[Any, dict] | None:
        raise NotImplementedError

    def _ack(self, queue_name: str, token: Any) -> None:
        raise NotImplementedError

    def _requeue(self, queue_name: str, token: Any, payload: dict) -> None:
        raise NotImplementedError

    def _wait_time(self, idle_since: float, idle_timeout: float | None) -> float:
        if idle_timeout is None:
            return self.poll_interval
        remaining = idle_timeout - (self._clock() - idle_since)
        return max(0.0, min(self.poll_interval, remaining))

    def consume(
        self,
        queue_name: str,
        handler: Handler,
        *,
        max_messages: int | None = None,
        idle_timeout: float | None = None,
    ) -> int:
        """Feed messages to ``handler`` until a stop condition is reached.

        Stops after ``max_messages`` messages or once no message arrived for
        ``idle_timeout`` seconds; with neither set it runs until interrupted.
        Returns the number of messages handled.
        """
        handled = 0
        idle_since = self._clock()

        while max_messages is None or handled < max_messages:
            message = self._claim(queue_name, self._wait_time(idle_since, idle_timeout))
            if message is None:
                if idle_timeout is not None and self._clock() - idle_since >= idle_timeout:
                    break
                continue

            token, payload = message
            try:
                outcome = handler(payload)
            except Exception:
                logger.exception("Handler raised on %s message; requeueing", queue_name)
                outcome = HandlerResult.REQUEUE

            if outcome is HandlerResult.ACK:
                self._ack(queue_name, token)
            else:
                self._requeue(queue_name, token, payload)
                # Pause before the same message can be reclaimed.
                self._sleep(self.poll_interval)

            handled += 1
            idle_since = self._clock()

        return handled


class InMemoryQueue(_PollingQueue):
    """Thread-safe in-process queue. Messages do not survive a restart."""

    def __init__(
        self,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(clock, sleep)
        self.poll_interval = poll_interval
        self._queues: dict[str, deque] = defaultdict(deque)
        self._ready = threading.Condition()

    def enqueue(self, queue_name: str, payload: dict) -> None:
        with self._ready:
            self._queues[queue_name].append(json.loads(json.dumps(payload)))
            self._ready.notify_all()

    def pending(self, queue_name: str) -> list[dict]:
        with self._ready:
            return list(self._queues[queue_name])

    def _claim(self, queue_name: str, timeout: float) -> tuple[Any, dict] | None:
        with self._ready:
            if not self._queues[queue_name] and timeout > 0:
                self._ready.wait(timeout)
            if not self._queues[queue_name]:
                return None
            payload = self._queues[queue_name].popleft()
        return None, payload

    def _ack(self, queue_name: str, token: Any) -> None:
        pass

    def _requeue(self, queue_name: str, token: Any, payload: dict) -> None:
        self.enqueue(queue_name, payload)


class DatabaseQueue(_PollingQueue):
    """Durable queue stored in the ``dispatch_messages`` table.

    A claimed row stays in the table, flagged ``in_flight``, until it is
    acked (deleted) or requeued (flag cleared, ``attempts`` incremented).
    Rows left in flight by a crashed worker are released with ``release_stale``.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(clock, sleep)
        self.session_factory = session_factory
        self.poll_interval = poll_interval

    def enqueue(self, queue_name: str, payload: dict) -> None:
        try:
            with session_scope(self.session_factory) as session:
                session.add(DispatchMessage(queue_name=queue_name, payload=payload, created_at=utcnow()))
        except PersistenceError as e:
            raise QueueError(f"Failed to publish to {queue_name}: {e.message}", cause=e) from e

    def _claim(self, queue_name: str, timeout: float) -> tuple[Any, dict] | None:
        stmt = (
            select(DispatchMessage)
            .where(DispatchMessage.queue_name == queue_name, DispatchMessage.in_flight.is_(False))
            .order_by(DispatchMessage.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        try:
            with session_scope(self.session_factory) as session:
                row = session.scalars(stmt).first()
                if row is not None:
                    row.in_flight = True
                    row.claimed_at = utcnow()
                    claimed = (row.id, dict(row.payload))
                else:
                    claimed = None
        except PersistenceError as e:
            raise QueueError(f"Failed to read from {queue_name}: {e.message}", cause=e) from e

        if claimed is None and timeout > 0:
            self._sleep(timeout)
        return claimed

    def _ack(self, queue_name: str, token: Any) -> None:
        with session_scope(self.session_factory) as session:
            session.execute(delete(DispatchMessage).where(DispatchMessage.id == token))

    def _requeue(self, queue_name: str, token: Any, payload: dict) -> None:
        stmt = (
            update(DispatchMessage)
            .where(DispatchMessage.id == token)
            .values(in_flight=False, claimed_at=None, attempts=DispatchMessage.attempts + 1)
        )
        with session_scope(self.session_factory) as session:
            session.execute(stmt)

    def release_stale(self, queue_name: str, older_than: datetime) -> int:
        """Return in-flight rows claimed before ``older_than`` to the queue."""
        stmt = (
            update(DispatchMessage)
            .where(
                DispatchMessage.queue_name == queue_name,
                DispatchMessage.in_flight.is_(True),
                DispatchMessage.claimed_at < older_than,
            )
            .values(in_flight=False, claimed_at=None, attempts=DispatchMessage.attempts + 1)
        )
        with session_scope(self.session_factory) as session:
            released = session.execute(stmt).rowcount
        if released:
            logger.info("Released %s stale in-flight messages on %s", released, queue_name)
        return released


class RedisQueue(_PollingQueue):
    """Reliable queue on Redis lists.

    Producers LPUSH onto ``<queue>``; a consumer atomically moves the oldest
    entry onto ``<queue>:processing`` and removes it from there on ack.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        client: redis.Redis | None = None,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(clock, sleep)
        if client is None:
            if not redis_url:
                raise ConfigurationError("redis_url is required for the redis queue backend")
            client = redis.from_url(redis_url, decode_responses=True)
        self._client = client
        self.poll_interval = poll_interval

    @staticmethod
    def processing_key(queue_name: str) -> str:
        return f"{queue_name}:processing"

    def enqueue(self, queue_name: str, payload: dict) -> None:
        try:
            self._client.lpush(queue_name, json.dumps(payload))
        except redis.RedisError as e:
            raise QueueError(f"Failed to publish to {queue_name}: {e}", cause=e) from e

    def _claim(self, queue_name: str, timeout: float) -> tuple[Any, dict] | None:
        processing = self.processing_key(queue_name)
        try:
            if timeout > 0:
                raw = self._client.blmove(queue_name, processing, timeout, "RIGHT", "LEFT")
            else:
                raw = self._client.lmove(queue_name, processing, "RIGHT", "LEFT")
        except redis.RedisError as e:
            raise QueueError(f"Failed to read from {queue_name}: {e}", cause=e) from e

        if raw is None:
            return None
        try:
            return raw, json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Dropping undecodable message on %s: %r", queue_name, raw[:200])
            self._client.lrem(processing, 1, raw)
            return None

    def _ack(self, queue_name: str, token: Any) -> None:
        self._client.lrem(self.processing_key(queue_name), 1, token)

    def _requeue(self, queue_name: str, token: Any, payload: dict) -> None:
        pipe = self._client.pipeline(transaction=True)
        pipe.lrem(self.processing_key(queue_name), 1, token)
        pipe.lpush(queue_name, token)
        pipe.execute()


def create_queue(settings: Settings, session_factory: sessionmaker[Session] | None = None) -> DispatchQueue:
    """Factory: build the queue backend named in configuration."""
    backend = settings.queue.backend
    if backend == "memory":
        return InMemoryQueue(poll_interval=settings.queue.poll_interval)
    if backend == "redis":
        return RedisQueue(settings.queue.redis_url, poll_interval=settings.queue.poll_interval)
    if session_factory is None:
        raise ConfigurationError("The database queue backend needs a session factory")
    return DatabaseQueue(session_factory, poll_interval=settings.queue.poll_interval)


__all__ = [
    "DatabaseQueue",
    "DispatchQueue",
    "Handler",
    "HandlerResult",
    "InMemoryQueue",
    "RedisQueue",
    "create_queue",
]
