"""Bulk notification dispatch over email, SMS and push with durable task tracking."""

__version__ = "0.1.0"

from .config import Settings, load_settings
from .exceptions import (
    DispatchError,
    ConfigurationError,
    TemplateError,
    QueueError,
    PersistenceError,
    RecipientResolutionError,
    SendError,
    MissingContactInfo,
    DeliveryError,
)
from .models import Channel, Priority, TaskStatus
from .schemas import RecipientFilter, TaskStatusView
from .queue import DatabaseQueue, HandlerResult, InMemoryQueue, RedisQueue
from .service import BulkNotificationService, create_service

__all__ = [
    "Settings",
    "load_settings",
    "DispatchError",
    "ConfigurationError",
    "TemplateError",
    "QueueError",
    "PersistenceError",
    "RecipientResolutionError",
    "SendError",
    "MissingContactInfo",
    "DeliveryError",
    "Channel",
    "Priority",
    "TaskStatus",
    "RecipientFilter",
    "TaskStatusView",
    "DatabaseQueue",
    "HandlerResult",
    "InMemoryQueue",
    "RedisQueue",
    "BulkNotificationService",
    "create_service",
]
