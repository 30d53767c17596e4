"""Data transfer types shared by the dispatch pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from .models import BulkNotificationTask, Channel, Priority, TaskStatus


class RecipientFilter(BaseModel):
    """Declarative user predicate; every populated field is ANDed together.

    Date bounds are exclusive: ``created_after`` keeps users created strictly
    after the instant, ``created_before`` strictly before it. Naive datetimes
    are taken to be UTC. Both snake_case and camelCase keys are accepted.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    role: str | None = None
    is_verified: bool | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    last_login_after: datetime | None = None
    last_login_before: datetime | None = None
    has_listings: bool | None = None
    category_ids: list[int] | None = None
    specific_ids: list[int] | None = None

    @field_validator("created_after", "created_before", "last_login_after", "last_login_before")
    @classmethod
    def _normalize_utc(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> RecipientFilter | None:
        if payload is None:
            return None
        return cls.model_validate(payload)


class TaskMessage(BaseModel):
    """Queue payload describing one bulk task."""

    id: str
    channel: Channel
    body: str
    created_by_id: int
    subject: str | None = None
    recipient_filter: RecipientFilter | None = None
    template_name: str | None = None
    template_variables: dict[str, str] | None = None
    priority: Priority = Priority.NORMAL
    sender_id: int | None = None
    campaign_id: int | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> TaskMessage:
        return cls.model_validate(payload)

    @classmethod
    def from_task(cls, task: BulkNotificationTask) -> TaskMessage:
        return cls(
            id=task.id,
            channel=task.channel,
            body=task.body,
            created_by_id=task.created_by_id,
            subject=task.subject,
            recipient_filter=RecipientFilter.from_payload(task.recipient_filter),
            template_name=task.template_name,
            template_variables=task.template_variables,
            priority=task.priority,
            sender_id=task.sender_id,
            campaign_id=task.campaign_id,
        )


@dataclass(frozen=True)
class Recipient:
    """Read-only projection of a notifiable user."""

    id: int
    email: str | None = None
    name: str | None = None
    phone_number: str | None = None
    # None means the directory did not load tokens with the user.
    device_tokens: list[str] | None = None


class SendStatus(str, Enum):
    """Status of a single provider send."""

    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class SendResult:
    """Result of handing one message to a provider."""

    recipient: str
    status: SendStatus
    message_id: str | None = None
    error_reason: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.status == SendStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient": self.recipient,
            "status": self.status.value,
            "message_id": self.message_id,
            "error_reason": self.error_reason,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class BatchResult:
    success_count: int = 0
    failure_count: int = 0

    @property
    def processed(self) -> int:
        return self.success_count + self.failure_count


@dataclass(frozen=True)
class TaskStatusView:
    """Normalized status projection returned by status queries."""

    id: str
    status: TaskStatus
    total_sent: int
    total_failed: int
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "total_sent": self.total_sent,
            "total_failed": self.total_failed,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class ActiveTaskView:
    id: str
    channel: Channel
    status: TaskStatus
    total_sent: int
    total_failed: int
    started_at: datetime | None = None


@dataclass
class ReconcileReport:
    failed: list[str] = field(default_factory=list)
    requeued: list[str] = field(default_factory=list)


__all__ = [
    "ActiveTaskView",
    "BatchResult",
    "Recipient",
    "RecipientFilter",
    "ReconcileReport",
    "SendResult",
    "SendStatus",
    "TaskMessage",
    "TaskStatusView",
]
