"""Mock providers for dry runs and tests."""

import logging
import uuid
from typing import Iterable, List, Dict, Any

from ..models import Priority
from ..schemas import SendResult, SendStatus
from .base import BaseEmailProvider, BasePushProvider, BaseSmsProvider

logger = logging.getLogger(__name__)


class _Recorder:
    """Keeps every message handed to a mock provider."""

    def __init__(self, fail_for: Iterable[str] = ()):
        self.fail_for = set(fail_for)
        self.sent: List[Dict[str, Any]] = []

    def _record(self, address: str, **message) -> SendResult:
        if address in self.fail_for:
            logger.info("Mock provider failing delivery to %s", address)
            return SendResult(recipient=address, status=SendStatus.FAILED, error_reason="mock failure")

        self.sent.append({"to": address, **message})
        return SendResult(
            recipient=address,
            status=SendStatus.SUCCESS,
            message_id=f"mock-{uuid.uuid4().hex[:12]}",
        )


class MockEmailProvider(_Recorder, BaseEmailProvider):
    """Mock email provider that doesn't actually send emails."""

    def __init__(self, from_email: str = "noreply@example.com", fail_for: Iterable[str] = ()):
        BaseEmailProvider.__init__(self, from_email)
        _Recorder.__init__(self, fail_for)

    def send(self, to: str, subject: str, body: str, priority: Priority = Priority.NORMAL) -> SendResult:
        logger.debug("Mock email to %s: %s", to, subject)
        return self._record(to, subject=subject, body=body, priority=priority)


class MockSmsProvider(_Recorder, BaseSmsProvider):
    """Mock SMS provider that doesn't actually send messages."""

    def send(self, to: str, body: str, priority: Priority = Priority.NORMAL) -> SendResult:
        logger.debug("Mock SMS to %s", to)
        return self._record(to, body=body, priority=priority)


class MockPushProvider(_Recorder, BasePushProvider):
    """Mock push provider; ``fail_for`` holds device tokens that should fail."""

    def send(self, device_token: str, title: str, body: str, priority: Priority = Priority.NORMAL) -> SendResult:
        logger.debug("Mock push to device %s: %s", device_token, title)
        return self._record(device_token, title=title, body=body, priority=priority)
