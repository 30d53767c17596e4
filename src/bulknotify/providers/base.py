"""Base provider interfaces for the three delivery channels."""

import logging
from abc import ABC, abstractmethod

import requests

from ..exceptions import AuthenticationError, DeliveryError, ProviderUnavailableError, RateLimitError
from ..models import Priority
from ..schemas import SendResult

logger = logging.getLogger(__name__)


class BaseEmailProvider(ABC):
    """Abstract base class for email providers."""

    def __init__(self, from_email: str):
        """Initialize the provider.

        Args:
            from_email: Default sender email address
        """
        self.from_email = from_email

    @abstractmethod
    def send(self, to: str, subject: str, body: str, priority: Priority = Priority.NORMAL) -> SendResult:
        """Send one email.

        Args:
            to: Recipient address
            subject: Rendered subject line
            body: Rendered body (HTML when it starts with a tag, plain text otherwise)
            priority: Task priority

        Returns:
            SendResult with status and details
        """

    def validate_connection(self) -> bool:
        """Validate that the provider is properly configured."""
        return True


class BaseSmsProvider(ABC):
    """Abstract base class for SMS providers."""

    @abstractmethod
    def send(self, to: str, body: str, priority: Priority = Priority.NORMAL) -> SendResult:
        """Send one text message to a phone number."""


class BasePushProvider(ABC):
    """Abstract base class for push providers."""

    @abstractmethod
    def send(self, device_token: str, title: str, body: str, priority: Priority = Priority.NORMAL) -> SendResult:
        """Send one push notification to a single device."""


def raise_for_status(response: requests.Response, provider: str) -> None:
    """Map an HTTP error response onto the delivery error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    detail = response.text[:200]
    if status in (401, 403):
        raise AuthenticationError(f"{provider} rejected credentials ({status}): {detail}")
    if status == 429:
        raise RateLimitError(f"{provider} rate limit exceeded: {detail}")
    if status >= 500:
        raise ProviderUnavailableError(f"{provider} server error {status}: {detail}")
    raise DeliveryError(f"{provider} returned {status}: {detail}")
