"""SendGrid email provider."""

import logging
import time
from typing import Callable, Optional

from python_http_client.exceptions import HTTPError
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Content, Header, Mail, To

from ..exceptions import AuthenticationError, DeliveryError, RateLimitError, SendError
from ..models import Priority
from ..schemas import SendResult, SendStatus
from .base import BaseEmailProvider

logger = logging.getLogger(__name__)


class SendGridEmailProvider(BaseEmailProvider):
    """SendGrid email provider."""

    def __init__(
        self,
        from_email: str,
        api_key: str,
        client: Optional[SendGridAPIClient] = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize SendGrid provider.

        Args:
            from_email: Sender email address
            api_key: SendGrid API key
            client: Preconfigured client, mainly for tests
            max_retries: Attempts per message before giving up
            base_delay: Base delay in seconds for exponential backoff
        """
        super().__init__(from_email)
        self.client = client or SendGridAPIClient(api_key)
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

    def validate_connection(self) -> bool:
        try:
            response = self.client.client.scopes.get()
            return response.status_code == 200
        except Exception as e:
            logger.error(f"SendGrid connection validation failed: {e}")
            return False

    def send(self, to: str, subject: str, body: str, priority: Priority = Priority.NORMAL) -> SendResult:
        """Send email via SendGrid.

        Returns:
            SendResult with status and details
        """
        result = SendResult(recipient=to, status=SendStatus.FAILED)

        mail = Mail(from_email=self.from_email, to_emails=To(to), subject=subject)
        mime_type = "text/html" if body.lstrip().startswith("<") else "text/plain"
        mail.add_content(Content(mime_type, body))
        if priority == Priority.HIGH:
            mail.add_header(Header("X-Priority", "1"))

        try:
            response = self._send_with_retry(mail)
        except SendError as e:
            result.error_reason = str(e)
            logger.warning(f"SendGrid delivery to {to} failed: {e}")
            return result

        result.status = SendStatus.SUCCESS
        result.message_id = response.headers.get("X-Message-Id")
        return result

    def _send_with_retry(self, mail: Mail):
        """Send a message with exponential backoff retry.

        Raises:
            AuthenticationError: If the API key is rejected
            RateLimitError: If rate limit is exceeded after retries
            DeliveryError: If delivery fails
        """
        for attempt in range(self.max_retries):
            last_attempt = attempt == self.max_retries - 1
            try:
                return self.client.send(mail)
            except HTTPError as e:
                status = getattr(e, "status_code", None)
                if status in (401, 403):
                    raise AuthenticationError("SendGrid authentication failed", cause=e) from e
                if status == 429 or (status is not None and status >= 500):
                    if last_attempt:
                        if status == 429:
                            raise RateLimitError("Rate limit exceeded after retries", cause=e) from e
                        raise DeliveryError(f"Server error {status} after retries", cause=e) from e
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        f"SendGrid returned {status}. Retrying in {delay}s "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                    self._sleep(delay)
                    continue
                raise DeliveryError(f"SendGrid returned status {status}: {getattr(e, 'body', '')}", cause=e) from e
            except Exception as e:
                raise DeliveryError(f"Unexpected error sending message: {e}", cause=e) from e

        raise DeliveryError(f"Failed to send message after {self.max_retries} attempts")
