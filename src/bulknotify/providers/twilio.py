"""Twilio SMS provider using the REST API."""

import logging
import time
from typing import Callable, Optional

import requests

from ..exceptions import ProviderUnavailableError, RateLimitError, SendError, retry_on_exception
from ..models import Priority
from ..schemas import SendResult, SendStatus
from .base import BaseSmsProvider, raise_for_status

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class TwilioSmsProvider(BaseSmsProvider):
    """Sends text messages through the Twilio Messages resource."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.account_sid = account_sid
        self.from_number = from_number
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (account_sid, auth_token)
        self._post = retry_on_exception(
            exceptions=(RateLimitError, ProviderUnavailableError),
            max_attempts=max_retries,
            delay=retry_delay,
            logger=logger,
            sleep=sleep,
        )(self._post_once)

    @property
    def messages_url(self) -> str:
        return f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json"

    def _post_once(self, data: dict) -> dict:
        try:
            response = self.session.post(self.messages_url, data=data, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ProviderUnavailableError(f"Twilio unreachable: {e}", cause=e) from e
        raise_for_status(response, "Twilio")
        return response.json()

    def send(self, to: str, body: str, priority: Priority = Priority.NORMAL) -> SendResult:
        result = SendResult(recipient=to, status=SendStatus.FAILED)
        try:
            payload = self._post({"To": to, "From": self.from_number, "Body": body})
        except SendError as e:
            result.error_reason = str(e)
            logger.warning("Twilio delivery to %s failed: %s", to, e)
            return result

        result.status = SendStatus.SUCCESS
        result.message_id = payload.get("sid")
        return result
