"""Firebase Cloud Messaging push provider (HTTP v1 API)."""

import logging
import time
from typing import Callable, Optional

import requests

from ..exceptions import ProviderUnavailableError, RateLimitError, SendError, retry_on_exception
from ..models import Priority
from ..schemas import SendResult, SendStatus
from .base import BasePushProvider, raise_for_status

logger = logging.getLogger(__name__)

FCM_API_BASE = "https://fcm.googleapis.com/v1"


class FcmPushProvider(BasePushProvider):
    """Sends one notification per device token through FCM."""

    def __init__(
        self,
        project_id: str,
        access_token: str,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.project_id = project_id
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {access_token}"})
        self._post = retry_on_exception(
            exceptions=(RateLimitError, ProviderUnavailableError),
            max_attempts=max_retries,
            delay=retry_delay,
            logger=logger,
            sleep=sleep,
        )(self._post_once)

    @property
    def send_url(self) -> str:
        return f"{FCM_API_BASE}/projects/{self.project_id}/messages:send"

    @staticmethod
    def build_message(device_token: str, title: str, body: str, priority: Priority) -> dict:
        urgent = priority == Priority.HIGH
        return {
            "message": {
                "token": device_token,
                "notification": {"title": title, "body": body},
                "android": {"priority": "high" if urgent else "normal"},
                "apns": {"headers": {"apns-priority": "10" if urgent else "5"}},
            }
        }

    def _post_once(self, message: dict) -> dict:
        try:
            response = self.session.post(self.send_url, json=message, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ProviderUnavailableError(f"FCM unreachable: {e}", cause=e) from e
        raise_for_status(response, "FCM")
        return response.json()

    def send(self, device_token: str, title: str, body: str, priority: Priority = Priority.NORMAL) -> SendResult:
        result = SendResult(recipient=device_token, status=SendStatus.FAILED)
        try:
            payload = self._post(self.build_message(device_token, title, body, priority))
        except SendError as e:
            result.error_reason = str(e)
            logger.warning("FCM delivery to device %s failed: %s", device_token[:12], e)
            return result

        result.status = SendStatus.SUCCESS
        # FCM returns the message resource name, e.g. projects/p/messages/0:123
        result.message_id = payload.get("name")
        return result
