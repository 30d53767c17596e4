"""Channel provider implementations."""

from .base import BaseEmailProvider, BasePushProvider, BaseSmsProvider
from .fcm import FcmPushProvider
from .mock import MockEmailProvider, MockPushProvider, MockSmsProvider
from .sendgrid import SendGridEmailProvider
from .twilio import TwilioSmsProvider

__all__ = [
    "BaseEmailProvider",
    "BasePushProvider",
    "BaseSmsProvider",
    "FcmPushProvider",
    "MockEmailProvider",
    "MockPushProvider",
    "MockSmsProvider",
    "SendGridEmailProvider",
    "TwilioSmsProvider",
]
