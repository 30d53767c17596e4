"""Channel senders that turn rendered content into provider calls."""
from __future__ import annotations

import logging
from typing import Callable, Protocol

from .config import Settings
from .exceptions import ConfigurationError, DeliveryError, MissingContactInfo
from .models import Channel, Priority
from .providers import (
    BaseEmailProvider,
    BasePushProvider,
    BaseSmsProvider,
    FcmPushProvider,
    MockEmailProvider,
    MockPushProvider,
    MockSmsProvider,
    SendGridEmailProvider,
    TwilioSmsProvider,
)
from .schemas import Recipient

logger = logging.getLogger(__name__)

DEFAULT_PUSH_TITLE = "Notification"


class ChannelSender(Protocol):
    def deliver(
        self, recipient: Recipient, subject: str | None, body: str, priority: Priority = Priority.NORMAL
    ) -> None: ...


class EmailChannel:
    def __init__(self, provider: BaseEmailProvider) -> None:
        self.provider = provider

    def deliver(
        self, recipient: Recipient, subject: str | None, body: str, priority: Priority = Priority.NORMAL
    ) -> None:
        if not recipient.email:
            raise MissingContactInfo(recipient.id, "email")
        result = self.provider.send(recipient.email, subject or "", body, priority)
        if not result.ok:
            raise DeliveryError(
                f"Email to user {recipient.id} failed: {result.error_reason}",
                context={"recipient_id": recipient.id},
            )


class SmsChannel:
    def __init__(self, provider: BaseSmsProvider) -> None:
        self.provider = provider

    def deliver(
        self, recipient: Recipient, subject: str | None, body: str, priority: Priority = Priority.NORMAL
    ) -> None:
        if not recipient.phone_number:
            raise MissingContactInfo(recipient.id, "phone_number")
        result = self.provider.send(recipient.phone_number, body, priority)
        if not result.ok:
            raise DeliveryError(
                f"SMS to user {recipient.id} failed: {result.error_reason}",
                context={"recipient_id": recipient.id},
            )


class PushChannel:
    """Sends to every device a user has; one successful device is enough.

    Tokens come with the recipient when the directory preloads them. Otherwise
    they are fetched per user through ``token_lookup``, usually
    ``UserDirectory.get_device_tokens``.
    """

    def __init__(
        self,
        provider: BasePushProvider,
        token_lookup: Callable[[int], list[str]] | None = None,
    ) -> None:
        self.provider = provider
        self.token_lookup = token_lookup

    def _tokens_for(self, recipient: Recipient) -> list[str]:
        if recipient.device_tokens is not None:
            return recipient.device_tokens
        if self.token_lookup is None:
            return []
        return list(self.token_lookup(recipient.id))

    def deliver(
        self, recipient: Recipient, subject: str | None, body: str, priority: Priority = Priority.NORMAL
    ) -> None:
        tokens = self._tokens_for(recipient)
        if not tokens:
            raise MissingContactInfo(recipient.id, "device_tokens")

        title = subject or DEFAULT_PUSH_TITLE
        errors = []
        delivered = 0
        for token in tokens:
            try:
                result = self.provider.send(token, title, body, priority)
            except Exception as exc:
                errors.append(str(exc))
                continue
            if result.ok:
                delivered += 1
            else:
                errors.append(result.error_reason or "unknown error")

        if delivered == 0:
            raise DeliveryError(
                f"Push to user {recipient.id} failed on all {len(tokens)} devices",
                context={"recipient_id": recipient.id, "errors": errors},
            )
        if errors:
            logger.debug("Push to user %s reached %s of %s devices", recipient.id, delivered, len(tokens))


def build_channels(
    settings: Settings,
    token_lookup: Callable[[int], list[str]] | None = None,
) -> dict[Channel, ChannelSender]:
    """Wire each channel to the provider selected in configuration."""
    if settings.email.provider == "sendgrid":
        if not settings.sendgrid.api_key:
            raise ConfigurationError("sendgrid.api_key is required for the sendgrid email provider")
        email_provider: BaseEmailProvider = SendGridEmailProvider(
            from_email=settings.email.from_email, api_key=settings.sendgrid.api_key
        )
    else:
        email_provider = MockEmailProvider(from_email=settings.email.from_email)

    if settings.sms.provider == "twilio":
        twilio = settings.twilio
        if not (twilio.account_sid and twilio.auth_token and twilio.from_number):
            raise ConfigurationError("twilio.account_sid, auth_token and from_number are required")
        sms_provider: BaseSmsProvider = TwilioSmsProvider(
            account_sid=twilio.account_sid,
            auth_token=twilio.auth_token,
            from_number=twilio.from_number,
        )
    else:
        sms_provider = MockSmsProvider()

    if settings.push.provider == "fcm":
        fcm = settings.fcm
        if not (fcm.project_id and fcm.access_token):
            raise ConfigurationError("fcm.project_id and fcm.access_token are required")
        push_provider: BasePushProvider = FcmPushProvider(
            project_id=fcm.project_id, access_token=fcm.access_token
        )
    else:
        push_provider = MockPushProvider()

    logger.info(
        "Channel providers: email=%s sms=%s push=%s",
        settings.email.provider, settings.sms.provider, settings.push.provider,
    )
    return {
        Channel.EMAIL: EmailChannel(email_provider),
        Channel.SMS: SmsChannel(sms_provider),
        Channel.PUSH: PushChannel(push_provider, token_lookup),
    }


__all__ = [
    "ChannelSender",
    "DEFAULT_PUSH_TITLE",
    "EmailChannel",
    "PushChannel",
    "SmsChannel",
    "build_channels",
]
