"""Sequential delivery of one batch of recipients."""
from __future__ import annotations

import logging
from typing import Mapping, Sequence, Union

from .channels import ChannelSender
from .exceptions import ConfigurationError, SendError
from .models import Channel
from .schemas import BatchResult, Recipient, TaskMessage
from .template import InlineContent, NamedTemplateContent, TemplateLoader, build_variables

logger = logging.getLogger(__name__)

Content = Union[InlineContent, NamedTemplateContent]


class BatchProcessor:
    """Renders and delivers a task's content to a slice of recipients.

    Nothing is persisted here; the caller records the returned counts.
    """

    def __init__(
        self,
        channels: Mapping[Channel, ChannelSender],
        template_loader: TemplateLoader | None = None,
    ) -> None:
        self.channels = channels
        self.template_loader = template_loader

    def prepare(self, task: TaskMessage) -> Content:
        """Pick the content source for a task.

        Raises:
            TemplateError: If the named template cannot be loaded
            ConfigurationError: If a template is named but no loader is configured
        """
        if task.template_name:
            if self.template_loader is None:
                raise ConfigurationError(
                    f"Task {task.id} uses template {task.template_name!r} but no template directory is configured"
                )
            return self.template_loader.prepare(task.template_name)
        return InlineContent(subject=task.subject, body=task.body)

    def process_batch(
        self,
        task: TaskMessage,
        recipients: Sequence[Recipient],
        content: Content | None = None,
    ) -> BatchResult:
        if content is None:
            content = self.prepare(task)
        sender = self.channels[task.channel]
        result = BatchResult()

        for recipient in recipients:
            try:
                variables = build_variables(recipient, task.template_variables)
                subject, body = content.render(variables)
                sender.deliver(recipient, subject, body, task.priority)
                result.success_count += 1
            except SendError as exc:
                result.failure_count += 1
                logger.warning("Task %s: recipient %s not reached: %s", task.id, recipient.id, exc.message)
            except Exception as exc:
                result.failure_count += 1
                logger.error("Task %s: unexpected error for recipient %s: %s", task.id, recipient.id, exc)

        return result


__all__ = ["BatchProcessor", "Content"]
