"""Exception hierarchy for bulk notification dispatch."""

import functools
import logging
import time
import traceback
from enum import Enum
from typing import Callable, Optional


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DispatchError(Exception):
    """Base exception for all bulknotify errors."""

    def __init__(
        self,
        message: str,
        cause: Optional[Exception] = None,
        context: Optional[dict] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context = context or {}
        self.severity = severity
        self.traceback_str = traceback.format_exc() if cause else None


class ConfigurationError(DispatchError):
    """Raised when configuration is invalid or missing."""
    pass


class TemplateError(DispatchError):
    """Raised when a named template cannot be loaded or rendered."""
    pass


class QueueError(DispatchError):
    """Raised when the dispatch queue cannot accept or deliver a message."""
    pass


class PersistenceError(DispatchError):
    """Raised when the task store is unreachable or a write fails."""
    pass


class RecipientResolutionError(DispatchError):
    """Raised when the user directory cannot resolve a recipient filter."""
    pass


class SendError(DispatchError):
    """Base class for per-recipient delivery errors."""
    pass


class MissingContactInfo(SendError):
    """Raised when a recipient lacks the contact field a channel needs."""

    def __init__(self, recipient_id: int, field: str):
        super().__init__(
            f"Recipient {recipient_id} has no {field}",
            context={"recipient_id": recipient_id, "field": field},
            severity=ErrorSeverity.LOW,
        )
        self.recipient_id = recipient_id
        self.field = field


class DeliveryError(SendError):
    """Raised when a channel provider fails to deliver a message."""
    pass


class ProviderUnavailableError(DeliveryError):
    """Raised when a provider answers with a server error or cannot be reached."""
    pass


class AuthenticationError(SendError):
    """Raised when authentication with a channel provider fails."""
    pass


class RateLimitError(SendError):
    """Raised when a channel provider rate limit is exceeded."""
    pass


def retry_on_exception(
    exceptions: tuple = (Exception,),
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator to retry operations on certain exceptions.

    Args:
        exceptions: Tuple of exceptions to retry on
        max_attempts: Maximum number of attempts
        delay: Initial delay between attempts in seconds
        backoff: Multiplier for delay between attempts
        logger: Logger to use for retry attempts
        sleep: Sleep function, replaceable in tests
    """
    def decorator(func: Callable) -> Callable:
        log = logger or logging.getLogger(func.__module__)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            current_delay = delay

            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts - 1:
                        log.error(
                            "Function %s failed after %s attempts: %s",
                            func.__name__, max_attempts, e,
                        )
                        raise

                    log.warning(
                        "Function %s failed (attempt %s/%s), retrying in %ss: %s",
                        func.__name__, attempt + 1, max_attempts, current_delay, e,
                    )
                    sleep(current_delay)
                    current_delay *= backoff

        return wrapper
    return decorator


def format_exception_chain(exception: BaseException) -> str:
    """
    Format an exception chain for logging or for a task's last_error.

    Args:
        exception: The exception to format

    Returns:
        Formatted exception chain as a string
    """
    lines = []
    current = exception
    seen = set()

    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, DispatchError):
            lines.append(f"{type(current).__name__}: {current.message}")
            if current.context:
                lines.append(f"  Context: {current.context}")
            nxt = current.cause or current.__cause__
        else:
            lines.append(f"{type(current).__name__}: {current}")
            nxt = current.__cause__
        if nxt is not None:
            lines.append("  Caused by:")
        current = nxt

    return "\n".join(lines)
