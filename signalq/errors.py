"""
Error taxonomy for the insight pipeline.

Local recovery happens at the component that owns the failure (compressor
falls back to emergency truncation, worthiness check falls back to "not
worthy"). Only RateLimitedError and the notification-recording failure are
meant to reach callers.
"""

from __future__ import annotations


class SignalQError(Exception):
    """Base exception for SignalQ errors."""


class TransientIOError(SignalQError):
    """Storage or network hiccup; safe to retry with backoff."""

    def __init__(self, message: str, original: BaseException | None = None):
        super().__init__(message)
        self.original = original


class RateLimitedError(SignalQError):
    """Outbound analysis call refused by the local rate limiter.

    Callers schedule their own retry using `retry_after_seconds`; they must
    not busy-retry.
    """

    def __init__(self, message: str, retry_after_seconds: float):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class MalformedResponseError(SignalQError):
    """Model output could not be parsed into the expected shape."""


class LLMError(SignalQError):
    """Analysis call failed after exhausting retries."""

    def __init__(self, message: str, original: BaseException | None = None):
        super().__init__(message)
        self.original = original


class ConfigurationError(SignalQError):
    """A required external capability is missing. Fatal at startup."""

    def __init__(self, problems: list[str]):
        super().__init__("; ".join(problems))
        self.problems = problems


class DeliveryError(SignalQError):
    """Outbound post to the chat platform failed."""

    def __init__(self, message: str, original: BaseException | None = None):
        super().__init__(message)
        self.original = original


class NotificationRecordError(SignalQError):
    """A message was delivered but recording the delivery failed.

    The pending claim stays in place so no retry can deliver twice.
    """

    def __init__(self, conversation_id: str, message_ts: str | None, original: BaseException):
        super().__init__(
            f"Delivered notification for conversation {conversation_id} "
            f"(message_ts={message_ts}) but failed to record it: {original}"
        )
        self.conversation_id = conversation_id
        self.message_ts = message_ts
        self.original = original
