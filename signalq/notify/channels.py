"""
Outbound delivery channels.

A channel posts text to `(channel_id, optional thread_ts)` and returns the
platform's message identifier. Failures surface as DeliveryError.
"""

from __future__ import annotations

from typing import Protocol

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from signalq.errors import DeliveryError
from signalq.observability.logging import get_logger
from signalq.observability.telemetry import counter

logger = get_logger(__name__)


class DeliveryChannel(Protocol):
    def post(self, channel_id: str, text: str, thread_ts: str | None = None) -> str:
        """Post a message and return its external id (Slack `ts`)."""
        ...


class SlackDeliveryChannel:
    """Posts through Slack's chat.postMessage, replying in-thread when given a thread."""

    def __init__(self, client: WebClient) -> None:
        self.client = client

    @classmethod
    def from_token(cls, token: str) -> SlackDeliveryChannel:
        return cls(WebClient(token=token))

    def post(self, channel_id: str, text: str, thread_ts: str | None = None) -> str:
        kwargs = {"channel": channel_id, "text": text, "unfurl_links": False}
        if thread_ts:
            kwargs["thread_ts"] = thread_ts

        try:
            response = self.client.chat_postMessage(**kwargs)
        except SlackApiError as e:
            counter("notify.slack_errors")
            error_code = e.response.get("error") if e.response is not None else None
            logger.error("Slack post failed in %s (thread=%s): %s", channel_id, thread_ts, error_code)
            raise DeliveryError(
                f"Failed to post notification in channel {channel_id}: {error_code}",
                original=e,
            ) from e

        message_ts = response.get("ts")
        if not message_ts:
            raise DeliveryError(f"Slack returned no message ts for channel {channel_id}")

        logger.info("Posted message %s in %s (thread=%s)", message_ts, channel_id, thread_ts)
        return message_ts


class LogOnlyChannel:
    """Stand-in for dry runs without Slack credentials; logs instead of posting."""

    def post(self, channel_id: str, text: str, thread_ts: str | None = None) -> str:
        logger.info("Dry run, not posting in %s (thread=%s): %s", channel_id, thread_ts, text)
        return ""
