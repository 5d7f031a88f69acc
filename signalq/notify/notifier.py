"""
Notifier - posts one "insight detected" message per conversation.

Exactly-once triggering uses claim-then-deliver:

1. Insert a pending NotificationRecord under UNIQUE(conversation_id, type).
   Losing the insert means another path already owns the notification.
2. Post to the origin channel (in-thread when the conversation is a thread).
   A failed post releases the claim so a later worthy insight can retry.
3. In one transaction, flip conversations.notified and mark the record
   delivered with the message ts. If that write fails the claim stays
   pending, so no retry can post twice; NotificationRecordError surfaces the
   delivered-but-unrecorded message for reconciliation.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from signalq.config import DRY_RUN_MODE, SLACK_WORKSPACE_ID
from signalq.conversations.models import (
    Conversation,
    Insight,
    NotificationRecord,
    NotificationType,
    utc_now,
)
from signalq.conversations.repository import NotificationRepository
from signalq.errors import DeliveryError, NotificationRecordError, TransientIOError
from signalq.infrastructure.idempotency import notification_key
from signalq.notify.channels import DeliveryChannel
from signalq.observability.logging import get_logger
from signalq.observability.telemetry import counter, log_event

logger = get_logger(__name__)

CONTENT_PREVIEW_CHARS = 1200


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    ALREADY_NOTIFIED = "already_notified"
    NOT_WORTHY = "not_worthy"
    DRY_RUN = "dry_run"


@dataclass(frozen=True)
class DeliveryResult:
    outcome: DeliveryOutcome
    message: str | None = None
    message_ts: str | None = None
    idempotency_key: str | None = None

    @property
    def delivered(self) -> bool:
        return self.outcome == DeliveryOutcome.DELIVERED


def build_thread_link(workspace_id: str, channel_id: str, thread_ts: str | None = None) -> str:
    """Deep link to a channel, or to a thread when thread_ts is given."""
    base = f"https://app.slack.com/client/{workspace_id}/{channel_id}"
    if thread_ts:
        return f"{base}/p{thread_ts.replace('.', '')}"
    return base


def format_notification(insight: Insight, conversation: Conversation) -> str:
    """Human-readable Slack message for a worthy insight."""
    lines = [
        ":dart: *Post Idea Detected*",
        "",
        f"*Topic:* {insight.topic or 'n/a'}",
    ]
    if insight.summary:
        lines += ["", f"*Insight:*\n{insight.summary}"]
    if insight.suggested_angle:
        lines += ["", f"*Suggested Angle:*\n{insight.suggested_angle}"]
    lines += ["", f"*Confidence:* {insight.confidence * 100:.0f}%"]

    if insight.content:
        preview = insight.content[:CONTENT_PREVIEW_CHARS]
        platform = insight.platform or "post"
        lines += ["", f"*Draft ({platform}):*", f"```{preview}```"]

    lines += ["", f"_Signal score {conversation.signal_score}/100, summary v{insight.summary_version}_"]
    return "\n".join(lines)


class Notifier:
    """
    Args:
        channel: Outbound delivery channel
        dry_run: Format and check idempotency only; no post, no state change
        workspace_id: Slack workspace used in deep links
        clock: Time source for delivered_at / notified_at
    """

    def __init__(
        self,
        channel: DeliveryChannel,
        dry_run: bool = DRY_RUN_MODE,
        workspace_id: str = SLACK_WORKSPACE_ID,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.channel = channel
        self.dry_run = dry_run
        self.workspace_id = workspace_id
        self.clock = clock

    def notify(self, insight: Insight, conversation: Conversation) -> DeliveryResult:
        """
        Deliver the notification for a worthy insight at most once per conversation.

        Args:
            insight: Persisted insight
            conversation: Conversation the insight belongs to

        Returns:
            DeliveryResult (already_notified and not_worthy are results, not errors)

        Raises:
            DeliveryError: Post failed; the claim was released
            NotificationRecordError: Posted but the delivery could not be recorded

        Side Effects:
            - Inserts/updates a notifications row
            - Posts to the delivery channel
            - Flips conversations.notified
        """
        if conversation.notified:
            counter("notify.already_notified")
            logger.warning("Conversation %s already notified", conversation.id)
            return DeliveryResult(DeliveryOutcome.ALREADY_NOTIFIED)

        if not insight.worthy:
            logger.debug("Insight %s not worthy, skipping notification", insight.id)
            return DeliveryResult(DeliveryOutcome.NOT_WORTHY)

        message = format_notification(insight, conversation)
        notification_type = NotificationType.INSIGHT_DETECTED
        key = notification_key(conversation.id, notification_type.value, message)

        if self.dry_run:
            return self._dry_run(conversation, message, key)

        record = NotificationRecord(
            conversation_id=conversation.id,
            insight_id=insight.id,
            type=notification_type,
            idempotency_key=key,
            channel_id=conversation.channel_id,
            thread_ts=conversation.thread_ts,
            created_at=self.clock(),
        )
        if not NotificationRepository.claim(record):
            counter("notify.already_notified")
            return DeliveryResult(DeliveryOutcome.ALREADY_NOTIFIED, message=message, idempotency_key=key)

        try:
            message_ts = self.channel.post(conversation.channel_id, message, conversation.thread_ts)
        except DeliveryError as e:
            self._release(record, e)
            raise
        except Exception as e:
            self._release(record, e)
            raise DeliveryError(f"Notification delivery failed: {e}", original=e) from e

        delivered_at = self.clock()
        try:
            flipped = NotificationRepository.confirm_delivery(
                record.id, conversation.id, message_ts, delivered_at
            )
        except (sqlite3.Error, TransientIOError) as e:
            counter("notify.record_failed")
            logger.error(
                "Delivered %s for conversation %s but failed to record it; claim %s left pending",
                message_ts,
                conversation.id,
                record.id,
            )
            raise NotificationRecordError(conversation.id, message_ts, e) from e

        if not flipped:
            logger.warning("Conversation %s was already marked notified when confirming", conversation.id)

        conversation.notified = True
        conversation.notified_at = delivered_at
        counter("notify.delivered")
        log_event(
            "notify.delivered",
            conversation_id=conversation.id,
            insight_id=insight.id,
            message_ts=message_ts,
        )
        return DeliveryResult(
            DeliveryOutcome.DELIVERED,
            message=message,
            message_ts=message_ts,
            idempotency_key=key,
        )

    def _release(self, record: NotificationRecord, error: Exception) -> None:
        NotificationRepository.release(record.id)
        counter("notify.delivery_failed")
        logger.error(
            "Notification delivery failed for %s, claim released: %s",
            record.conversation_id,
            error,
        )

    def _dry_run(self, conversation: Conversation, message: str, key: str) -> DeliveryResult:
        existing = NotificationRepository.get_for_conversation(conversation.id)
        if existing is not None:
            return DeliveryResult(DeliveryOutcome.ALREADY_NOTIFIED, message=message, idempotency_key=key)

        logger.info(
            "[DRY RUN] Would post notification for %s in %s (thread=%s): %s",
            conversation.id,
            conversation.channel_id,
            conversation.thread_ts,
            build_thread_link(self.workspace_id, conversation.channel_id, conversation.thread_ts),
        )
        counter("notify.dry_run")
        return DeliveryResult(DeliveryOutcome.DRY_RUN, message=message, idempotency_key=key)
