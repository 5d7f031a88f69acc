"""
Conversation domain models.

These models represent the durable records of the insight pipeline
(conversations, insights, notification records) and the transient records
flowing through it (chat events, buffered events).
"""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def count_words(text: str) -> int:
    return len(text.split())


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _iso(val: datetime | None) -> str | None:
    return val.isoformat() if val else None


class TriggerType(str, Enum):
    """Why a buffer window closed."""

    SILENCE = "silence"  # Quiet period elapsed after the last event
    VOLUME = "volume"  # Window reached its size cap


class NotificationType(str, Enum):
    INSIGHT_DETECTED = "insight_detected"


class NotificationStatus(str, Enum):
    """Lifecycle of a notification claim."""

    PENDING = "pending"  # Claimed, delivery not yet confirmed
    DELIVERED = "delivered"  # Posted and recorded


class ConversationKey(BaseModel):
    """Stable identity of a conversation: workspace, channel and optional thread."""

    model_config = ConfigDict(frozen=True)

    workspace_id: str
    channel_id: str
    thread_ts: str | None = None

    def as_string(self) -> str:
        """Stable string form, e.g. "T01:C02" or "T01:C02:1712.0001"."""
        base = f"{self.workspace_id}:{self.channel_id}"
        return f"{base}:{self.thread_ts}" if self.thread_ts else base

    def __str__(self) -> str:
        return self.as_string()


class ChatEvent(BaseModel):
    """A normalized inbound chat message."""

    model_config = ConfigDict(frozen=True)

    key: ConversationKey
    user_id: str
    text: str
    timestamp: datetime = Field(default_factory=utc_now)
    is_bot: bool = False
    message_ts: str | None = Field(default=None, description="Platform message id")

    @property
    def word_count(self) -> int:
        return count_words(self.text)


class BufferedEvent(BaseModel):
    """One entry of a buffer window."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    text: str
    timestamp: datetime

    @classmethod
    def from_chat_event(cls, event: ChatEvent) -> BufferedEvent:
        return cls(user_id=event.user_id, text=event.text, timestamp=event.timestamp)


class Conversation(BaseModel):
    """
    Durable per-conversation state.

    `notified` flips from False to True exactly once; nothing resets it.
    Pending text is the material accumulated since the last compression.
    """

    model_config = ConfigDict(frozen=False)

    # Identity
    id: str = Field(default_factory=new_id)
    workspace_id: str
    channel_id: str
    thread_ts: str | None = None

    # Accumulation
    message_count: int = 0
    participant_ids: list[str] = Field(default_factory=list)
    total_word_count: int = 0

    # Rolling summary
    rolling_summary: str = ""
    summary_version: int = 1
    pending_text: str = ""
    pending_count: int = 0
    pending_word_count: int = 0

    # Lifecycle timestamps
    window_started_at: datetime = Field(default_factory=utc_now)
    last_activity_at: datetime = Field(default_factory=utc_now)
    gate_passed_at: datetime | None = None
    last_analysis_at: datetime | None = None
    last_compressed_at: datetime | None = None

    # Outcome
    notified: bool = False
    notified_at: datetime | None = None
    signal_score: int = Field(default=0, ge=0, le=100)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> ConversationKey:
        return ConversationKey(
            workspace_id=self.workspace_id,
            channel_id=self.channel_id,
            thread_ts=self.thread_ts,
        )

    @property
    def participant_count(self) -> int:
        return len(self.participant_ids)

    def to_db_dict(self) -> dict[str, Any]:
        """Convert to dict for database storage."""
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "channel_id": self.channel_id,
            "thread_ts": self.thread_ts or "",
            "message_count": self.message_count,
            "participant_ids": json.dumps(self.participant_ids),
            "total_word_count": self.total_word_count,
            "rolling_summary": self.rolling_summary,
            "summary_version": self.summary_version,
            "pending_text": self.pending_text,
            "pending_count": self.pending_count,
            "pending_word_count": self.pending_word_count,
            "window_started_at": self.window_started_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "gate_passed_at": _iso(self.gate_passed_at),
            "last_analysis_at": _iso(self.last_analysis_at),
            "last_compressed_at": _iso(self.last_compressed_at),
            "notified": 1 if self.notified else 0,
            "notified_at": _iso(self.notified_at),
            "signal_score": self.signal_score,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> Conversation:
        """Create Conversation from database row."""
        return cls(
            id=row["id"],
            workspace_id=row["workspace_id"],
            channel_id=row["channel_id"],
            thread_ts=row["thread_ts"] or None,
            message_count=row["message_count"],
            participant_ids=json.loads(row["participant_ids"] or "[]"),
            total_word_count=row["total_word_count"],
            rolling_summary=row["rolling_summary"] or "",
            summary_version=row["summary_version"],
            pending_text=row["pending_text"] or "",
            pending_count=row["pending_count"],
            pending_word_count=row["pending_word_count"],
            window_started_at=datetime.fromisoformat(row["window_started_at"]),
            last_activity_at=datetime.fromisoformat(row["last_activity_at"]),
            gate_passed_at=_parse_dt(row["gate_passed_at"]),
            last_analysis_at=_parse_dt(row["last_analysis_at"]),
            last_compressed_at=_parse_dt(row["last_compressed_at"]),
            notified=bool(row["notified"]),
            notified_at=_parse_dt(row["notified_at"]),
            signal_score=row["signal_score"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


class Insight(BaseModel):
    """One analysis outcome. Immutable once created."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str = Field(default_factory=new_id)
    conversation_id: str
    worthy: bool
    confidence: float = Field(ge=0.0, le=1.0)
    topic: str = ""
    summary: str = ""
    suggested_angle: str = ""
    content: str | None = Field(default=None, description="Generated post, None if skipped or failed")
    platform: str | None = None
    summary_version: int
    trigger: TriggerType
    model: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "worthy": 1 if self.worthy else 0,
            "confidence": self.confidence,
            "topic": self.topic,
            "summary": self.summary,
            "suggested_angle": self.suggested_angle,
            "content": self.content,
            "platform": self.platform,
            "summary_version": self.summary_version,
            "trigger": self.trigger if isinstance(self.trigger, str) else self.trigger.value,
            "model": self.model,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> Insight:
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            worthy=bool(row["worthy"]),
            confidence=row["confidence"],
            topic=row["topic"] or "",
            summary=row["summary"] or "",
            suggested_angle=row["suggested_angle"] or "",
            content=row["content"],
            platform=row["platform"],
            summary_version=row["summary_version"],
            trigger=TriggerType(row["trigger"]),
            model=row["model"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )


class NotificationRecord(BaseModel):
    """Delivery proof; at most one per (conversation_id, type)."""

    model_config = ConfigDict(frozen=False, use_enum_values=True)

    id: str = Field(default_factory=new_id)
    conversation_id: str
    insight_id: str | None = None
    type: NotificationType = NotificationType.INSIGHT_DETECTED
    status: NotificationStatus = NotificationStatus.PENDING
    idempotency_key: str
    channel_id: str
    thread_ts: str | None = None
    message_ts: str | None = Field(default=None, description="External message id for reply correlation")
    created_at: datetime = Field(default_factory=utc_now)
    delivered_at: datetime | None = None

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "insight_id": self.insight_id,
            "type": self.type if isinstance(self.type, str) else self.type.value,
            "status": self.status if isinstance(self.status, str) else self.status.value,
            "idempotency_key": self.idempotency_key,
            "channel_id": self.channel_id,
            "thread_ts": self.thread_ts,
            "message_ts": self.message_ts,
            "created_at": self.created_at.isoformat(),
            "delivered_at": _iso(self.delivered_at),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> NotificationRecord:
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            insight_id=row["insight_id"],
            type=NotificationType(row["type"]),
            status=NotificationStatus(row["status"]),
            idempotency_key=row["idempotency_key"],
            channel_id=row["channel_id"],
            thread_ts=row["thread_ts"],
            message_ts=row["message_ts"],
            created_at=datetime.fromisoformat(row["created_at"]),
            delivered_at=_parse_dt(row["delivered_at"]),
        )
