"""
Slack message payload parsing and noise filtering.

Turns a Slack `message` event into a ChatEvent and decides whether it is
worth counting: very short messages, filler acknowledgements and channel
meta-messages are noise.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any

from signalq.config import SLACK_WORKSPACE_ID
from signalq.conversations.models import ChatEvent, ConversationKey, count_words, utc_now

MIN_WORDS = 3
SUMMARY_TEXT_MAX_CHARS = 200

FILLER_PATTERNS = [
    re.compile(r"^(ok|okay|k|kk|got it|thanks|thank you|ty|np|sure|yep|yeah|nope|lol|haha|lmao|rofl)$"),
    re.compile(r"^(\U0001F44D|\U0001F44C|✅|❤️?|\U0001F64F|\U0001F60A|\U0001F604|\U0001F389)$"),
    re.compile(r"^(cc|fyi|btw|imo|imho|tbh|afaik)$"),
]

META_PATTERNS = (
    "joined the channel",
    "left the channel",
    "set the channel topic",
    "uploaded a file",
    "pinned a message",
    "changed the channel name",
)

SKIP_SUBTYPES = frozenset(
    {
        "channel_join",
        "channel_leave",
        "channel_topic",
        "channel_purpose",
        "channel_name",
        "message_deleted",
        "message_changed",
    }
)

_MENTION_RE = re.compile(r"<@[A-Z0-9]+>")
_CHANNEL_RE = re.compile(r"<#[A-Z0-9]+\|([^>]+)>")
_LABELED_LINK_RE = re.compile(r"<https?://[^|>]+\|([^>]+)>")
_BARE_LINK_RE = re.compile(r"<https?://[^>]+>")
_CODE_BLOCK_RE = re.compile(r"```.+?```", re.DOTALL)
_INLINE_CODE_RE = re.compile(r"`[^`]+`")


def is_noise(text: str, word_count: int | None = None) -> bool:
    """True for messages too short or too content-free to count."""
    if word_count is None:
        word_count = count_words(text)
    if word_count < MIN_WORDS:
        return True

    trimmed = text.strip().lower()
    if any(pattern.match(trimmed) for pattern in FILLER_PATTERNS):
        return True
    return any(meta in trimmed for meta in META_PATTERNS)


def prepare_text(text: str) -> str:
    """
    Normalize message text for the pending summary buffer.

    Mentions, channel links, URLs and code are replaced with placeholders;
    the result is capped at 200 characters.
    """
    cleaned = _MENTION_RE.sub("User", text)
    cleaned = _CHANNEL_RE.sub(r"#\1", cleaned)
    cleaned = _LABELED_LINK_RE.sub(r"\1", cleaned)
    cleaned = _BARE_LINK_RE.sub("[link]", cleaned)
    cleaned = _CODE_BLOCK_RE.sub("[code block]", cleaned)
    cleaned = _INLINE_CODE_RE.sub("[code]", cleaned)
    cleaned = " ".join(cleaned.split())

    if len(cleaned) > SUMMARY_TEXT_MAX_CHARS:
        cleaned = cleaned[: SUMMARY_TEXT_MAX_CHARS - 3] + "..."
    return cleaned


def should_process(payload: dict[str, Any]) -> bool:
    """Skip empty messages and channel housekeeping subtypes."""
    text = payload.get("text") or ""
    if not text.strip():
        return False
    return payload.get("subtype") not in SKIP_SUBTYPES


def _parse_ts(ts: str | None) -> datetime:
    if not ts:
        return utc_now()
    try:
        return datetime.fromtimestamp(float(ts), tz=UTC)
    except (TypeError, ValueError):
        return utc_now()


def parse_slack_message(payload: dict[str, Any], workspace_id: str | None = None) -> ChatEvent:
    """
    Build a ChatEvent from a Slack message event payload.

    Args:
        payload: Slack event (`channel`, `user`, `text`, `ts`, optional `thread_ts`)
        workspace_id: Overrides payload `team` and SLACK_WORKSPACE_ID

    Returns:
        ChatEvent keyed by workspace, channel and thread

    Raises:
        ValueError: If the payload has no channel
    """
    channel_id = payload.get("channel")
    if not channel_id:
        raise ValueError("Slack message payload has no channel")

    workspace = workspace_id or payload.get("team") or SLACK_WORKSPACE_ID
    is_bot = payload.get("bot_id") is not None or payload.get("subtype") == "bot_message"

    return ChatEvent(
        key=ConversationKey(
            workspace_id=workspace,
            channel_id=channel_id,
            thread_ts=payload.get("thread_ts") or None,
        ),
        user_id=payload.get("user") or payload.get("bot_id") or "unknown",
        text=payload.get("text") or "",
        timestamp=_parse_ts(payload.get("ts")),
        is_bot=is_bot,
        message_ts=payload.get("ts"),
    )
