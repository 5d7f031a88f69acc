"""
Summary Compressor - folds pending message text into the rolling summary.

The Gemini merge is bounded to a maximum word count. When the analysis
client fails (including rate limiting) the compressor falls back to an
emergency compression that keeps the most recent substantive pending lines
verbatim. Either way the summary version is bumped and the compressed
pending text is cleared.

When to compress is decided by the pipeline (ConversationTracker.should_compress).
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from signalq.config import (
    COMPRESS_MAX_SUMMARY_WORDS,
    EMERGENCY_KEEP_LINES,
    EMERGENCY_MIN_LINE_CHARS,
    ENABLE_SUMMARY_COMPRESSION,
)
from signalq.conversations.models import Conversation, utc_now
from signalq.conversations.repository import SNIPPET_SEPARATOR, ConversationRepository
from signalq.errors import LLMError, RateLimitedError
from signalq.llm.client import AnalysisClient
from signalq.observability.logging import get_logger
from signalq.observability.telemetry import counter, log_event, time_block

logger = get_logger(__name__)

RECENT_MESSAGES_MARKER = "[Recent messages]:"


def emergency_summary(
    current_summary: str,
    pending_text: str,
    keep_lines: int = EMERGENCY_KEEP_LINES,
    min_line_chars: int = EMERGENCY_MIN_LINE_CHARS,
) -> str:
    """
    Deterministic fallback: append the last substantive pending lines.

    Lines of `min_line_chars` characters or fewer are dropped; the last
    `keep_lines` of the rest are kept in order.
    """
    lines = [line for line in pending_text.split(SNIPPET_SEPARATOR) if len(line) > min_line_chars]
    recent = SNIPPET_SEPARATOR.join(lines[-keep_lines:])
    if current_summary:
        return f"{current_summary}\n\n{RECENT_MESSAGES_MARKER} {recent}"
    return recent


class SummaryCompressor:
    """
    Args:
        client: Analysis client used for the Gemini merge
        max_summary_words: Word ceiling for the merged summary
        enabled: Feature flag; when False compress() is a no-op
        clock: Time source for last_compressed_at
    """

    def __init__(
        self,
        client: AnalysisClient,
        max_summary_words: int = COMPRESS_MAX_SUMMARY_WORDS,
        enabled: bool = ENABLE_SUMMARY_COMPRESSION,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.max_summary_words = max_summary_words
        self.enabled = enabled
        self.clock = clock

    def compress(self, conversation_id: str) -> Conversation | None:
        """
        Merge the pending buffer into the rolling summary.

        Args:
            conversation_id: Conversation to compress

        Returns:
            Updated Conversation; the unchanged Conversation when disabled or
            nothing is pending; None when the conversation is missing or a
            concurrent compression already advanced the summary version

        Side Effects:
            - Calls Gemini via the analysis client
            - Writes rolling_summary, summary_version, pending buffer
        """
        conversation = ConversationRepository.get_by_id(conversation_id)
        if conversation is None:
            logger.error("Conversation %s not found for compression", conversation_id)
            return None

        if not self.enabled:
            logger.debug("Summary compression disabled by feature flag")
            return conversation

        if conversation.pending_count == 0:
            return conversation

        pending = conversation.pending_text
        logger.info(
            "Compressing summary for %s (pending=%d messages, %d words, version=%d)",
            conversation_id,
            conversation.pending_count,
            conversation.pending_word_count,
            conversation.summary_version,
        )

        try:
            with time_block("compression.llm"):
                summary = self.client.compress_summary(
                    conversation.rolling_summary,
                    pending,
                    max_words=self.max_summary_words,
                )
            counter("compression.success")
        except (LLMError, RateLimitedError) as e:
            counter("compression.emergency")
            logger.warning("Summary compression failed, using emergency compression: %s", e)
            summary = emergency_summary(conversation.rolling_summary, pending)

        updated = ConversationRepository.apply_compression(
            conversation_id,
            summary,
            expected_version=conversation.summary_version,
            compressed_pending=pending,
            at=self.clock(),
        )
        if updated is None:
            counter("compression.superseded")
            logger.info("Compression for %s superseded by a concurrent update", conversation_id)
            return None

        log_event(
            "compression.completed",
            conversation_id=conversation_id,
            summary_version=updated.summary_version,
            summary_words=len(updated.rolling_summary.split()),
        )
        return updated
