"""
Conversation State Store facade used by the insight pipeline.

Wraps the repositories with the pipeline's vocabulary: record a message,
refresh the gate and signal score, decide whether the pending buffer is due
for compression, and enforce the analysis cooldown.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from signalq.config import (
    COMPRESS_TRIGGER_MESSAGES,
    COMPRESS_TRIGGER_MINUTES,
    COMPRESS_TRIGGER_WORDS,
    INSIGHT_COOLDOWN_MINUTES,
)
from signalq.conversations.models import ChatEvent, Conversation, ConversationKey
from signalq.conversations.repository import ConversationRepository
from signalq.gate import signal_gate
from signalq.gate.signal_gate import GateEvaluation, GateThresholds
from signalq.observability.logging import get_logger
from signalq.observability.telemetry import counter, log_event

logger = get_logger(__name__)

# Compression fires on the elapsed-time rule only with at least this many pending messages
MIN_PENDING_FOR_TIMED_COMPRESSION = 2


class ConversationTracker:
    """
    Durable per-conversation bookkeeping.

    Args:
        thresholds: Signal gate thresholds
        cooldown_minutes: Minimum gap between analysis calls per conversation
    """

    def __init__(
        self,
        thresholds: GateThresholds | None = None,
        cooldown_minutes: float = INSIGHT_COOLDOWN_MINUTES,
        compress_trigger_messages: int = COMPRESS_TRIGGER_MESSAGES,
        compress_trigger_words: int = COMPRESS_TRIGGER_WORDS,
        compress_trigger_minutes: float = COMPRESS_TRIGGER_MINUTES,
    ) -> None:
        self.thresholds = thresholds or GateThresholds()
        self.cooldown = timedelta(minutes=cooldown_minutes)
        self.compress_trigger_messages = compress_trigger_messages
        self.compress_trigger_words = compress_trigger_words
        self.compress_trigger_elapsed = timedelta(minutes=compress_trigger_minutes)

    def get(self, key: ConversationKey) -> Conversation | None:
        return ConversationRepository.get_by_key(key)

    def get_by_id(self, conversation_id: str) -> Conversation | None:
        return ConversationRepository.get_by_id(conversation_id)

    def record_event(self, event: ChatEvent, prepared_text: str) -> Conversation:
        """
        Apply a qualifying message to its conversation.

        Args:
            event: Parsed chat event (bots and noise already filtered)
            prepared_text: Normalized text for the pending buffer

        Returns:
            Updated Conversation
        """
        conversation = ConversationRepository.record_activity(
            key=event.key,
            user_id=event.user_id,
            text=prepared_text,
            word_count=event.word_count,
            at=event.timestamp,
        )
        counter("conversations.messages")
        return conversation

    def refresh_signal(self, conversation: Conversation, now: datetime) -> GateEvaluation:
        """
        Re-evaluate the gate and signal score against the latest state.

        gate_passed_at is set the first time the gate passes and never moved.

        Side Effects:
            - Writes signal_score (and gate_passed_at once)
            - Mutates `conversation` to mirror the stored values
        """
        evaluation = signal_gate.evaluate(conversation, now, self.thresholds)
        score = signal_gate.signal_score(conversation)

        first_pass = ConversationRepository.update_signal(
            conversation.id,
            score,
            now if evaluation.passed else None,
        )
        conversation.signal_score = score
        if first_pass:
            conversation.gate_passed_at = now
            counter("gate.passed")
            log_event("gate.passed", conversation_id=conversation.id, signal_score=score)
        elif not evaluation.passed:
            logger.debug(
                "Signal gate not passed for %s: %s",
                conversation.id,
                ",".join(evaluation.failures),
            )
        return evaluation

    def should_compress(self, conversation: Conversation, now: datetime) -> bool:
        """
        Compression policy over the pending buffer.

        Due when pending messages or words reach their trigger, or when enough
        time has passed since the last compression with at least two pending
        messages.
        """
        if conversation.pending_count == 0:
            return False
        if conversation.pending_count >= self.compress_trigger_messages:
            return True
        if conversation.pending_word_count >= self.compress_trigger_words:
            return True
        if conversation.last_compressed_at is not None:
            elapsed = now - conversation.last_compressed_at
            if (
                elapsed >= self.compress_trigger_elapsed
                and conversation.pending_count >= MIN_PENDING_FOR_TIMED_COMPRESSION
            ):
                return True
        return False

    def in_cooldown(self, conversation: Conversation, now: datetime) -> bool:
        if conversation.last_analysis_at is None:
            return False
        return now - conversation.last_analysis_at < self.cooldown

    def stamp_analysis(self, conversation: Conversation, now: datetime) -> None:
        ConversationRepository.stamp_analysis(conversation.id, now)
        conversation.last_analysis_at = now
