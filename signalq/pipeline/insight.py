"""
Insight Pipeline - turns closed buffer windows into insights and notifications.

Event path (process_event):
    bot/noise filter -> state store update -> compression when due ->
    gate + signal score refresh -> buffer ingest

Window path (handle_window), per conversation:
    ACCUMULATING -> GATE_EVALUATING -> GATE_FAILED | GATE_PASSED
    GATE_PASSED -> ANALYZING -> NOT_WORTHY | WORTHY
    WORTHY -> NOTIFYING -> NOTIFIED

Phase 1 (worthiness) is cheap and always runs for admitted windows; phase 2
(content generation) only runs for worthy ones. A window refused by the rate
limiter is retried once after the limiter's retry_after.
"""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from signalq.buffer.manager import (
    BufferManager,
    CancellableTimer,
    TimerFactory,
    TriggerSignal,
    daemon_timer,
)
from signalq.config import (
    DEFAULT_PLATFORM,
    ENABLE_CONTENT_GENERATION,
    ENABLE_INSIGHT_DETECTION,
    ENABLE_SUMMARY_COMPRESSION,
    REQUIRE_GATE_FOR_ANALYSIS,
)
from signalq.conversations.models import (
    BufferedEvent,
    ChatEvent,
    Conversation,
    Insight,
    utc_now,
)
from signalq.conversations.repository import InsightRepository
from signalq.conversations.tracker import ConversationTracker
from signalq.errors import DeliveryError, RateLimitedError
from signalq.events.parser import is_noise, prepare_text
from signalq.gate.signal_gate import GateEvaluation
from signalq.llm.client import AnalysisClient
from signalq.notify.notifier import DeliveryOutcome, DeliveryResult, Notifier
from signalq.observability.logging import get_logger
from signalq.observability.telemetry import (
    counter,
    get_counters,
    get_latency_stats,
    log_event,
    time_block,
)
from signalq.pipeline.compressor import SummaryCompressor

logger = get_logger(__name__)

# Closed-window text sent to the worthiness check
MAX_ANALYSIS_EVENTS = 100


class ConversationState(str, Enum):
    ACCUMULATING = "accumulating"
    GATE_EVALUATING = "gate_evaluating"
    GATE_FAILED = "gate_failed"
    GATE_PASSED = "gate_passed"
    ANALYZING = "analyzing"
    NOT_WORTHY = "not_worthy"
    WORTHY = "worthy"
    NOTIFYING = "notifying"
    NOTIFIED = "notified"


@dataclass(frozen=True)
class EventResult:
    """What process_event did with one chat event."""

    accepted: bool
    reason: str | None = None
    conversation: Conversation | None = None
    gate: GateEvaluation | None = None
    signal: TriggerSignal | None = None


@dataclass(frozen=True)
class PipelineOutcome:
    """Final state reached for one closed window."""

    state: ConversationState
    reason: str | None = None
    conversation_id: str | None = None
    insight: Insight | None = None
    delivery: DeliveryResult | None = None
    deferred: bool = False


def build_analysis_text(conversation: Conversation, events: tuple[BufferedEvent, ...]) -> str:
    """Rolling summary (when present) followed by the numbered window messages."""
    lines = [f"[{i}] {event.text}" for i, event in enumerate(events[-MAX_ANALYSIS_EVENTS:], start=1)]
    window_text = "\n".join(lines)
    if conversation.rolling_summary:
        return f"Conversation summary so far:\n{conversation.rolling_summary}\n\nRecent messages:\n{window_text}"
    return window_text


class InsightPipeline:
    """
    Orchestrates the event path and the window path.

    The buffer manager is attached after construction because its close
    handler is this pipeline's handle_window.

    Args:
        tracker: Conversation State Store facade
        compressor: Rolling-summary compressor
        client: Analysis client for phase 1 and phase 2
        notifier: Exactly-once notifier
        require_gate: Only analyze conversations whose gate has passed
        enable_detection: Feature flag for the window path
        enable_compression: Feature flag for compression on the event path
        enable_generation: Feature flag for phase 2
        platform: Target platform for generated content
        timer_factory: Builds rate-limit deferral timers
        clock: Time source
    """

    def __init__(
        self,
        tracker: ConversationTracker,
        compressor: SummaryCompressor,
        client: AnalysisClient,
        notifier: Notifier,
        require_gate: bool = REQUIRE_GATE_FOR_ANALYSIS,
        enable_detection: bool = ENABLE_INSIGHT_DETECTION,
        enable_compression: bool = ENABLE_SUMMARY_COMPRESSION,
        enable_generation: bool = ENABLE_CONTENT_GENERATION,
        platform: str = DEFAULT_PLATFORM,
        timer_factory: TimerFactory = daemon_timer,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.tracker = tracker
        self.compressor = compressor
        self.client = client
        self.notifier = notifier
        self.require_gate = require_gate
        self.enable_detection = enable_detection
        self.enable_compression = enable_compression
        self.enable_generation = enable_generation
        self.platform = platform
        self.timer_factory = timer_factory
        self.clock = clock

        self.buffer: BufferManager | None = None
        self._deferred: dict[int, CancellableTimer] = {}
        self._deferred_lock = threading.Lock()
        self._deferred_ids = itertools.count(1)
        self._closed = False

    def attach_buffer(self, buffer: BufferManager) -> None:
        self.buffer = buffer

    # ------------------------------------------------------------------
    # Event path
    # ------------------------------------------------------------------

    def process_event(self, event: ChatEvent) -> EventResult:
        """
        Apply one chat event to durable state and the buffer.

        Args:
            event: Parsed chat event

        Returns:
            EventResult; bots and noise are rejected with a reason

        Raises:
            RuntimeError: No buffer attached, or the buffer was shut down

        Side Effects:
            - Updates the conversation row (activity, pending buffer, score)
            - May compress the rolling summary
            - May close a window synchronously (volume trigger)
        """
        if self.buffer is None:
            raise RuntimeError("InsightPipeline has no buffer attached")

        if event.is_bot:
            counter("pipeline.skipped.bot")
            return EventResult(accepted=False, reason="bot")

        if is_noise(event.text, event.word_count):
            counter("pipeline.skipped.noise")
            logger.debug("Skipping noise message in %s", event.key)
            return EventResult(accepted=False, reason="noise")

        conversation = self.tracker.record_event(event, prepare_text(event.text))
        now = self.clock()

        # Compress first so the gate's quality checks see the newest summary
        if self.enable_compression and self.tracker.should_compress(conversation, now):
            compressed = self.compressor.compress(conversation.id)
            conversation = compressed or self.tracker.get_by_id(conversation.id) or conversation

        evaluation = self.tracker.refresh_signal(conversation, now)
        signal = self.buffer.ingest(event.key, BufferedEvent.from_chat_event(event))

        return EventResult(
            accepted=True,
            conversation=conversation,
            gate=evaluation,
            signal=signal,
        )

    # ------------------------------------------------------------------
    # Window path
    # ------------------------------------------------------------------

    def handle_window(self, signal: TriggerSignal) -> PipelineOutcome:
        """Close-handler for the buffer manager; see _analyze_window."""
        return self._analyze_window(signal, allow_defer=True)

    def _analyze_window(self, signal: TriggerSignal, allow_defer: bool) -> PipelineOutcome:
        """
        Run gate admission, the two analysis phases and notification.

        Args:
            signal: Closed window from the buffer manager
            allow_defer: Whether a rate-limited window may be retried later

        Returns:
            PipelineOutcome with the final state

        Raises:
            NotificationRecordError: Delivered but not recorded
        """
        key = signal.key.as_string()
        if not self.enable_detection:
            return PipelineOutcome(ConversationState.ACCUMULATING, reason="detection_disabled")

        conversation = self.tracker.get(signal.key)
        if conversation is None:
            logger.warning("Window closed for unknown conversation %s", key)
            return PipelineOutcome(ConversationState.ACCUMULATING, reason="unknown_conversation")

        if conversation.notified:
            counter("pipeline.skipped.notified")
            return PipelineOutcome(
                ConversationState.NOTIFIED,
                reason="already_notified",
                conversation_id=conversation.id,
            )

        now = self.clock()
        if self.tracker.in_cooldown(conversation, now):
            counter("pipeline.skipped.cooldown")
            logger.debug("Conversation %s in analysis cooldown", conversation.id)
            return PipelineOutcome(
                ConversationState.ACCUMULATING,
                reason="cooldown",
                conversation_id=conversation.id,
            )

        evaluation = self.tracker.refresh_signal(conversation, now)
        if self.require_gate and conversation.gate_passed_at is None:
            counter("pipeline.gate_failed")
            return PipelineOutcome(
                ConversationState.GATE_FAILED,
                reason=",".join(evaluation.failures),
                conversation_id=conversation.id,
            )

        text = build_analysis_text(conversation, signal.events)
        logger.info(
            "Analyzing %s (%s trigger, %d events, %d chars)",
            conversation.id,
            signal.trigger.value,
            signal.size,
            len(text),
        )

        try:
            with time_block("pipeline.worthiness"):
                verdict = self.client.check_worthiness(text)
        except RateLimitedError as e:
            return self._rate_limited(signal, conversation, e, allow_defer)

        self.tracker.stamp_analysis(conversation, now)

        content = None
        if verdict.worthy and self.enable_generation:
            with time_block("pipeline.generation"):
                content = self.client.generate_content(
                    verdict.topic,
                    verdict.summary,
                    raw_text=text,
                    platform=self.platform,
                )

        insight = InsightRepository.create(
            Insight(
                conversation_id=conversation.id,
                worthy=verdict.worthy,
                confidence=verdict.confidence,
                topic=verdict.topic,
                summary=verdict.summary,
                suggested_angle=verdict.suggested_angle,
                content=content,
                platform=self.platform if content else None,
                summary_version=conversation.summary_version,
                trigger=signal.trigger,
                model=self.client.model_name,
            )
        )
        log_event(
            "pipeline.insight",
            conversation_id=conversation.id,
            worthy=verdict.worthy,
            confidence=verdict.confidence,
            trigger=signal.trigger.value,
        )

        if not verdict.worthy:
            counter("pipeline.not_worthy")
            return PipelineOutcome(
                ConversationState.NOT_WORTHY,
                reason=verdict.reason,
                conversation_id=conversation.id,
                insight=insight,
            )

        counter("pipeline.worthy")
        return self._notify(insight, conversation)

    def _notify(self, insight: Insight, conversation: Conversation) -> PipelineOutcome:
        try:
            delivery = self.notifier.notify(insight, conversation)
        except DeliveryError as e:
            logger.error("Notification for %s not delivered: %s", conversation.id, e)
            return PipelineOutcome(
                ConversationState.WORTHY,
                reason="delivery_failed",
                conversation_id=conversation.id,
                insight=insight,
            )

        if delivery.outcome in (DeliveryOutcome.DELIVERED, DeliveryOutcome.ALREADY_NOTIFIED):
            state = ConversationState.NOTIFIED
        else:
            state = ConversationState.NOTIFYING
        return PipelineOutcome(
            state,
            reason=delivery.outcome.value,
            conversation_id=conversation.id,
            insight=insight,
            delivery=delivery,
        )

    def _rate_limited(
        self,
        signal: TriggerSignal,
        conversation: Conversation,
        error: RateLimitedError,
        allow_defer: bool,
    ) -> PipelineOutcome:
        counter("pipeline.rate_limited")
        if not allow_defer or self._closed:
            logger.warning("Rate limited again for %s, dropping window", conversation.id)
            return PipelineOutcome(
                ConversationState.GATE_PASSED,
                reason="rate_limited",
                conversation_id=conversation.id,
            )

        self._defer(signal, error.retry_after_seconds)
        logger.info(
            "Rate limited analyzing %s, retrying in %.1fs",
            conversation.id,
            error.retry_after_seconds,
        )
        return PipelineOutcome(
            ConversationState.GATE_PASSED,
            reason="rate_limited",
            conversation_id=conversation.id,
            deferred=True,
        )

    def _defer(self, signal: TriggerSignal, delay: float) -> None:
        timer_id = next(self._deferred_ids)

        def fire() -> None:
            with self._deferred_lock:
                if self._deferred.pop(timer_id, None) is None or self._closed:
                    return
            try:
                self._analyze_window(signal, allow_defer=False)
            except Exception:
                counter("pipeline.deferred_errors")
                logger.exception("Deferred analysis failed for %s", signal.key.as_string())

        timer = self.timer_factory(delay, fire)
        with self._deferred_lock:
            if self._closed:
                return
            self._deferred[timer_id] = timer
            timer.start()

    def pending_retries(self) -> int:
        with self._deferred_lock:
            return len(self._deferred)

    def get_stats(self) -> dict[str, object]:
        stats: dict[str, object] = {
            "pending_retries": self.pending_retries(),
            "rate_limit": self.client.get_stats()._asdict(),
            "counters": get_counters("pipeline."),
            "latency": {
                "worthiness": get_latency_stats("pipeline.worthiness"),
                "generation": get_latency_stats("pipeline.generation"),
            },
        }
        if self.buffer is not None:
            stats["buffer"] = self.buffer.get_stats()
        return stats

    def shutdown(self) -> None:
        """
        Stop the buffer and cancel deferred retries.

        In-flight analysis calls are not interrupted.
        """
        with self._deferred_lock:
            self._closed = True
            timers = list(self._deferred.values())
            self._deferred.clear()
        for timer in timers:
            timer.cancel()
        if self.buffer is not None:
            self.buffer.shutdown()
        logger.info("Insight pipeline shut down, cancelled %d deferred retries", len(timers))
