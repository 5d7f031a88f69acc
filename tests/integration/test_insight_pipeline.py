"""
End-to-end tests for the insight pipeline.

Messages go through process_event, windows close via fake silence timers (or
the volume trigger), and outcomes are checked against the durable state, the
scripted Gemini replies and the recording Slack channel.
"""

from __future__ import annotations

import sqlite3
from dataclasses import replace
from unittest.mock import patch

from signalq.conversations.repository import (
    ConversationRepository,
    InsightRepository,
    NotificationRepository,
)
from signalq.observability.telemetry import get_counter
from signalq.pipeline.insight import ConversationState


class TestHappyPath:
    def test_quiet_thread_is_analyzed_and_notified_once(self, harness, key):
        harness.discuss(8)
        assert harness.go_quiet() == 1

        outcome = harness.last
        assert outcome.state == ConversationState.NOTIFIED
        assert outcome.reason == "delivered"
        assert outcome.insight.trigger == "silence"
        assert outcome.insight.content == "Draft post about the insight."
        assert outcome.insight.platform == "linkedin"
        assert outcome.insight.summary_version == 2

        assert len(harness.channel.posts) == 1
        channel_id, text, thread_ts = harness.channel.posts[0]
        assert (channel_id, thread_ts) == ("C001", key.thread_ts)
        assert "Pricing experiments" in text

        conversation = ConversationRepository.get_by_key(key)
        assert conversation.notified is True
        assert conversation.gate_passed_at is not None
        assert harness.generator.count("summary") == 1
        assert harness.generator.count("worthiness") == 1
        assert harness.generator.count("content") == 1

    def test_worthiness_prompt_carries_summary_and_window(self, harness):
        harness.discuss(8)
        harness.go_quiet()

        prompt = next(p for kind, p in harness.generator.calls if kind == "worthiness")
        assert "Conversation summary so far:" in prompt
        assert "Team debated pricing tiers?" in prompt
        assert "[8] Let's propose fifteen percent" in prompt

    def test_later_windows_never_notify_again(self, harness):
        harness.discuss(8)
        harness.go_quiet()

        harness.discuss(3, start=8)
        harness.go_quiet()

        assert harness.last.state == ConversationState.NOTIFIED
        assert harness.last.reason == "already_notified"
        assert harness.generator.count("worthiness") == 1
        assert len(harness.channel.posts) == 1

    def test_gate_passes_mid_conversation(self, harness):
        results = harness.discuss(8)
        passed = [r.gate.passed for r in results]
        assert passed[:5] == [False] * 5
        assert passed[5] is True
        assert all(r.signal is None for r in results)

    def test_stats(self, harness):
        harness.discuss(8)
        harness.go_quiet()

        stats = harness.pipeline.get_stats()
        assert stats["pending_retries"] == 0
        assert stats["buffer"]["silence_triggers"] == 1
        assert stats["buffer"]["messages_buffered"] == 8
        assert stats["rate_limit"]["per_minute_count"] == 3
        assert stats["counters"]["pipeline.worthy"] == 1
        assert stats["latency"]["worthiness"]["count"] == 1


class TestFiltering:
    def test_bots_and_noise_never_reach_state(self, harness, key):
        bot = harness.say("B1", "Deploy finished for build 4411 on production cluster", is_bot=True)
        noise = harness.say("U1", "sounds good")

        assert (bot.accepted, bot.reason) == (False, "bot")
        assert (noise.accepted, noise.reason) == (False, "noise")
        assert ConversationRepository.get_by_key(key) is None
        assert harness.buffer.get_window(key) == []
        assert harness.timers.timers == []

    def test_gate_failure_skips_gemini(self, harness):
        harness.discuss(3)
        harness.go_quiet()

        assert harness.last.state == ConversationState.GATE_FAILED
        assert "min_messages" in harness.last.reason.split(",")
        assert harness.generator.count("worthiness") == 0
        assert harness.channel.posts == []

    def test_gate_not_required(self, harness_factory):
        harness = harness_factory(require_gate=False)
        harness.discuss(3)
        harness.go_quiet()

        assert harness.last.state == ConversationState.NOTIFIED

    def test_detection_disabled(self, harness_factory):
        harness = harness_factory(enable_detection=False)
        harness.discuss(8)
        harness.go_quiet()

        assert harness.last.state == ConversationState.ACCUMULATING
        assert harness.last.reason == "detection_disabled"
        assert harness.generator.count("worthiness") == 0


class TestNotWorthy:
    def test_not_worthy_then_cooldown_then_reanalysis(self, harness_factory, generator_factory, key, clock):
        harness = harness_factory(generator=generator_factory(worthiness='{"worthy": false, "confidence": 0.2}'))
        harness.discuss(8)
        harness.go_quiet()

        assert harness.last.state == ConversationState.NOT_WORTHY
        assert harness.last.insight.worthy is False
        assert harness.last.insight.content is None
        assert harness.generator.count("content") == 0
        assert ConversationRepository.get_by_key(key).last_analysis_at is not None

        harness.discuss(2, start=8)
        harness.go_quiet()
        assert harness.last.state == ConversationState.ACCUMULATING
        assert harness.last.reason == "cooldown"
        assert harness.generator.count("worthiness") == 1

        clock.advance(minutes=61)
        harness.discuss(2, start=0)
        harness.go_quiet()
        assert harness.last.state == ConversationState.NOT_WORTHY
        assert harness.generator.count("worthiness") == 2

        conversation = ConversationRepository.get_by_key(key)
        assert len(InsightRepository.list_by_conversation(conversation.id)) == 2
        assert harness.channel.posts == []

    def test_low_confidence_is_not_worthy(self, harness_factory, generator_factory):
        reply = '{"worthy": true, "confidence": 0.5, "topic": "Maybe"}'
        harness = harness_factory(generator=generator_factory(worthiness=reply))
        harness.discuss(8)
        harness.go_quiet()

        assert harness.last.state == ConversationState.NOT_WORTHY
        assert harness.last.reason == "below_confidence_threshold"

    def test_gemini_failure_is_not_worthy(self, harness_factory, generator_factory):
        harness = harness_factory(generator=generator_factory(worthiness=TimeoutError("deadline exceeded")))
        harness.discuss(8)
        harness.go_quiet()

        assert harness.last.state == ConversationState.NOT_WORTHY
        assert harness.last.reason == "llm_error"


class TestVolumeTrigger:
    def test_full_window_closes_synchronously(self, harness_factory, key):
        harness = harness_factory(max_batch_size=8, overlap_size=3)
        results = harness.discuss(8)

        signal = results[-1].signal
        assert signal is not None
        assert signal.trigger.value == "volume"
        assert signal.size == 8
        assert harness.last.state == ConversationState.NOTIFIED
        assert harness.last.insight.trigger == "volume"

        kept = harness.buffer.get_window(key)
        assert [e.text for e in kept] == [e.text for e in signal.events[-3:]]
        assert harness.buffer.active_timers() == 0


class TestGeneration:
    def test_generation_failure_still_notifies(self, harness_factory, generator_factory):
        harness = harness_factory(generator=generator_factory(content=ConnectionError("reset")))
        harness.discuss(8)
        harness.go_quiet()

        assert harness.last.state == ConversationState.NOTIFIED
        assert harness.last.insight.content is None
        assert harness.last.insight.platform is None
        assert "Draft" not in harness.channel.posts[0][1]

    def test_generation_disabled(self, harness_factory):
        harness = harness_factory(enable_generation=False)
        harness.discuss(8)
        harness.go_quiet()

        assert harness.last.state == ConversationState.NOTIFIED
        assert harness.generator.count("content") == 0


class TestDelivery:
    def test_dry_run_leaves_no_trace(self, harness_factory, key):
        harness = harness_factory(dry_run=True)
        harness.discuss(8)
        harness.go_quiet()

        assert harness.last.state == ConversationState.NOTIFYING
        assert harness.last.reason == "dry_run"
        assert "Pricing experiments" in harness.last.delivery.message
        assert harness.channel.posts == []
        conversation = ConversationRepository.get_by_key(key)
        assert conversation.notified is False
        assert NotificationRepository.get_for_conversation(conversation.id) is None

    def test_failed_delivery_can_succeed_later(self, harness_factory, failing_channel, clock, key):
        harness = harness_factory(channel=failing_channel)
        harness.discuss(8)
        harness.go_quiet()

        assert harness.last.state == ConversationState.WORTHY
        assert harness.last.reason == "delivery_failed"
        assert ConversationRepository.get_by_key(key).notified is False

        failing_channel.fail_with = None
        clock.advance(minutes=61)
        harness.discuss(2, start=8)
        harness.go_quiet()

        assert harness.last.state == ConversationState.NOTIFIED
        assert harness.last.reason == "delivered"
        assert len(failing_channel.posts) == 1

    def test_unrecorded_delivery_surfaces_as_handler_error(self, harness, key):
        harness.discuss(8)
        with patch.object(
            NotificationRepository,
            "confirm_delivery",
            side_effect=sqlite3.OperationalError("disk I/O error"),
        ):
            harness.go_quiet()

        assert harness.outcomes == []
        assert harness.buffer.get_stats()["handler_errors"] == 1
        assert len(harness.channel.posts) == 1
        conversation = ConversationRepository.get_by_key(key)
        assert [r.conversation_id for r in NotificationRepository.list_pending()] == [conversation.id]


class TestRateLimitDeferral:
    def make(self, harness_factory, gate_thresholds):
        harness = harness_factory(
            thresholds=replace(gate_thresholds, requires_question=False),
            enable_compression=False,
            max_per_minute=1,
        )
        harness.discuss(8)
        harness.limiter.attempt()
        return harness

    def test_window_is_retried_after_retry_after(self, harness_factory, gate_thresholds, key):
        harness = self.make(harness_factory, gate_thresholds)
        harness.go_quiet()

        assert harness.last.state == ConversationState.GATE_PASSED
        assert harness.last.reason == "rate_limited"
        assert harness.last.deferred is True
        assert harness.pipeline.pending_retries() == 1
        retry = harness.timers.timers[-1]
        assert retry.interval == 60
        assert ConversationRepository.get_by_key(key).last_analysis_at is None

        harness.limiter_clock.now += 61
        retry.fire()

        assert harness.pipeline.pending_retries() == 0
        assert harness.generator.count("worthiness") == 1
        assert len(harness.channel.posts) == 1
        # The single slot went to the worthiness check, so drafting was refused
        insights = InsightRepository.list_by_conversation(ConversationRepository.get_by_key(key).id)
        assert [i.content for i in insights] == [None]

    def test_window_is_dropped_when_limited_again(self, harness_factory, gate_thresholds):
        harness = self.make(harness_factory, gate_thresholds)
        harness.go_quiet()
        created = len(harness.timers.timers)

        harness.timers.timers[-1].fire()

        assert harness.pipeline.pending_retries() == 0
        assert len(harness.timers.timers) == created
        assert get_counter("pipeline.rate_limited") == 2
        assert harness.channel.posts == []

    def test_shutdown_cancels_retries(self, harness_factory, gate_thresholds):
        harness = self.make(harness_factory, gate_thresholds)
        harness.go_quiet()
        retry = harness.timers.timers[-1]

        harness.pipeline.shutdown()

        assert retry.cancelled
        assert harness.pipeline.pending_retries() == 0
        harness.limiter_clock.now += 61
        retry.fire()
        assert harness.generator.count("worthiness") == 0
        assert harness.channel.posts == []
