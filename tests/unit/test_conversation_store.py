"""Unit tests for the conversation repositories and tracker."""

from __future__ import annotations

import sqlite3
from dataclasses import replace
from datetime import timedelta
from unittest.mock import patch

import pytest

from signalq.conversations.models import (
    ConversationKey,
    Insight,
    NotificationRecord,
    NotificationStatus,
    TriggerType,
)
from signalq.conversations.repository import (
    ConversationRepository,
    InsightRepository,
    NotificationRepository,
)
from signalq.conversations.tracker import ConversationTracker
from signalq.errors import TransientIOError
from signalq.gate.signal_gate import GateThresholds
from signalq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock

LOOSE = GateThresholds(
    min_messages=2,
    min_participants=2,
    min_avg_words=1,
    min_total_words=1,
    min_duration_minutes=0,
    max_duration_hours=6,
    min_velocity_per_hour=0,
    max_velocity_per_hour=1000,
    min_age_minutes=0,
    min_engagement_ratio=0,
    requires_question=False,
    min_uniqueness_ratio=0,
)


class TestConversationRepository:
    def test_first_message_creates_conversation(self, key, clock):
        conversation = ConversationRepository.record_activity(key, "U1", "hello team how goes", 4, clock.now)

        assert conversation.message_count == 1
        assert conversation.participant_ids == ["U1"]
        assert conversation.summary_version == 1
        assert conversation.pending_text == "User (4 words): hello team how goes"
        assert conversation.window_started_at == clock.now
        assert ConversationRepository.get_by_key(key).id == conversation.id

    def test_accumulates_counts_and_distinct_participants(self, key, clock):
        for user in ["U1", "U2", "U1", "U3"]:
            conversation = ConversationRepository.record_activity(key, user, "some words here", 3, clock.advance(minutes=1))

        assert conversation.message_count == 4
        assert conversation.total_word_count == 12
        assert conversation.participant_ids == ["U1", "U2", "U3"]
        assert conversation.pending_count == 4
        assert conversation.pending_word_count == 12
        assert conversation.last_activity_at == clock.now

    def test_thread_and_channel_are_separate_conversations(self, key, clock):
        channel_key = ConversationKey(workspace_id=key.workspace_id, channel_id=key.channel_id)
        a = ConversationRepository.record_activity(key, "U1", "thread message text", 3, clock.now)
        b = ConversationRepository.record_activity(channel_key, "U1", "channel message text", 3, clock.now)

        assert a.id != b.id
        assert ConversationRepository.get_by_key(channel_key).thread_ts is None

    def test_gate_passed_at_is_set_once(self, key, clock):
        conversation = ConversationRepository.record_activity(key, "U1", "some words here", 3, clock.now)
        first = clock.now
        later = clock.now + timedelta(hours=1)

        assert ConversationRepository.update_signal(conversation.id, 40, first) is True
        assert ConversationRepository.update_signal(conversation.id, 55, later) is False

        stored = ConversationRepository.get_by_id(conversation.id)
        assert stored.gate_passed_at == first
        assert stored.signal_score == 55

    def test_stats(self, key, clock):
        conversation = ConversationRepository.record_activity(key, "U1", "some words here", 3, clock.now)
        ConversationRepository.update_signal(conversation.id, 10, clock.now)

        assert ConversationRepository.get_stats() == {"total": 1, "gate_passed": 1, "notified": 0}

    def test_storage_errors_become_transient(self, key):
        with patch(
            "signalq.conversations.repository.get_db_connection",
            side_effect=sqlite3.OperationalError("disk I/O error"),
        ):
            with pytest.raises(TransientIOError):
                ConversationRepository.get_by_key(key)


class TestNotificationRepository:
    def _record(self, conversation_id, **kwargs):
        return NotificationRecord(
            conversation_id=conversation_id,
            idempotency_key=f"{conversation_id}:insight_detected:abc",
            channel_id="C001",
            **kwargs,
        )

    def test_claim_is_unique_per_conversation(self, key, clock):
        conversation = ConversationRepository.record_activity(key, "U1", "some words here", 3, clock.now)

        assert NotificationRepository.claim(self._record(conversation.id)) is True
        assert NotificationRepository.claim(self._record(conversation.id)) is False

    def test_release_allows_a_new_claim(self, key, clock):
        conversation = ConversationRepository.record_activity(key, "U1", "some words here", 3, clock.now)
        record = self._record(conversation.id)
        NotificationRepository.claim(record)
        NotificationRepository.release(record.id)

        assert NotificationRepository.claim(self._record(conversation.id)) is True

    def test_confirm_delivery_is_atomic(self, key, clock):
        conversation = ConversationRepository.record_activity(key, "U1", "some words here", 3, clock.now)
        record = self._record(conversation.id)
        NotificationRepository.claim(record)

        assert NotificationRepository.confirm_delivery(record.id, conversation.id, "1741.0001", clock.now) is True

        stored = NotificationRepository.get_for_conversation(conversation.id)
        assert stored.status == NotificationStatus.DELIVERED.value
        assert stored.message_ts == "1741.0001"
        assert ConversationRepository.get_by_id(conversation.id).notified is True
        assert NotificationRepository.get_by_message("C001", "1741.0001").id == record.id
        assert NotificationRepository.list_pending() == []

    def test_release_never_removes_delivered_record(self, key, clock):
        conversation = ConversationRepository.record_activity(key, "U1", "some words here", 3, clock.now)
        record = self._record(conversation.id)
        NotificationRepository.claim(record)
        NotificationRepository.confirm_delivery(record.id, conversation.id, "1741.0001", clock.now)

        NotificationRepository.release(record.id)
        assert NotificationRepository.get_for_conversation(conversation.id) is not None

    def test_mark_notified_is_one_way(self, key, clock):
        conversation = ConversationRepository.record_activity(key, "U1", "some words here", 3, clock.now)
        with db_transaction() as conn:
            assert ConversationRepository.mark_notified(conn, conversation.id, clock.now) is True
        with db_transaction() as conn:
            assert ConversationRepository.mark_notified(conn, conversation.id, clock.now) is False


class TestInsightRepository:
    def test_create_and_list(self, key, clock):
        conversation = ConversationRepository.record_activity(key, "U1", "some words here", 3, clock.now)
        insight = Insight(
            conversation_id=conversation.id,
            worthy=True,
            confidence=0.8,
            topic="Pricing",
            summary_version=1,
            trigger=TriggerType.SILENCE,
            created_at=clock.now,
        )
        InsightRepository.create(insight)

        stored = InsightRepository.list_by_conversation(conversation.id)
        assert [i.id for i in stored] == [insight.id]
        assert stored[0].trigger == "silence"
        assert InsightRepository.get_by_id(insight.id).confidence == 0.8

    def test_cascade_on_conversation_delete(self, key, clock):
        conversation = ConversationRepository.record_activity(key, "U1", "some words here", 3, clock.now)
        InsightRepository.create(
            Insight(
                conversation_id=conversation.id,
                worthy=False,
                confidence=0.1,
                summary_version=1,
                trigger=TriggerType.VOLUME,
            )
        )
        with db_transaction() as conn:
            conn.execute("DELETE FROM conversations WHERE id = ?", (conversation.id,))

        assert InsightRepository.list_by_conversation(conversation.id) == []


class TestConversationTracker:
    def test_refresh_signal_sets_gate_once(self, key, clock):
        tracker = ConversationTracker(thresholds=LOOSE)
        ConversationRepository.record_activity(key, "U1", "some words here", 3, clock.now)
        conversation = ConversationRepository.record_activity(key, "U2", "more words here", 3, clock.advance(minutes=1))

        evaluation = tracker.refresh_signal(conversation, clock.now)
        assert evaluation.passed
        assert conversation.gate_passed_at == clock.now

        first = clock.now
        clock.advance(minutes=5)
        tracker.refresh_signal(conversation, clock.now)
        assert ConversationRepository.get_by_id(conversation.id).gate_passed_at == first

    def test_gate_stays_passed_after_conditions_regress(self, key, clock):
        tracker = ConversationTracker(thresholds=LOOSE)
        ConversationRepository.record_activity(key, "U1", "some words here", 3, clock.now)
        conversation = ConversationRepository.record_activity(key, "U2", "more words here", 3, clock.now)
        tracker.refresh_signal(conversation, clock.now)

        strict = ConversationTracker(thresholds=replace(LOOSE, min_messages=50))
        evaluation = strict.refresh_signal(conversation, clock.advance(minutes=1))
        assert not evaluation.passed
        assert ConversationRepository.get_by_id(conversation.id).gate_passed_at is not None

    @pytest.mark.parametrize(
        "count,words,expected",
        [(1, 10, False), (5, 10, True), (2, 300, True), (4, 299, False)],
    )
    def test_should_compress_thresholds(self, key, clock, count, words, expected):
        tracker = ConversationTracker()
        conversation = None
        per_message = words // count
        for i in range(count):
            extra = words - per_message * count if i == 0 else 0
            conversation = ConversationRepository.record_activity(
                key, "U1", "text for the buffer", per_message + extra, clock.now
            )
        assert tracker.should_compress(conversation, clock.now) is expected

    def test_should_compress_after_elapsed_time(self, key, clock):
        tracker = ConversationTracker(compress_trigger_minutes=15)
        conversation = ConversationRepository.record_activity(key, "U1", "first message text", 3, clock.now)
        conversation.last_compressed_at = clock.now
        conversation.pending_count = 2

        assert tracker.should_compress(conversation, clock.now + timedelta(minutes=14)) is False
        assert tracker.should_compress(conversation, clock.now + timedelta(minutes=15)) is True

    def test_cooldown(self, key, clock):
        tracker = ConversationTracker(cooldown_minutes=60)
        conversation = ConversationRepository.record_activity(key, "U1", "some words here", 3, clock.now)
        assert tracker.in_cooldown(conversation, clock.now) is False

        tracker.stamp_analysis(conversation, clock.now)
        assert tracker.in_cooldown(conversation, clock.now + timedelta(minutes=59)) is True
        assert tracker.in_cooldown(conversation, clock.now + timedelta(minutes=60)) is False
        assert ConversationRepository.get_by_id(conversation.id).last_analysis_at == clock.now


def test_retry_on_db_lock_recovers():
    calls = [0]

    @retry_on_db_lock(max_retries=3, base_delay=0.001, max_delay=0.002)
    def flaky():
        calls[0] += 1
        if calls[0] < 3:
            raise sqlite3.OperationalError("database is locked")
        return "ok"

    assert flaky() == "ok"
    assert calls[0] == 3


def test_retry_on_db_lock_ignores_other_errors():
    calls = [0]

    @retry_on_db_lock(max_retries=3, base_delay=0.001)
    def broken():
        calls[0] += 1
        raise sqlite3.OperationalError("no such table: foo")

    with pytest.raises(sqlite3.OperationalError):
        broken()
    assert calls[0] == 1


def test_pool_connections_enforce_foreign_keys():
    with get_db_connection() as conn:
        assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
