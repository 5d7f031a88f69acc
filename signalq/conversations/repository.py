"""
Conversation, Insight and Notification repositories.

Follows the database patterns in signalq/infrastructure/database.py: pooled
connections, `db_transaction()` for writes, `retry_on_db_lock()` on every
write path. Read-modify-write sequences open the transaction with
BEGIN IMMEDIATE so concurrent writers serialize on the row instead of losing
updates.

No operation here clears `conversations.notified`.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime

from signalq.conversations.models import (
    Conversation,
    ConversationKey,
    Insight,
    NotificationRecord,
    NotificationStatus,
    NotificationType,
    utc_now,
)
from signalq.infrastructure.database import (
    db_transaction,
    get_db_connection,
    retry_on_db_lock,
    translate_db_errors,
)
from signalq.observability.logging import get_logger

logger = get_logger(__name__)

SNIPPET_SEPARATOR = "\n"


def format_snippet(text: str, word_count: int) -> str:
    """Pending-buffer line for one message."""
    return f"User ({word_count} words): {text}"


def _fetch_conversation(conn: sqlite3.Connection, conversation_id: str) -> Conversation | None:
    row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
    return Conversation.from_db_row(dict(row)) if row else None


def _write_conversation(conn: sqlite3.Connection, conversation: Conversation) -> None:
    conn.execute(
        """
        UPDATE conversations SET
            message_count = :message_count,
            participant_ids = :participant_ids,
            total_word_count = :total_word_count,
            pending_text = :pending_text,
            pending_count = :pending_count,
            pending_word_count = :pending_word_count,
            last_activity_at = :last_activity_at,
            updated_at = :updated_at
        WHERE id = :id
        """,
        conversation.to_db_dict(),
    )


class ConversationRepository:
    """
    Repository for Conversation state.

    All methods use connection pooling and proper transaction handling.
    """

    @staticmethod
    @translate_db_errors
    def get_by_id(conversation_id: str) -> Conversation | None:
        with get_db_connection() as conn:
            return _fetch_conversation(conn, conversation_id)

    @staticmethod
    @translate_db_errors
    def get_by_key(key: ConversationKey) -> Conversation | None:
        """
        Get the conversation for a (workspace, channel, thread) key.

        Returns:
            Conversation if found, None otherwise
        """
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM conversations
                WHERE workspace_id = ? AND channel_id = ? AND thread_ts = ?
                """,
                (key.workspace_id, key.channel_id, key.thread_ts or ""),
            ).fetchone()

        return Conversation.from_db_row(dict(row)) if row else None

    @staticmethod
    @translate_db_errors
    @retry_on_db_lock()
    def record_activity(
        key: ConversationKey,
        user_id: str,
        text: str,
        word_count: int,
        at: datetime,
    ) -> Conversation:
        """
        Apply one qualifying message to the conversation, creating it if new.

        Args:
            key: Conversation key
            user_id: Message author
            text: Prepared message text (goes into the pending buffer)
            word_count: Words in the original message
            at: Message time

        Returns:
            Updated Conversation

        Side Effects:
            - Inserts a conversations row on first message for the key
            - Increments counts, extends participants, appends pending text
            - Commits transaction
        """
        with db_transaction() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT * FROM conversations
                WHERE workspace_id = ? AND channel_id = ? AND thread_ts = ?
                """,
                (key.workspace_id, key.channel_id, key.thread_ts or ""),
            ).fetchone()

            if row is None:
                conversation = Conversation(
                    workspace_id=key.workspace_id,
                    channel_id=key.channel_id,
                    thread_ts=key.thread_ts,
                    window_started_at=at,
                    last_activity_at=at,
                    created_at=at,
                    updated_at=at,
                )
                data = conversation.to_db_dict()
                columns = ", ".join(data)
                placeholders = ", ".join(f":{name}" for name in data)
                conn.execute(f"INSERT INTO conversations ({columns}) VALUES ({placeholders})", data)
                logger.info("Created conversation %s for %s", conversation.id, key)
            else:
                conversation = Conversation.from_db_row(dict(row))

            conversation.message_count += 1
            conversation.total_word_count += word_count
            if user_id not in conversation.participant_ids:
                conversation.participant_ids.append(user_id)

            snippet = format_snippet(text, word_count)
            conversation.pending_text = (
                f"{conversation.pending_text}{SNIPPET_SEPARATOR}{snippet}"
                if conversation.pending_text
                else snippet
            )
            conversation.pending_count += 1
            conversation.pending_word_count += word_count
            conversation.last_activity_at = max(conversation.last_activity_at, at)
            conversation.updated_at = utc_now()

            _write_conversation(conn, conversation)

        return conversation

    @staticmethod
    @translate_db_errors
    @retry_on_db_lock()
    def update_signal(conversation_id: str, signal_score: int, gate_passed_at: datetime | None) -> bool:
        """
        Store the latest signal score and, once, the gate-passed time.

        Returns:
            True if this call set gate_passed_at for the first time
        """
        with db_transaction() as conn:
            conn.execute(
                "UPDATE conversations SET signal_score = ?, updated_at = ? WHERE id = ?",
                (signal_score, utc_now().isoformat(), conversation_id),
            )
            if gate_passed_at is None:
                return False
            cursor = conn.execute(
                """
                UPDATE conversations SET gate_passed_at = ?
                WHERE id = ? AND gate_passed_at IS NULL
                """,
                (gate_passed_at.isoformat(), conversation_id),
            )
            return cursor.rowcount == 1

    @staticmethod
    @translate_db_errors
    @retry_on_db_lock()
    def stamp_analysis(conversation_id: str, at: datetime) -> None:
        """
        Record that an analysis call was made (starts the cooldown).

        Side Effects:
            - Updates last_analysis_at
        """
        with db_transaction() as conn:
            conn.execute(
                "UPDATE conversations SET last_analysis_at = ?, updated_at = ? WHERE id = ?",
                (at.isoformat(), utc_now().isoformat(), conversation_id),
            )

    @staticmethod
    @translate_db_errors
    @retry_on_db_lock()
    def apply_compression(
        conversation_id: str,
        summary: str,
        expected_version: int,
        compressed_pending: str,
        at: datetime,
    ) -> Conversation | None:
        """
        Replace the rolling summary and drop the compressed pending text.

        Pending lines appended while compression ran are kept. If another
        compression already bumped the version, nothing is written.

        Args:
            conversation_id: Conversation to update
            summary: New rolling summary
            expected_version: summary_version the compression started from
            compressed_pending: Pending text that was folded into `summary`
            at: Compression time

        Returns:
            Updated Conversation, or None if the version moved on

        Side Effects:
            - Increments summary_version, rewrites pending buffer
            - Stamps last_compressed_at
        """
        with db_transaction() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conversation = _fetch_conversation(conn, conversation_id)
            if conversation is None or conversation.summary_version != expected_version:
                return None

            remaining = ""
            if conversation.pending_text.startswith(compressed_pending):
                remaining = conversation.pending_text[len(compressed_pending) :]
            remaining_lines = [line for line in remaining.split(SNIPPET_SEPARATOR) if line]
            remaining_words = sum(_snippet_word_count(line) for line in remaining_lines)

            conversation.rolling_summary = summary
            conversation.summary_version += 1
            conversation.pending_text = SNIPPET_SEPARATOR.join(remaining_lines)
            conversation.pending_count = len(remaining_lines)
            conversation.pending_word_count = remaining_words
            conversation.last_compressed_at = at
            conversation.updated_at = utc_now()

            conn.execute(
                """
                UPDATE conversations SET
                    rolling_summary = ?,
                    summary_version = ?,
                    pending_text = ?,
                    pending_count = ?,
                    pending_word_count = ?,
                    last_compressed_at = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    conversation.rolling_summary,
                    conversation.summary_version,
                    conversation.pending_text,
                    conversation.pending_count,
                    conversation.pending_word_count,
                    at.isoformat(),
                    conversation.updated_at.isoformat(),
                    conversation_id,
                ),
            )

        return conversation

    @staticmethod
    def mark_notified(conn: sqlite3.Connection, conversation_id: str, at: datetime) -> bool:
        """
        Flip notified false -> true inside the caller's transaction.

        Returns:
            True if this call performed the transition
        """
        cursor = conn.execute(
            """
            UPDATE conversations SET notified = 1, notified_at = ?, updated_at = ?
            WHERE id = ? AND notified = 0
            """,
            (at.isoformat(), at.isoformat(), conversation_id),
        )
        return cursor.rowcount == 1

    @staticmethod
    @translate_db_errors
    def get_stats() -> dict[str, int]:
        """Counts for observability: total, gate passed, notified."""
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN gate_passed_at IS NOT NULL THEN 1 ELSE 0 END), 0) AS gate_passed,
                    COALESCE(SUM(notified), 0) AS notified
                FROM conversations
                """
            ).fetchone()
        return {"total": row["total"], "gate_passed": row["gate_passed"], "notified": row["notified"]}


def _snippet_word_count(line: str) -> int:
    """Word count recorded in a "User (N words): ..." line, else a plain count."""
    prefix = "User ("
    if line.startswith(prefix):
        head = line[len(prefix) :].split(" ", 1)[0]
        if head.isdigit():
            return int(head)
    return len(line.split())


class InsightRepository:
    """Append-only storage for analysis outcomes."""

    @staticmethod
    @translate_db_errors
    @retry_on_db_lock()
    def create(insight: Insight) -> Insight:
        """
        Persist an insight.

        Side Effects:
            - Inserts row into insights table
        """
        data = insight.to_db_dict()
        columns = ", ".join(data)
        placeholders = ", ".join(f":{name}" for name in data)
        with db_transaction() as conn:
            conn.execute(f"INSERT INTO insights ({columns}) VALUES ({placeholders})", data)

        logger.info(
            "Stored insight %s for conversation %s (worthy=%s)",
            insight.id,
            insight.conversation_id,
            insight.worthy,
        )
        return insight

    @staticmethod
    @translate_db_errors
    def get_by_id(insight_id: str) -> Insight | None:
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM insights WHERE id = ?", (insight_id,)).fetchone()
        return Insight.from_db_row(dict(row)) if row else None

    @staticmethod
    @translate_db_errors
    def list_by_conversation(conversation_id: str) -> list[Insight]:
        """Insights for a conversation, oldest first."""
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM insights WHERE conversation_id = ? ORDER BY created_at, rowid",
                (conversation_id,),
            ).fetchall()
        return [Insight.from_db_row(dict(row)) for row in rows]


class NotificationRepository:
    """
    Claim-then-confirm storage for notification records.

    A pending claim is inserted before delivery under
    UNIQUE(conversation_id, type); the claim is confirmed (or released) after
    the delivery attempt.
    """

    @staticmethod
    @translate_db_errors
    @retry_on_db_lock()
    def claim(record: NotificationRecord) -> bool:
        """
        Insert a pending record.

        Returns:
            False if a record for (conversation_id, type) already exists
        """
        data = record.to_db_dict()
        columns = ", ".join(data)
        placeholders = ", ".join(f":{name}" for name in data)
        try:
            with db_transaction() as conn:
                conn.execute(f"INSERT INTO notifications ({columns}) VALUES ({placeholders})", data)
        except sqlite3.IntegrityError:
            logger.info(
                "Notification already claimed for conversation %s (type=%s)",
                record.conversation_id,
                data["type"],
            )
            return False
        return True

    @staticmethod
    @translate_db_errors
    @retry_on_db_lock()
    def release(record_id: str) -> None:
        """
        Drop a pending claim after a failed delivery.

        Side Effects:
            - Deletes the row only while it is still pending
        """
        with db_transaction() as conn:
            conn.execute(
                "DELETE FROM notifications WHERE id = ? AND status = ?",
                (record_id, NotificationStatus.PENDING.value),
            )

    @staticmethod
    @retry_on_db_lock()
    def confirm_delivery(
        record_id: str,
        conversation_id: str,
        message_ts: str | None,
        at: datetime,
    ) -> bool:
        """
        Mark the conversation notified and the record delivered, atomically.

        Raises sqlite3 errors unchanged so the notifier can report a
        delivered-but-unrecorded message.

        Returns:
            True if the conversation transitioned to notified
        """
        with db_transaction() as conn:
            flipped = ConversationRepository.mark_notified(conn, conversation_id, at)
            conn.execute(
                """
                UPDATE notifications SET status = ?, message_ts = ?, delivered_at = ?
                WHERE id = ?
                """,
                (NotificationStatus.DELIVERED.value, message_ts, at.isoformat(), record_id),
            )
        return flipped

    @staticmethod
    @translate_db_errors
    def get_for_conversation(
        conversation_id: str,
        notification_type: NotificationType = NotificationType.INSIGHT_DETECTED,
    ) -> NotificationRecord | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM notifications WHERE conversation_id = ? AND type = ?",
                (conversation_id, notification_type.value),
            ).fetchone()
        return NotificationRecord.from_db_row(dict(row)) if row else None

    @staticmethod
    @translate_db_errors
    def get_by_message(channel_id: str, message_ts: str) -> NotificationRecord | None:
        """
        Look up the record behind a posted message (reply correlation).

        Returns:
            NotificationRecord if found, None otherwise
        """
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM notifications WHERE channel_id = ? AND message_ts = ?",
                (channel_id, message_ts),
            ).fetchone()
        return NotificationRecord.from_db_row(dict(row)) if row else None

    @staticmethod
    @translate_db_errors
    def list_pending() -> list[NotificationRecord]:
        """Claims never confirmed: delivered-but-unrecorded or crashed mid-delivery."""
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE status = ? ORDER BY created_at",
                (NotificationStatus.PENDING.value,),
            ).fetchall()
        return [NotificationRecord.from_db_row(dict(row)) for row in rows]
