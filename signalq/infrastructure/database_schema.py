"""
Database schema initialization for SignalQ.

Three tables: conversations (one row per conversation key), insights
(append-only analysis history) and notifications (delivery proof, at most one
per conversation and type). Insights and notifications cascade on
conversation delete; the pipeline itself never deletes conversations.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from signalq.observability.logging import get_logger

logger = get_logger(__name__)

REQUIRED_TABLES: dict[str, list[str]] = {
    "conversations": [
        "id",
        "workspace_id",
        "channel_id",
        "thread_ts",
        "message_count",
        "participant_ids",
        "rolling_summary",
        "summary_version",
        "pending_text",
        "notified",
    ],
    "insights": ["id", "conversation_id", "worthy", "confidence", "summary_version"],
    "notifications": ["id", "conversation_id", "type", "status", "idempotency_key", "message_ts"],
}


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Safe to run multiple times - uses CREATE TABLE IF NOT EXISTS.

    Args:
        db_path: Path to the database file

    Side Effects:
    - Creates signalq/data/ (or the SIGNALQ_DB_PATH parent) if needed
    - Creates tables and indexes if they don't exist
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.executescript("""
            PRAGMA foreign_keys = ON;

            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                channel_id TEXT NOT NULL,
                thread_ts TEXT NOT NULL DEFAULT '',
                message_count INTEGER NOT NULL DEFAULT 0,
                participant_ids TEXT NOT NULL DEFAULT '[]',
                total_word_count INTEGER NOT NULL DEFAULT 0,
                rolling_summary TEXT NOT NULL DEFAULT '',
                summary_version INTEGER NOT NULL DEFAULT 1,
                pending_text TEXT NOT NULL DEFAULT '',
                pending_count INTEGER NOT NULL DEFAULT 0,
                pending_word_count INTEGER NOT NULL DEFAULT 0,
                window_started_at TEXT NOT NULL,
                last_activity_at TEXT NOT NULL,
                gate_passed_at TEXT,
                last_analysis_at TEXT,
                last_compressed_at TEXT,
                notified INTEGER NOT NULL DEFAULT 0 CHECK (notified IN (0, 1)),
                notified_at TEXT,
                signal_score INTEGER NOT NULL DEFAULT 0 CHECK (signal_score BETWEEN 0 AND 100),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(workspace_id, channel_id, thread_ts)
            );

            CREATE INDEX IF NOT EXISTS idx_conversations_activity
            ON conversations(last_activity_at);

            CREATE INDEX IF NOT EXISTS idx_conversations_gate
            ON conversations(gate_passed_at, notified);

            CREATE TABLE IF NOT EXISTS insights (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                worthy INTEGER NOT NULL DEFAULT 0,
                confidence REAL NOT NULL DEFAULT 0,
                topic TEXT,
                summary TEXT,
                suggested_angle TEXT,
                content TEXT,
                platform TEXT,
                summary_version INTEGER NOT NULL,
                trigger TEXT NOT NULL,
                model TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_insights_conversation
            ON insights(conversation_id, created_at);

            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                insight_id TEXT,
                type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'delivered')),
                idempotency_key TEXT NOT NULL,
                channel_id TEXT NOT NULL,
                thread_ts TEXT,
                message_ts TEXT,
                created_at TEXT NOT NULL,
                delivered_at TEXT,
                UNIQUE(conversation_id, type),
                FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE,
                FOREIGN KEY (insight_id) REFERENCES insights(id) ON DELETE SET NULL
            );

            CREATE INDEX IF NOT EXISTS idx_notifications_message
            ON notifications(channel_id, message_ts);

            CREATE INDEX IF NOT EXISTS idx_notifications_status
            ON notifications(status);
        """)
        conn.commit()
    finally:
        conn.close()

    logger.info("Database schema initialized at %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Validate database has expected schema

    Args:
        conn: Active database connection

    Returns:
        True if valid

    Raises:
        ValueError: If tables or columns are missing
    """
    cursor = conn.cursor()
    cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
    existing_tables = {row[0] for row in cursor.fetchall()}

    missing_tables = set(REQUIRED_TABLES) - existing_tables
    if missing_tables:
        raise ValueError(f"Database missing tables: {sorted(missing_tables)}")

    for table, required_cols in REQUIRED_TABLES.items():
        # Identifiers come from REQUIRED_TABLES, never from input
        cursor.execute(f"PRAGMA table_info({table})")
        existing_cols = {row[1] for row in cursor.fetchall()}
        missing_cols = set(required_cols) - existing_cols
        if missing_cols:
            raise ValueError(f"Table {table} missing columns: {sorted(missing_cols)}")

    return True
