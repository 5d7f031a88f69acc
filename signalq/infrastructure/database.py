"""Centralized database configuration

SignalQ keeps its durable state (conversations, insights, notification
records) in ONE SQLite database: signalq/data/signalq.db, overridable with
SIGNALQ_DB_PATH.

Provides:
- Connection pooling (reuses connections across threads)
- Lock-contention retry with exponential backoff
- Transaction context manager (commit on success, rollback on error)
- Schema initialization and validation entry points
"""

from __future__ import annotations

import atexit
import os
import random
import sqlite3
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from functools import lru_cache, wraps
from pathlib import Path
from queue import Empty, Full, Queue
from threading import Lock
from typing import Any, TypeVar

from signalq.config import (
    DB_CONNECT_TIMEOUT,
    DB_FILE,
    DB_POOL_SIZE,
    DB_POOL_TIMEOUT,
    DB_RETRY_BASE_DELAY,
    DB_RETRY_JITTER,
    DB_RETRY_MAX,
    DB_RETRY_MAX_DELAY,
)
from signalq.errors import TransientIOError
from signalq.observability.logging import get_logger
from signalq.observability.telemetry import counter

F = TypeVar("F", bound=Callable[..., Any])

logger = get_logger(__name__)


def retry_on_db_lock(
    max_retries: int = DB_RETRY_MAX,
    base_delay: float = DB_RETRY_BASE_DELAY,
    max_delay: float = DB_RETRY_MAX_DELAY,
) -> Callable[[F], F]:
    """
    Decorator to retry database operations on SQLITE_BUSY errors

    Concurrent timer threads and ingest threads write the same database;
    "database is locked" is resolved with exponential backoff plus jitter.

    Side Effects:
        - Retries wrapped function up to max_retries times on database lock errors
        - Sleeps between retries
        - Logs a warning per retry and an error when retries are exhausted
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_error = None

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)

                except sqlite3.OperationalError as e:
                    last_error = e

                    if "locked" not in str(e).lower() and "busy" not in str(e).lower():
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            "Database lock retry exhausted after %d attempts: %s",
                            max_retries,
                            e,
                        )
                        counter("database.lock_exhausted")
                        raise

                    delay = min(base_delay * (2**attempt), max_delay)
                    sleep_time = delay + random.uniform(0, delay * DB_RETRY_JITTER)

                    logger.warning(
                        "Database locked (attempt %d/%d), retrying in %.2fs: %s",
                        attempt + 1,
                        max_retries,
                        sleep_time,
                        e,
                    )
                    time.sleep(sleep_time)

            raise last_error  # type: ignore[misc]

        return wrapper  # type: ignore[return-value]

    return decorator


def translate_db_errors(func: F) -> F:
    """
    Re-raise sqlite3 failures as TransientIOError.

    IntegrityError passes through unchanged; callers use it to detect
    uniqueness conflicts.
    """

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            counter("database.errors")
            raise TransientIOError(f"{func.__qualname__} failed: {e}", original=e) from e

    return wrapper  # type: ignore[return-value]


class DatabaseConnectionPool:
    """
    Thread-safe connection pool for SQLite

    Connections are created lazily up to pool_size and configured with WAL,
    foreign keys and Row factory. When the pool is exhausted a temporary
    connection is opened and closed on return.
    """

    def __init__(self, db_path: Path, pool_size: int = DB_POOL_SIZE):
        self.db_path = db_path
        self.pool_size = pool_size
        self.pool: Queue[sqlite3.Connection] = Queue(maxsize=pool_size)
        self.lock = Lock()
        self.created = 0
        self.closed = False

        atexit.register(self.close_all)

    def _create_connection(self) -> sqlite3.Connection:
        """
        Create a configured SQLite connection

        Side Effects:
            - Opens database connection
            - Executes PRAGMA statements (journal_mode, synchronous, foreign_keys)
        """
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=DB_CONNECT_TIMEOUT,
            check_same_thread=False,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    def get_connection(self) -> sqlite3.Connection:
        if self.closed:
            raise RuntimeError("Connection pool has been closed")

        try:
            return self.pool.get_nowait()
        except Empty:
            pass

        with self.lock:
            if self.created < self.pool_size:
                self.created += 1
                return self._create_connection()

        try:
            return self.pool.get(block=True, timeout=DB_POOL_TIMEOUT)
        except Empty:
            logger.error(
                "Connection pool exhausted (pool_size=%d), opening temporary connection",
                self.pool_size,
            )
            counter("database.pool_exhausted")
            conn = self._create_connection()
            conn._is_temporary = True  # type: ignore[attr-defined]
            return conn

    def return_connection(self, conn: sqlite3.Connection) -> None:
        if self.closed or getattr(conn, "_is_temporary", False):
            conn.close()
            return

        try:
            self.pool.put_nowait(conn)
        except Full:
            logger.warning("Failed to return connection to pool (pool full), closing")
            conn.close()

    def close_all(self) -> None:
        """
        Close all pooled connections

        Side Effects:
            - Sets self.closed flag to True
            - Closes every idle pooled connection
        """
        self.closed = True
        while not self.pool.empty():
            try:
                self.pool.get_nowait().close()
            except Empty:
                break


def get_db_path() -> Path:
    """Database path; SIGNALQ_DB_PATH overrides the packaged default."""
    if env_path := os.getenv("SIGNALQ_DB_PATH"):
        return Path(env_path)
    return DB_FILE


@lru_cache(maxsize=1)
def get_pool() -> DatabaseConnectionPool:
    """Global connection pool singleton (thread-safe via @lru_cache)."""
    return DatabaseConnectionPool(get_db_path(), pool_size=DB_POOL_SIZE)


def reset_pool() -> None:
    """
    Close and forget the global pool so the next call re-reads SIGNALQ_DB_PATH.

    Side Effects:
        - Closes pooled connections
        - Clears the get_pool cache
    """
    if get_pool.cache_info().currsize:
        get_pool().close_all()
    get_pool.cache_clear()


@contextmanager
def get_db_connection() -> Generator[sqlite3.Connection, None, None]:
    """
    Get pooled database connection (context manager)

    Raises:
        FileNotFoundError: If the database has not been initialized
    """
    db_path = get_db_path()

    if not db_path.exists():
        raise FileNotFoundError(f"Database not found: {db_path}\nRun: signalq.runtime.bootstrap.init_storage()")

    pool = get_pool()
    conn = pool.get_connection()
    try:
        yield conn
    finally:
        pool.return_connection(conn)


@contextmanager
def db_transaction() -> Generator[sqlite3.Connection, None, None]:
    """
    Context manager for database transactions

    Automatically commits on success, rolls back on error.

    Side Effects:
        - Commits transaction on success
        - Rolls back transaction on exception
    """
    with get_db_connection() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def init_database() -> None:
    """
    Initialize database with schema (idempotent)

    Side Effects:
        - Creates the data directory and tables if missing
    """
    from signalq.infrastructure.database_schema import init_database as _init_database

    _init_database(get_db_path())


def validate_schema() -> bool:
    """
    Validate database has expected schema

    Raises:
        ValueError: If tables are missing
    """
    from signalq.infrastructure.database_schema import validate_schema as _validate_schema

    with get_db_connection() as conn:
        return _validate_schema(conn)
