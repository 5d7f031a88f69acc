"""
Wiring for a running SignalQ process.

    init_storage()      -> schema created and validated
    validate_config()   -> ConfigurationError when a capability is missing
    build_pipeline()    -> InsightPipeline with its buffer attached

The chat transport (Socket Mode, Events API) is owned by the caller; it
parses payloads with signalq.events.parser and hands them to
InsightPipeline.process_event.
"""

from __future__ import annotations

import os
import sqlite3
from typing import Any

from signalq.buffer.manager import BufferManager, TimerFactory, daemon_timer
from signalq.buffer.store import (
    FallbackWindowStore,
    InMemoryWindowStore,
    RedisWindowStore,
    WindowStore,
)
from signalq.config import (
    APP_VERSION,
    BUFFER_MAX_BATCH_SIZE,
    BUFFER_OVERLAP_SIZE,
    BUFFER_SILENCE_SECONDS,
    BUFFER_TTL_SECONDS,
    DEFAULT_PLATFORM,
    DRY_RUN_MODE,
    LLM_MAX_REQUESTS_PER_DAY,
    LLM_MAX_REQUESTS_PER_MINUTE,
    PLATFORM_CHAR_LIMITS,
    REDIS_URL,
    SLACK_BOT_TOKEN,
)
from signalq.conversations.tracker import ConversationTracker
from signalq.errors import ConfigurationError
from signalq.events.parser import parse_slack_message, should_process
from signalq.infrastructure.database import init_database, validate_schema
from signalq.infrastructure.rate_limiter import RateLimiter
from signalq.llm.client import AnalysisClient
from signalq.notify.channels import DeliveryChannel, LogOnlyChannel, SlackDeliveryChannel
from signalq.notify.notifier import Notifier
from signalq.observability.logging import get_logger, set_log_level
from signalq.observability.telemetry import log_event
from signalq.pipeline.compressor import SummaryCompressor
from signalq.pipeline.insight import EventResult, InsightPipeline

logger = get_logger(__name__)


def init_storage() -> None:
    """
    Create the schema (idempotent) and fail fast if it is broken.

    Raises:
        RuntimeError: Database could not be initialized or validated

    Side Effects:
        - Creates the SQLite file and tables if missing
    """
    try:
        logger.info("Initializing database schema...")
        init_database()
        validate_schema()
        logger.info("Database initialization complete")
    except sqlite3.OperationalError as e:
        logger.critical("Database schema error: %s", e)
        raise RuntimeError(f"Database initialization failed: {e}") from e
    except ValueError as e:
        logger.critical("Database schema invalid: %s", e)
        raise RuntimeError(f"Database schema validation failed: {e}") from e


def validate_config(dry_run: bool = DRY_RUN_MODE, slack_token: str | None = SLACK_BOT_TOKEN) -> None:
    """
    Check that the external capabilities the pipeline needs are configured.

    Raises:
        ConfigurationError: Lists every missing capability
    """
    problems = []
    if not (os.getenv("GOOGLE_CLOUD_PROJECT") or os.getenv("GOOGLE_API_KEY")):
        problems.append("GOOGLE_CLOUD_PROJECT or GOOGLE_API_KEY is required for Gemini")
    if not dry_run and not slack_token:
        problems.append("SLACK_BOT_TOKEN is required unless SIGNALQ_DRY_RUN is set")
    if DEFAULT_PLATFORM not in PLATFORM_CHAR_LIMITS:
        problems.append(f"SIGNALQ_DEFAULT_PLATFORM must be one of {sorted(PLATFORM_CHAR_LIMITS)}")

    if problems:
        for problem in problems:
            logger.critical("Configuration error: %s", problem)
        raise ConfigurationError(problems)


def build_window_store(redis_url: str | None = REDIS_URL) -> WindowStore:
    """Redis with in-memory fallback when REDIS_URL is set, else in-memory only."""
    if redis_url:
        logger.info("Buffer windows stored in Redis with in-memory fallback")
        return FallbackWindowStore(RedisWindowStore.from_url(redis_url))
    logger.info("REDIS_URL not set, buffer windows kept in process memory")
    return InMemoryWindowStore()


def build_pipeline(
    channel: DeliveryChannel | None = None,
    store: WindowStore | None = None,
    client: AnalysisClient | None = None,
    timer_factory: TimerFactory = daemon_timer,
    dry_run: bool = DRY_RUN_MODE,
    log_level: str | None = None,
) -> InsightPipeline:
    """
    Assemble the pipeline from configuration.

    Args:
        channel: Delivery channel, defaults to Slack with SLACK_BOT_TOKEN
            (a log-only channel in dry run when no token is set)
        store: Window store, defaults to build_window_store()
        client: Analysis client, defaults to a Gemini client with the
            configured rate limits
        timer_factory: Timer factory for silence and retry timers
        dry_run: Notifier dry-run mode
        log_level: Re-level every signalq logger (e.g. "DEBUG")

    Returns:
        InsightPipeline with a BufferManager attached
    """
    if log_level:
        set_log_level(log_level)

    if channel is None and dry_run and not SLACK_BOT_TOKEN:
        channel = LogOnlyChannel()
    elif channel is None:
        if not SLACK_BOT_TOKEN:
            raise ConfigurationError(["SLACK_BOT_TOKEN is required to build the Slack channel"])
        channel = SlackDeliveryChannel.from_token(SLACK_BOT_TOKEN)

    if client is None:
        client = AnalysisClient(RateLimiter(LLM_MAX_REQUESTS_PER_MINUTE, LLM_MAX_REQUESTS_PER_DAY))

    pipeline = InsightPipeline(
        tracker=ConversationTracker(),
        compressor=SummaryCompressor(client),
        client=client,
        notifier=Notifier(channel, dry_run=dry_run),
        timer_factory=timer_factory,
    )
    buffer = BufferManager(
        store if store is not None else build_window_store(),
        pipeline.handle_window,
        max_batch_size=BUFFER_MAX_BATCH_SIZE,
        silence_seconds=BUFFER_SILENCE_SECONDS,
        overlap_size=BUFFER_OVERLAP_SIZE,
        ttl_seconds=BUFFER_TTL_SECONDS,
        timer_factory=timer_factory,
    )
    pipeline.attach_buffer(buffer)

    log_event(
        "pipeline.startup",
        version=APP_VERSION,
        dry_run=dry_run,
        max_batch_size=BUFFER_MAX_BATCH_SIZE,
        silence_seconds=BUFFER_SILENCE_SECONDS,
    )
    return pipeline


def handle_slack_message(pipeline: InsightPipeline, payload: dict[str, Any]) -> EventResult | None:
    """Entry point for a Slack `message` event payload; None when skipped."""
    if not should_process(payload):
        return None
    return pipeline.process_event(parse_slack_message(payload))
