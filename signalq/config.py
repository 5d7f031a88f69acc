"""Centralized configuration for SignalQ.

Re-exports everything from signalq.infrastructure.settings so existing imports
continue to work, then adds typed constants for the signal gate, summary
compression, insight detection, Gemini rate limiting, the hybrid buffer, and
feature flags. Environment variable overrides use safe defaults so the
pipeline starts without extra env configuration.
"""

from __future__ import annotations

import os

from signalq.infrastructure.settings import *  # noqa: F401, F403


def _env_int(key: str, default: int) -> int:
    return int(os.getenv(key, str(default)))


def _env_float(key: str, default: float) -> float:
    return float(os.getenv(key, str(default)))


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# --- App ---
APP_VERSION: str = "0.1.0"

# --- Signal Gate: volume ---
GATE_MIN_MESSAGES: int = _env_int("SIGNALQ_MIN_MESSAGES", 8)
GATE_MIN_PARTICIPANTS: int = _env_int("SIGNALQ_MIN_PARTICIPANTS", 2)
GATE_MIN_AVG_WORDS: float = _env_float("SIGNALQ_MIN_AVG_WORDS", 15)
GATE_MIN_TOTAL_WORDS: int = _env_int("SIGNALQ_MIN_TOTAL_WORDS", 120)

# --- Signal Gate: temporal ---
GATE_MIN_DURATION_MINUTES: float = _env_float("SIGNALQ_MIN_DURATION_MIN", 5)
GATE_MAX_DURATION_HOURS: float = _env_float("SIGNALQ_MAX_DURATION_HOURS", 6)
GATE_MIN_VELOCITY_PER_HOUR: float = _env_float("SIGNALQ_MIN_VELOCITY", 1)
GATE_MAX_VELOCITY_PER_HOUR: float = _env_float("SIGNALQ_MAX_VELOCITY", 10)
GATE_MIN_AGE_MINUTES: float = _env_float("SIGNALQ_MIN_AGE_MIN", 5)

# --- Signal Gate: engagement / quality ---
GATE_MIN_ENGAGEMENT_RATIO: float = _env_float("SIGNALQ_MIN_ENGAGEMENT", 0.25)
GATE_REQUIRES_QUESTION: bool = _env_bool("SIGNALQ_REQUIRE_QUESTION", True)
GATE_MIN_UNIQUENESS_RATIO: float = _env_float("SIGNALQ_MIN_UNIQUENESS", 0.4)

# --- Summary Compression ---
COMPRESS_TRIGGER_MESSAGES: int = _env_int("SIGNALQ_COMPRESS_MSG_COUNT", 5)
COMPRESS_TRIGGER_WORDS: int = _env_int("SIGNALQ_COMPRESS_WORD_COUNT", 300)
COMPRESS_TRIGGER_MINUTES: float = _env_float("SIGNALQ_COMPRESS_MINUTES", 15)
COMPRESS_MAX_SUMMARY_WORDS: int = _env_int("SIGNALQ_MAX_SUMMARY_WORDS", 250)
COMPRESS_MAX_RETRIES: int = _env_int("SIGNALQ_COMPRESS_MAX_RETRIES", 3)
EMERGENCY_KEEP_LINES: int = 10
EMERGENCY_MIN_LINE_CHARS: int = 50

# --- Insight Detection ---
INSIGHT_CONFIDENCE_THRESHOLD: float = _env_float("SIGNALQ_INSIGHT_CONFIDENCE", 0.7)
INSIGHT_COOLDOWN_MINUTES: float = _env_float("SIGNALQ_INSIGHT_COOLDOWN_MIN", 60)
WORTHINESS_MAX_RETRIES: int = 2

# --- Gemini rate limiting ---
LLM_MAX_REQUESTS_PER_MINUTE: int = _env_int("SIGNALQ_GEMINI_RPM", 15)
LLM_MAX_REQUESTS_PER_DAY: int = _env_int("SIGNALQ_GEMINI_RPD", 1000)
LLM_TIMEOUT_SECONDS: float = _env_float("SIGNALQ_LLM_TIMEOUT", 30)
LLM_MAX_RETRIES: int = _env_int("SIGNALQ_LLM_MAX_RETRIES", 3)

# --- Hybrid buffer ---
BUFFER_MAX_BATCH_SIZE: int = _env_int("SIGNALQ_MAX_BATCH_SIZE", 100)
BUFFER_SILENCE_SECONDS: float = _env_float("SIGNALQ_SILENCE_TIMEOUT", 180)
BUFFER_OVERLAP_SIZE: int = _env_int("SIGNALQ_OVERLAP_SIZE", 20)
BUFFER_TTL_SECONDS: int = _env_int("SIGNALQ_BUFFER_TTL", 6 * 60 * 60)
BUFFER_KEY_PREFIX: str = "buffer:"

# --- Content generation ---
PLATFORM_CHAR_LIMITS: dict[str, int] = {"linkedin": 3000, "twitter": 280}
DEFAULT_PLATFORM: str = os.getenv("SIGNALQ_DEFAULT_PLATFORM", "linkedin")

# --- Database ---
DB_POOL_SIZE: int = _env_int("SIGNALQ_DB_POOL_SIZE", 5)
DB_POOL_TIMEOUT: float = _env_float("SIGNALQ_DB_POOL_TIMEOUT", 5.0)
DB_CONNECT_TIMEOUT: float = _env_float("SIGNALQ_DB_CONNECT_TIMEOUT", 30.0)
DB_RETRY_MAX: int = _env_int("SIGNALQ_DB_RETRY_MAX", 5)
DB_RETRY_BASE_DELAY: float = _env_float("SIGNALQ_DB_RETRY_BASE_DELAY", 0.1)
DB_RETRY_MAX_DELAY: float = _env_float("SIGNALQ_DB_RETRY_MAX_DELAY", 2.0)
DB_RETRY_JITTER: float = _env_float("SIGNALQ_DB_RETRY_JITTER", 0.1)

# --- Feature Flags ---
ENABLE_INSIGHT_DETECTION: bool = _env_bool("SIGNALQ_ENABLE_INSIGHT_DETECTION", True)
ENABLE_SUMMARY_COMPRESSION: bool = _env_bool("SIGNALQ_ENABLE_SUMMARY_COMPRESSION", True)
ENABLE_CONTENT_GENERATION: bool = _env_bool("SIGNALQ_ENABLE_POST_GENERATION", True)
DRY_RUN_MODE: bool = _env_bool("SIGNALQ_DRY_RUN", False)
REQUIRE_GATE_FOR_ANALYSIS: bool = _env_bool("SIGNALQ_REQUIRE_GATE", True)
