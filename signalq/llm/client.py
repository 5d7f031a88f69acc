"""
Analysis Client - rate-limited, retried Gemini calls for the insight pipeline.

Three call shapes:
- check_worthiness: cheap phase-1 filter, degrades to "not worthy"
- generate_content: phase-2 post drafting, degrades to None
- compress_summary: rolling-summary merge, raises so the compressor can fall
  back to emergency truncation

Every attempt goes through the shared RateLimiter first. RateLimitedError is
never retried here; it propagates so the caller can schedule its own retry.
Transient provider failures (TimeoutError, ConnectionError, OSError) are
retried with exponential backoff via tenacity.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from pydantic import BaseModel, Field, ValidationError
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from signalq.config import (
    COMPRESS_MAX_RETRIES,
    COMPRESS_MAX_SUMMARY_WORDS,
    DEFAULT_PLATFORM,
    INSIGHT_CONFIDENCE_THRESHOLD,
    LLM_MAX_RETRIES,
    LLM_TIMEOUT_SECONDS,
    PLATFORM_CHAR_LIMITS,
    WORTHINESS_MAX_RETRIES,
)
from signalq.errors import LLMError, RateLimitedError
from signalq.infrastructure.rate_limiter import RateLimiter, RateLimitStatus
from signalq.infrastructure.settings import GEMINI_MODEL
from signalq.llm import prompts
from signalq.llm.extraction import extract_json
from signalq.llm.gemini import generate_text
from signalq.observability.logging import get_logger
from signalq.observability.telemetry import counter, log_event, time_block

logger = get_logger(__name__)

TRANSIENT_ERRORS = (TimeoutError, ConnectionError, OSError)

# (prompt, timeout_seconds) -> reply text
Generator = Callable[[str, float], str]


class WorthinessSchema(BaseModel):
    """Schema for the worthiness reply. Missing confidence counts as zero."""

    worthy: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    topic: str = ""
    summary: str = ""
    suggested_angle: str = ""


@dataclass(frozen=True)
class WorthinessResult:
    """Phase-1 verdict after the client-side confidence threshold."""

    worthy: bool
    confidence: float
    topic: str
    summary: str
    suggested_angle: str
    reason: str | None = None

    @classmethod
    def not_worthy(cls, reason: str) -> WorthinessResult:
        """Factory for the conservative default."""
        return cls(
            worthy=False,
            confidence=0.0,
            topic="",
            summary="",
            suggested_angle="",
            reason=reason,
        )


def truncate_words(text: str, max_words: int) -> str:
    words = text.split()
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words]) + "..."


def truncate_chars(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


class AnalysisClient:
    """
    Gemini wrapper with rate-limit admission, timeout and bounded retry.

    Args:
        rate_limiter: Shared limiter consulted before every attempt
        generator: Raw call, defaults to signalq.llm.gemini.generate_text
        timeout: Per-request deadline in seconds
        max_retries: Default attempt count for request()
        confidence_threshold: Worthiness results below this are forced not worthy
        retry_wait: tenacity wait strategy between attempts
        model_name: Recorded on insights for traceability
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        generator: Generator = generate_text,
        timeout: float = LLM_TIMEOUT_SECONDS,
        max_retries: int = LLM_MAX_RETRIES,
        confidence_threshold: float = INSIGHT_CONFIDENCE_THRESHOLD,
        retry_wait: wait_base | None = None,
        model_name: str = GEMINI_MODEL,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.generator = generator
        self.timeout = timeout
        self.max_retries = max_retries
        self.confidence_threshold = confidence_threshold
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)
        self.model_name = model_name

    def request(self, prompt: str, max_attempts: int | None = None) -> str:
        """
        Send a prompt with rate limiting, timeout and retry.

        Args:
            prompt: Full prompt text
            max_attempts: Attempt budget, defaults to self.max_retries

        Returns:
            Model reply text

        Raises:
            RateLimitedError: Local limiter refused an attempt (not retried)
            LLMError: Attempts exhausted or a non-transient failure
        """
        attempts = max_attempts or self.max_retries
        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=self.retry_wait,
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=True,
        )

        try:
            with time_block("llm.request"):
                for attempt in retrying:
                    with attempt:
                        self.rate_limiter.attempt()
                        counter("llm.requests")
                        return self.generator(prompt, self.timeout)
        except RateLimitedError:
            raise
        except TRANSIENT_ERRORS as e:
            counter("llm.retries_exhausted")
            logger.error("LLM request failed after %d attempts: %s", attempts, e)
            raise LLMError(f"LLM request failed after {attempts} attempts: {e}", original=e) from e
        except Exception as e:
            counter("llm.errors")
            logger.error("LLM request failed: %s", e)
            raise LLMError(f"LLM request failed: {e}", original=e) from e

        raise LLMError("LLM request produced no attempts")

    def check_worthiness(self, text: str) -> WorthinessResult:
        """
        Phase-1 filter: is this conversation worth drafting a post for?

        Malformed replies and LLM failures degrade to a not-worthy result.
        Results below the confidence threshold are forced not worthy.

        Raises:
            RateLimitedError: So the pipeline can defer the window
        """
        try:
            reply = self.request(prompts.worthiness_prompt(text), max_attempts=WORTHINESS_MAX_RETRIES)
        except LLMError as e:
            counter("llm.worthiness.failed")
            logger.warning("Worthiness check failed, treating as not worthy: %s", e)
            return WorthinessResult.not_worthy("llm_error")

        raw = extract_json(reply, fallback={"worthy": False})
        try:
            parsed = WorthinessSchema.model_validate(raw)
        except ValidationError as e:
            counter("llm.worthiness.malformed")
            logger.warning("Worthiness reply failed validation: %s", e.errors()[:1])
            return WorthinessResult.not_worthy("malformed_response")

        worthy = parsed.worthy
        reason = None
        if worthy and parsed.confidence < self.confidence_threshold:
            worthy = False
            reason = "below_confidence_threshold"
            counter("llm.worthiness.below_threshold")
            logger.debug(
                "Confidence %.2f below threshold %.2f, forcing not worthy",
                parsed.confidence,
                self.confidence_threshold,
            )

        log_event("llm.worthiness", worthy=worthy, confidence=parsed.confidence)
        return WorthinessResult(
            worthy=worthy,
            confidence=parsed.confidence,
            topic=parsed.topic,
            summary=parsed.summary,
            suggested_angle=parsed.suggested_angle,
            reason=reason,
        )

    def generate_content(
        self,
        topic: str,
        summary: str,
        raw_text: str = "",
        platform: str = DEFAULT_PLATFORM,
    ) -> str | None:
        """
        Phase-2 post drafting, truncated to the platform's character ceiling.

        Returns:
            Post text, or None when generation fails or is rate limited

        Raises:
            ValueError: Unknown platform
        """
        if platform not in PLATFORM_CHAR_LIMITS:
            raise ValueError(f"Unknown platform: {platform}")
        limit = PLATFORM_CHAR_LIMITS[platform]

        try:
            reply = self.request(prompts.content_prompt(topic, summary, raw_text, platform, limit))
        except (LLMError, RateLimitedError) as e:
            counter("llm.content.failed")
            logger.error("Content generation failed: %s", e)
            return None

        content = reply.strip()
        if not content:
            return None
        if len(content) > limit:
            counter("llm.content.truncated")
            logger.info("Generated content truncated from %d to %d chars", len(content), limit)
            content = truncate_chars(content, limit)
        return content

    def compress_summary(
        self,
        current_summary: str,
        pending_text: str,
        max_words: int = COMPRESS_MAX_SUMMARY_WORDS,
    ) -> str:
        """
        Merge pending text into the rolling summary.

        Raises:
            RateLimitedError: Limiter refused the call
            LLMError: Call failed or returned an empty summary
        """
        reply = self.request(
            prompts.summary_compression_prompt(current_summary, pending_text, max_words),
            max_attempts=COMPRESS_MAX_RETRIES,
        )
        compressed = reply.strip()
        if not compressed:
            raise LLMError("Summary compression returned empty text")

        if len(compressed.split()) > max_words:
            logger.warning("Summary exceeded %d words, truncating", max_words)
            compressed = truncate_words(compressed, max_words)
        return compressed

    def get_stats(self) -> RateLimitStatus:
        return self.rate_limiter.get_stats()
