"""
Gemini Model Manager - shared model instance and a single raw call.

Supports two backends:
  1. Vertex AI SDK (production) - uses GOOGLE_CLOUD_PROJECT + service account
  2. google-generativeai (local dev) - uses GOOGLE_API_KEY

`generate_text` performs one call and converts provider exceptions into the
builtin transient types (TimeoutError, ConnectionError, OSError) that the
analysis client retries on. Retry and rate limiting live in
signalq.llm.client.
"""

from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from functools import lru_cache
from typing import Any

from signalq.infrastructure.settings import (
    GEMINI_LOCATION,
    GEMINI_MAX_TOKENS,
    GEMINI_MODEL,
    GEMINI_TEMPERATURE,
    GOOGLE_CLOUD_PROJECT,
)
from signalq.observability.logging import get_logger
from signalq.observability.telemetry import counter

logger = get_logger(__name__)

# "vertexai" or "genai" once a model has been created
_backend: str | None = None


class GeminiInitializationError(RuntimeError):
    """Raised when Gemini model cannot be initialized."""


@lru_cache(maxsize=1)
def get_gemini_model() -> Any:
    """
    Get or create shared Gemini model instance.

    Uses Vertex AI when GOOGLE_CLOUD_PROJECT is set and the SDK is installed,
    otherwise google-generativeai with GOOGLE_API_KEY.

    Returns:
        GenerativeModel: Shared Gemini model

    Raises:
        GeminiInitializationError: If model cannot be initialized
    """
    global _backend
    project = os.getenv("GOOGLE_CLOUD_PROJECT") or GOOGLE_CLOUD_PROJECT
    location = os.getenv("GEMINI_LOCATION") or GEMINI_LOCATION or "us-central1"

    if project:
        try:
            import vertexai
            from vertexai.generative_models import GenerativeModel

            vertexai.init(project=project, location=location)
            model = GenerativeModel(GEMINI_MODEL)
            _backend = "vertexai"
            logger.info(
                "Initialized Gemini model (Vertex AI): project=%s, location=%s, model=%s",
                project,
                location,
                GEMINI_MODEL,
            )
            return model
        except ImportError:
            logger.info("Vertex AI SDK not installed, trying google-generativeai fallback")
        except Exception as e:
            logger.error("Failed to initialize Vertex AI model: %s", e)
            raise GeminiInitializationError(f"Failed to initialize Gemini: {e}") from e

    api_key = os.getenv("GOOGLE_API_KEY")
    if not api_key:
        raise GeminiInitializationError(
            "Neither GOOGLE_CLOUD_PROJECT (Vertex AI) nor GOOGLE_API_KEY is configured."
        )

    try:
        import google.generativeai as genai
    except ImportError as e:
        raise GeminiInitializationError(
            "No Gemini SDK available. Install google-cloud-aiplatform or google-generativeai."
        ) from e

    try:
        genai.configure(api_key=api_key)
        model = genai.GenerativeModel(GEMINI_MODEL)
    except Exception as e:
        logger.error("Failed to initialize Gemini model: %s", e)
        raise GeminiInitializationError(f"Failed to initialize Gemini: {e}") from e

    _backend = "genai"
    logger.info("Initialized Gemini model (google-generativeai): model=%s", GEMINI_MODEL)
    return model


@lru_cache(maxsize=1)
def _get_call_executor() -> ThreadPoolExecutor:
    """Shared pool for Vertex AI calls, whose SDK takes no request timeout."""
    return ThreadPoolExecutor(max_workers=4, thread_name_prefix="gemini_")


def _call_with_deadline(model: Any, prompt: str, generation_config: dict, timeout: float) -> Any:
    future = _get_call_executor().submit(
        model.generate_content, prompt, generation_config=generation_config
    )
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError as e:
        # The worker keeps running; its late reply is discarded
        future.cancel()
        counter("llm.timeout")
        logger.warning("LLM call exceeded %ss deadline", timeout)
        raise TimeoutError(f"LLM call timed out after {timeout}s") from e


def clear_model_cache() -> None:
    """Clear the cached model instance."""
    global _backend
    get_gemini_model.cache_clear()
    _backend = None
    logger.info("Cleared Gemini model cache")


def generate_text(
    prompt: str,
    timeout: float,
    max_output_tokens: int | None = None,
    temperature: float | None = None,
) -> str:
    """
    Send one prompt to Gemini and return the reply text.

    Args:
        prompt: Full prompt text
        timeout: Per-request deadline in seconds
        max_output_tokens: Override GEMINI_MAX_TOKENS
        temperature: Override GEMINI_TEMPERATURE

    Returns:
        The model's response text

    Raises:
        TimeoutError: Deadline exceeded (retryable)
        ConnectionError: Service unavailable or internal error (retryable)
        OSError: Provider quota exhausted (retryable)
        GeminiInitializationError: No usable backend
    """
    from google.api_core.exceptions import (
        DeadlineExceeded,
        InternalServerError,
        ResourceExhausted,
        ServiceUnavailable,
    )

    model = get_gemini_model()
    generation_config = {
        "temperature": GEMINI_TEMPERATURE if temperature is None else temperature,
        "max_output_tokens": max_output_tokens or GEMINI_MAX_TOKENS,
    }

    try:
        if _backend == "genai":
            response = model.generate_content(
                prompt,
                generation_config=generation_config,
                request_options={"timeout": timeout},
            )
        else:
            response = _call_with_deadline(model, prompt, generation_config, timeout)
        return response.text
    except DeadlineExceeded as e:
        counter("llm.timeout")
        logger.warning("LLM call timed out after %ss", timeout)
        raise TimeoutError(f"LLM call timed out: {e}") from e
    except ServiceUnavailable as e:
        counter("llm.service_unavailable")
        logger.warning("LLM service unavailable, will retry: %s", e)
        raise ConnectionError(f"LLM service unavailable: {e}") from e
    except ResourceExhausted as e:
        counter("llm.provider_rate_limited")
        logger.warning("LLM provider quota exhausted (429), will retry: %s", e)
        raise OSError(f"LLM rate limited: {e}") from e
    except InternalServerError as e:
        counter("llm.internal_error")
        logger.warning("LLM internal error (500), will retry: %s", e)
        raise ConnectionError(f"LLM internal error: {e}") from e
