"""
Best-effort structured extraction from free-text model output.

Gemini replies are usually JSON but often arrive wrapped in prose or code
fences, or with small syntax slips. `extract_json` recovers the first object
it can and otherwise returns the caller's fallback. It never raises: an
unparsable reply is a degraded result, not an error.
"""

from __future__ import annotations

import json
import re
from typing import Any

from signalq.errors import MalformedResponseError
from signalq.observability.logging import get_logger
from signalq.observability.telemetry import counter

logger = get_logger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def find_balanced_object(text: str) -> str | None:
    """
    Return the first balanced {...} span in `text`.

    Braces inside JSON string literals (including escaped quotes) are ignored.
    Returns None when there is no opening brace or it is never closed.
    """
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]

    return None


def _repair(json_text: str) -> str:
    """Fix missing commas between fields and trailing commas."""
    repaired = re.sub(r'"\s*\n\s*"', '",\n"', json_text)
    repaired = re.sub(r"(\d+\.?\d*|true|false|null)\s*\n\s*\"", r'\1,\n"', repaired)
    repaired = re.sub(r'\}\s*\n\s*"', '},\n"', repaired)
    repaired = re.sub(r'\]\s*\n\s*"', '],\n"', repaired)
    return re.sub(r",\s*([\}\]])", r"\1", repaired)


def parse_json_object(text: str) -> dict[str, Any]:
    """
    Parse the first JSON object in a model reply.

    Raises:
        MalformedResponseError: No object could be recovered
    """
    if not text:
        raise MalformedResponseError("empty response")

    cleaned = strip_code_fences(text)
    candidate = find_balanced_object(cleaned)
    if candidate is None:
        raise MalformedResponseError("no balanced JSON object in response")

    for attempt in (candidate, _repair(candidate)):
        try:
            parsed = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            if attempt is not candidate:
                logger.info("JSON repair succeeded")
            return parsed

    raise MalformedResponseError("JSON object could not be parsed after repair")


def extract_json(text: str | None, fallback: dict[str, Any]) -> dict[str, Any]:
    """
    Extract the first JSON object from `text`, or return `fallback`.

    Args:
        text: Raw model reply
        fallback: Value returned (as a shallow copy) when nothing parses

    Returns:
        Parsed object or a copy of the fallback
    """
    try:
        return parse_json_object(text or "")
    except MalformedResponseError as e:
        counter("llm.extraction_fallback")
        logger.warning("JSON extraction fell back to default: %s (preview=%r)", e, (text or "")[:100])
        return dict(fallback)
