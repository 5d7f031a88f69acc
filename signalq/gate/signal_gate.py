"""
Signal Gate - deterministic admission filter ahead of the Gemini call.

Pure functions over a Conversation snapshot and an explicit `now`; no I/O.
Four rule families must all pass:

- Volume: message count, participants, average and total words
- Temporal: duration and velocity bounds, minimum window age
- Engagement: participants per message
- Quality: question present in the rolling summary (when required) and a
  minimum lexical uniqueness of the summary

`signal_score` is an observability number only; it never gates anything.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime

from signalq import config
from signalq.conversations.models import Conversation

DECISION_RE = re.compile(r"\b(decided|decision|will|let's|should we|propose)\b", re.IGNORECASE)

# Velocity is computed against at least six minutes so a burst does not divide by ~0
MIN_VELOCITY_HOURS = 0.1


@dataclass(frozen=True)
class GateThresholds:
    min_messages: int = config.GATE_MIN_MESSAGES
    min_participants: int = config.GATE_MIN_PARTICIPANTS
    min_avg_words: float = config.GATE_MIN_AVG_WORDS
    min_total_words: int = config.GATE_MIN_TOTAL_WORDS
    min_duration_minutes: float = config.GATE_MIN_DURATION_MINUTES
    max_duration_hours: float = config.GATE_MAX_DURATION_HOURS
    min_velocity_per_hour: float = config.GATE_MIN_VELOCITY_PER_HOUR
    max_velocity_per_hour: float = config.GATE_MAX_VELOCITY_PER_HOUR
    min_age_minutes: float = config.GATE_MIN_AGE_MINUTES
    min_engagement_ratio: float = config.GATE_MIN_ENGAGEMENT_RATIO
    requires_question: bool = config.GATE_REQUIRES_QUESTION
    min_uniqueness_ratio: float = config.GATE_MIN_UNIQUENESS_RATIO


@dataclass(frozen=True)
class GateEvaluation:
    """Per-family outcome plus the names of the individual rules that failed."""

    volume: bool
    temporal: bool
    engagement: bool
    quality: bool
    failures: tuple[str, ...] = field(default_factory=tuple)

    @property
    def passed(self) -> bool:
        return self.volume and self.temporal and self.engagement and self.quality


def _duration_hours(state: Conversation) -> float:
    return (state.last_activity_at - state.window_started_at).total_seconds() / 3600


def check_volume(state: Conversation, thresholds: GateThresholds) -> list[str]:
    failures = []
    if state.message_count < thresholds.min_messages:
        failures.append("min_messages")
    if state.participant_count < thresholds.min_participants:
        failures.append("min_participants")
    if state.message_count == 0 or state.total_word_count / state.message_count < thresholds.min_avg_words:
        failures.append("min_avg_words")
    if state.total_word_count < thresholds.min_total_words:
        failures.append("min_total_words")
    return failures


def check_temporal(state: Conversation, now: datetime, thresholds: GateThresholds) -> list[str]:
    failures = []
    hours = _duration_hours(state)
    if hours * 60 < thresholds.min_duration_minutes:
        failures.append("min_duration")
    if hours > thresholds.max_duration_hours:
        failures.append("max_duration")

    velocity = state.message_count / max(hours, MIN_VELOCITY_HOURS)
    if velocity < thresholds.min_velocity_per_hour:
        failures.append("min_velocity")
    if velocity > thresholds.max_velocity_per_hour:
        failures.append("max_velocity")

    age_minutes = (now - state.window_started_at).total_seconds() / 60
    if age_minutes < thresholds.min_age_minutes:
        failures.append("min_age")
    return failures


def check_engagement(state: Conversation, thresholds: GateThresholds) -> list[str]:
    if state.participant_count == 0 or state.message_count == 0:
        return ["engagement"]
    if state.participant_count / state.message_count < thresholds.min_engagement_ratio:
        return ["engagement"]
    return []


def uniqueness_ratio(text: str) -> float:
    words = text.lower().split()
    if not words:
        return 0.0
    return len(set(words)) / len(words)


def check_quality(state: Conversation, thresholds: GateThresholds) -> list[str]:
    failures = []
    summary = state.rolling_summary or ""
    if thresholds.requires_question and "?" not in summary:
        failures.append("requires_question")
    if summary and uniqueness_ratio(summary) < thresholds.min_uniqueness_ratio:
        failures.append("min_uniqueness")
    return failures


def evaluate(
    state: Conversation,
    now: datetime,
    thresholds: GateThresholds | None = None,
) -> GateEvaluation:
    """
    Evaluate every rule family for a conversation snapshot.

    Args:
        state: Conversation snapshot
        now: Evaluation time (window age is measured against it)
        thresholds: Defaults to the configured thresholds

    Returns:
        GateEvaluation with per-family results and failed rule names
    """
    thresholds = thresholds or GateThresholds()
    volume = check_volume(state, thresholds)
    temporal = check_temporal(state, now, thresholds)
    engagement = check_engagement(state, thresholds)
    quality = check_quality(state, thresholds)
    return GateEvaluation(
        volume=not volume,
        temporal=not temporal,
        engagement=not engagement,
        quality=not quality,
        failures=tuple(volume + temporal + engagement + quality),
    )


def passes(state: Conversation, now: datetime, thresholds: GateThresholds | None = None) -> bool:
    return evaluate(state, now, thresholds).passed


def signal_score(state: Conversation) -> int:
    """Bounded 0-100 score from volume, span, engagement and language cues."""
    score = 0.0
    score += min(state.message_count * 2, 20)
    score += min(state.participant_count * 5, 10)
    score += min(max(_duration_hours(state), 0.0) * 5, 20)

    if state.participant_count > 0 and state.message_count > 0:
        score += min(state.participant_count / state.message_count * 100, 30)

    summary = state.rolling_summary or ""
    if "?" in summary:
        score += 10
    if DECISION_RE.search(summary):
        score += 10

    return min(round(score), 100)
