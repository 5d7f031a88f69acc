"""Fixtures wiring a full pipeline against fakes (timers, Gemini, Slack)."""

from __future__ import annotations

from datetime import datetime

import pytest
from tenacity import wait_none

from signalq.buffer.manager import BufferManager
from signalq.buffer.store import InMemoryWindowStore
from signalq.conversations.models import ChatEvent
from signalq.conversations.tracker import ConversationTracker
from signalq.gate.signal_gate import GateThresholds
from signalq.infrastructure.rate_limiter import RateLimiter
from signalq.llm.client import AnalysisClient
from signalq.notify.notifier import Notifier
from signalq.pipeline.compressor import SummaryCompressor
from signalq.pipeline.insight import InsightPipeline

THRESHOLDS = GateThresholds(
    min_messages=6,
    min_participants=2,
    min_avg_words=8,
    min_total_words=50,
    min_duration_minutes=5,
    max_duration_hours=6,
    min_velocity_per_hour=1,
    max_velocity_per_hour=100,
    min_age_minutes=5,
    min_engagement_ratio=0.25,
    requires_question=True,
    min_uniqueness_ratio=0.4,
)

TALK = [
    "I think annual pricing could lift retention for the smaller teams we onboard",
    "The cohort data from last quarter shows annual buyers churn far less often",
    "Should we test a discount on annual plans before the next pricing review",
    "Finance wants to see the payback period before we commit to any discount",
    "We could run the experiment on new signups only and keep existing plans",
    "That keeps the blast radius small and gives us clean data within six weeks",
    "Marketing can prepare the landing page copy once we agree on the discount",
    "Let's propose fifteen percent and revisit after the first month of results",
    "Support should know about the change so they can answer billing questions",
    "I will write up the plan and share it with the leadership team tomorrow",
]


class EpochClock:
    """Epoch-seconds clock for the rate limiter."""

    def __init__(self):
        self.now = datetime(2025, 3, 3, 12, 0).timestamp()

    def __call__(self):
        return self.now


class Harness:
    """A pipeline plus the fakes around it; records every window outcome."""

    def __init__(
        self,
        generator,
        channel,
        timers,
        clock,
        key,
        thresholds=THRESHOLDS,
        max_per_minute=100,
        max_batch_size=100,
        overlap_size=20,
        dry_run=False,
        **pipeline_kwargs,
    ):
        self.generator = generator
        self.channel = channel
        self.timers = timers
        self.clock = clock
        self.key = key
        self.limiter_clock = EpochClock()
        self.limiter = RateLimiter(max_per_minute=max_per_minute, max_per_day=1000, clock=self.limiter_clock)
        self.client = AnalysisClient(self.limiter, generator=generator, retry_wait=wait_none())
        self.outcomes = []

        self.pipeline = InsightPipeline(
            tracker=ConversationTracker(thresholds=thresholds),
            compressor=SummaryCompressor(self.client, clock=clock),
            client=self.client,
            notifier=Notifier(channel, dry_run=dry_run, clock=clock),
            timer_factory=timers,
            clock=clock,
            **pipeline_kwargs,
        )
        self.buffer = BufferManager(
            InMemoryWindowStore(),
            self._on_window,
            max_batch_size=max_batch_size,
            silence_seconds=180,
            overlap_size=overlap_size,
            timer_factory=timers,
            clock=clock,
        )
        self.pipeline.attach_buffer(self.buffer)

    def _on_window(self, signal):
        self.outcomes.append(self.pipeline.handle_window(signal))

    def say(self, user, text, key=None, is_bot=False):
        """One chat message, one minute after the previous one."""
        self.clock.advance(minutes=1)
        event = ChatEvent(
            key=key or self.key,
            user_id=user,
            text=text,
            timestamp=self.clock.now,
            is_bot=is_bot,
        )
        return self.pipeline.process_event(event)

    def discuss(self, count=8, start=0):
        users = ["U1", "U2", "U3"]
        results = []
        for i in range(start, start + count):
            results.append(self.say(users[i % len(users)], TALK[i % len(TALK)]))
        return results

    def go_quiet(self):
        """Let the silence timer for every open window elapse."""
        self.clock.advance(minutes=3)
        return self.timers.fire_live()

    @property
    def last(self):
        return self.outcomes[-1]


@pytest.fixture
def gate_thresholds():
    return THRESHOLDS


@pytest.fixture
def harness_factory(generator, channel, timers, clock, key):
    def _make(**kwargs):
        kwargs.setdefault("generator", generator)
        kwargs.setdefault("channel", channel)
        return Harness(timers=timers, clock=clock, key=key, **kwargs)

    return _make


@pytest.fixture
def harness(harness_factory):
    return harness_factory()
