"""
Pytest configuration for SignalQ tests

Every test gets its own SQLite database (SIGNALQ_DB_PATH) and clean
telemetry. Timers, the Gemini call and Slack delivery are replaced by the
in-process fakes below.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from signalq.conversations.models import ChatEvent, ConversationKey
from signalq.errors import DeliveryError
from signalq.infrastructure.database import init_database, reset_pool
from signalq.observability.telemetry import reset_telemetry

BASE_TIME = datetime(2025, 3, 3, 14, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Fresh schema in a temp file for every test."""
    db_path = tmp_path / "signalq.db"
    monkeypatch.setenv("SIGNALQ_DB_PATH", str(db_path))
    reset_pool()
    init_database()
    reset_telemetry()
    yield db_path
    reset_pool()


class FakeTimer:
    """Records start/cancel; fires only when the test says so."""

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    @property
    def live(self):
        return self.started and not self.cancelled

    def fire(self):
        """Run the callback even if cancelled (a timer thread that already woke up)."""
        self.function()


class FakeTimerFactory:
    def __init__(self):
        self.timers: list[FakeTimer] = []

    def __call__(self, interval, function):
        timer = FakeTimer(interval, function)
        self.timers.append(timer)
        return timer

    def live(self):
        return [t for t in self.timers if t.live]

    def fire_live(self):
        """Fire every live timer once, as if their intervals all elapsed."""
        fired = 0
        for timer in self.live():
            timer.fire()
            fired += 1
        return fired


@pytest.fixture
def timers():
    return FakeTimerFactory()


class ScriptedGenerator:
    """
    Stand-in for signalq.llm.gemini.generate_text.

    Replies are chosen by prompt kind. A reply may be a string, an exception
    instance (raised) or a list consumed one item per call.
    """

    def __init__(self, worthiness=None, content="Draft post about the insight.", summary=None):
        self.replies = {
            "worthiness": worthiness
            if worthiness is not None
            else (
                '{"worthy": true, "confidence": 0.9, "topic": "Pricing experiments",'
                ' "summary": "Annual plans converted better.", "suggested_angle": "Lead with the number."}'
            ),
            "content": content,
            "summary": summary
            if summary is not None
            else "Team debated pricing tiers? Decided to test annual discounts next quarter.",
        }
        self.calls: list[tuple[str, str]] = []

    @staticmethod
    def kind_of(prompt):
        if "content scout" in prompt:
            return "worthiness"
        if "rolling summary of a team chat" in prompt:
            return "summary"
        return "content"

    def __call__(self, prompt, timeout):
        kind = self.kind_of(prompt)
        self.calls.append((kind, prompt))
        reply = self.replies[kind]
        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def count(self, kind):
        return sum(1 for k, _ in self.calls if k == kind)


@pytest.fixture
def generator():
    return ScriptedGenerator()


class RecordingChannel:
    """DeliveryChannel that records posts and returns sequential Slack-style ts values."""

    def __init__(self, fail_with=None):
        self.posts: list[tuple[str, str, str | None]] = []
        self.fail_with = fail_with

    def post(self, channel_id, text, thread_ts=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.posts.append((channel_id, text, thread_ts))
        return f"1741010000.{len(self.posts):06d}"


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def failing_channel():
    return RecordingChannel(fail_with=DeliveryError("channel_not_found"))


class MutableClock:
    """Callable clock for aware datetimes."""

    def __init__(self, start=BASE_TIME):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def key():
    return ConversationKey(workspace_id="T001", channel_id="C001", thread_ts="1741000000.000100")


def make_event(key, user="U1", text=None, at=BASE_TIME, is_bot=False):
    return ChatEvent(
        key=key,
        user_id=user,
        text=text or "We should compare the annual plan numbers against the monthly cohort data",
        timestamp=at,
        is_bot=is_bot,
    )


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def generator_factory():
    return ScriptedGenerator


@pytest.fixture
def channel_factory():
    return RecordingChannel
