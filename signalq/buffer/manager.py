"""
Hybrid buffer manager - per-conversation windows closed by silence or volume.

Each conversation key owns one logical window in the WindowStore. Two
triggers close it:

- Volume: the window reaches `max_batch_size` events. Fires synchronously
  inside ingest(); the pending silence timer is cancelled; the window is cut
  down to its last `overlap_size` events for context continuity.
- Silence: no event for `silence_seconds` after the most recent one. A
  debounced per-key timer; every ingest cancels and replaces it atomically.
  The window is cleared.

The close handler receives the full pre-trigger window after the store has
been updated, outside the per-key lock. An empty window at either trigger is
a no-op.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from signalq.config import (
    BUFFER_MAX_BATCH_SIZE,
    BUFFER_OVERLAP_SIZE,
    BUFFER_SILENCE_SECONDS,
    BUFFER_TTL_SECONDS,
)
from signalq.buffer.store import WindowStore
from signalq.conversations.models import BufferedEvent, ConversationKey, TriggerType, utc_now
from signalq.observability.logging import get_logger
from signalq.observability.telemetry import counter, log_event

logger = get_logger(__name__)


class CancellableTimer(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], CancellableTimer]


def daemon_timer(interval: float, function: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(interval, function)
    timer.daemon = True
    return timer


@dataclass(frozen=True)
class TriggerSignal:
    """A closed window handed to the insight pipeline."""

    key: ConversationKey
    trigger: TriggerType
    events: tuple[BufferedEvent, ...]
    closed_at: datetime = field(default_factory=utc_now)

    @property
    def size(self) -> int:
        return len(self.events)


WindowHandler = Callable[[TriggerSignal], Any]


@dataclass
class BufferStats:
    messages_buffered: int = 0
    batches: int = 0
    silence_triggers: int = 0
    volume_triggers: int = 0
    empty_triggers: int = 0
    handler_errors: int = 0


class BufferManager:
    """
    Args:
        store: Window storage (wrap remote stores in FallbackWindowStore)
        on_window_closed: Called with each TriggerSignal
        max_batch_size: Volume trigger threshold
        silence_seconds: Quiet period for the silence trigger
        overlap_size: Events kept after a volume trigger
        ttl_seconds: Window TTL in the store
        timer_factory: Builds silence timers (threading.Timer by default)
        clock: Time source for TriggerSignal.closed_at
    """

    def __init__(
        self,
        store: WindowStore,
        on_window_closed: WindowHandler,
        max_batch_size: int = BUFFER_MAX_BATCH_SIZE,
        silence_seconds: float = BUFFER_SILENCE_SECONDS,
        overlap_size: int = BUFFER_OVERLAP_SIZE,
        ttl_seconds: float = BUFFER_TTL_SECONDS,
        timer_factory: TimerFactory = daemon_timer,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be positive")
        if not 0 <= overlap_size < max_batch_size:
            raise ValueError("overlap_size must be between 0 and max_batch_size - 1")

        self.store = store
        self.on_window_closed = on_window_closed
        self.max_batch_size = max_batch_size
        self.silence_seconds = silence_seconds
        self.overlap_size = overlap_size
        self.ttl_seconds = ttl_seconds
        self.timer_factory = timer_factory
        self.clock = clock

        self.stats = BufferStats()
        self._key_locks: dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()
        self._timers: dict[str, CancellableTimer] = {}
        self._timers_lock = threading.Lock()
        self._closed = False

    def _lock_for(self, key: str) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def _cancel_timer(self, key: str) -> None:
        with self._timers_lock:
            timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _arm_timer(self, key: ConversationKey) -> None:
        """Cancel-and-replace the silence timer for `key`."""
        store_key = key.as_string()
        holder: list[CancellableTimer] = []

        def fire() -> None:
            self._on_silence(key, holder[0])

        timer = self.timer_factory(self.silence_seconds, fire)
        holder.append(timer)

        with self._timers_lock:
            if self._closed:
                return
            previous = self._timers.get(store_key)
            self._timers[store_key] = timer
            if previous is not None:
                previous.cancel()
            timer.start()

    def ingest(self, key: ConversationKey, event: BufferedEvent) -> TriggerSignal | None:
        """
        Append an event to the window for `key`.

        Args:
            key: Conversation key
            event: Event to buffer

        Returns:
            TriggerSignal when this event hit the volume trigger, else None

        Raises:
            RuntimeError: After shutdown()

        Side Effects:
            - Writes the window to the store
            - Re-arms the silence timer, or fires the volume trigger and
              invokes the close handler synchronously
        """
        if self._closed:
            raise RuntimeError("BufferManager has been shut down")

        store_key = key.as_string()
        signal = None
        with self._lock_for(store_key):
            window = self.store.get(store_key) or []
            window.append(event)
            self.stats.messages_buffered += 1

            if len(window) >= self.max_batch_size:
                self._cancel_timer(store_key)
                overlap = window[-self.overlap_size :] if self.overlap_size else []
                if overlap:
                    self.store.set(store_key, overlap, self.ttl_seconds)
                else:
                    self.store.delete(store_key)
                signal = TriggerSignal(
                    key=key,
                    trigger=TriggerType.VOLUME,
                    events=tuple(window),
                    closed_at=self.clock(),
                )
                self.stats.volume_triggers += 1
            else:
                self.store.set(store_key, window, self.ttl_seconds)
                self._arm_timer(key)

        if signal is not None:
            logger.info("Volume trigger for %s at %d events", store_key, signal.size)
            self._dispatch(signal)
        return signal

    def _on_silence(self, key: ConversationKey, timer: CancellableTimer) -> None:
        store_key = key.as_string()
        # Key lock before timers lock, the same order as ingest()
        with self._lock_for(store_key):
            with self._timers_lock:
                if self._timers.get(store_key) is not timer:
                    # Superseded by a newer timer or cancelled
                    return
                del self._timers[store_key]
                if self._closed:
                    return

            window = self.store.get(store_key) or []
            if not window:
                self.stats.empty_triggers += 1
                logger.debug("Silence trigger for %s found an empty window", store_key)
                return
            self.store.delete(store_key)
            self.stats.silence_triggers += 1

        signal = TriggerSignal(
            key=key,
            trigger=TriggerType.SILENCE,
            events=tuple(window),
            closed_at=self.clock(),
        )
        logger.info("Silence trigger for %s with %d events", store_key, signal.size)
        self._dispatch(signal)

    def _dispatch(self, signal: TriggerSignal) -> None:
        self.stats.batches += 1
        counter(f"buffer.trigger.{signal.trigger.value}")
        log_event(
            "buffer.window_closed",
            key=signal.key.as_string(),
            trigger=signal.trigger.value,
            size=signal.size,
        )
        try:
            self.on_window_closed(signal)
        except Exception:
            self.stats.handler_errors += 1
            counter("buffer.handler_errors")
            logger.exception("Window handler failed for %s", signal.key.as_string())

    def get_window(self, key: ConversationKey) -> list[BufferedEvent]:
        return self.store.get(key.as_string()) or []

    def clear(self, key: ConversationKey) -> None:
        """Drop the window and its silence timer."""
        store_key = key.as_string()
        self._cancel_timer(store_key)
        with self._lock_for(store_key):
            self.store.delete(store_key)

    def active_timers(self) -> int:
        with self._timers_lock:
            return len(self._timers)

    def get_stats(self) -> dict[str, int]:
        return {
            "messages_buffered": self.stats.messages_buffered,
            "batches": self.stats.batches,
            "silence_triggers": self.stats.silence_triggers,
            "volume_triggers": self.stats.volume_triggers,
            "empty_triggers": self.stats.empty_triggers,
            "handler_errors": self.stats.handler_errors,
            "active_timers": self.active_timers(),
        }

    def shutdown(self) -> None:
        """
        Cancel every outstanding silence timer.

        Side Effects:
            - Further ingest() calls raise RuntimeError
            - Timers that already started running return without dispatching
        """
        with self._timers_lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        logger.info("Buffer manager shut down, cancelled %d silence timers", len(timers))
