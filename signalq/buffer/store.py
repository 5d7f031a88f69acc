"""
Keyed ephemeral storage for buffer windows.

A window is an ordered list of BufferedEvent stored under a string key with a
TTL so abandoned windows expire on their own. Three implementations:

- InMemoryWindowStore: process-local, cachetools TLRUCache with per-item TTL
- RedisWindowStore: shared across processes, JSON under SET ... EX
- FallbackWindowStore: primary store plus an in-memory fallback; storage
  errors are logged and the window degrades to the fallback
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from typing import Protocol

import redis
from cachetools import TLRUCache

from signalq.config import BUFFER_KEY_PREFIX, BUFFER_TTL_SECONDS
from signalq.conversations.models import BufferedEvent
from signalq.errors import TransientIOError
from signalq.observability.logging import get_logger
from signalq.observability.telemetry import counter

logger = get_logger(__name__)

MAX_LOCAL_WINDOWS = 10_000


class WindowStore(Protocol):
    """get/set/delete by string key with a settable TTL."""

    def get(self, key: str) -> list[BufferedEvent] | None: ...

    def set(self, key: str, events: list[BufferedEvent], ttl_seconds: float) -> None: ...

    def delete(self, key: str) -> None: ...


def serialize_window(events: list[BufferedEvent]) -> str:
    return json.dumps([event.model_dump(mode="json") for event in events])


def deserialize_window(raw: str) -> list[BufferedEvent]:
    """
    Raises:
        ValueError: If the payload is not a JSON list of events
    """
    try:
        data = json.loads(raw)
        return [BufferedEvent.model_validate(item) for item in data]
    except (json.JSONDecodeError, TypeError, ValueError) as e:
        raise ValueError(f"Failed to deserialize buffer window: {e}") from e


def _expires_at(_key: str, value: tuple[list[BufferedEvent], float], now: float) -> float:
    return now + value[1]


class InMemoryWindowStore:
    """Process-local windows with per-key TTL."""

    def __init__(
        self,
        maxsize: int = MAX_LOCAL_WINDOWS,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: TLRUCache[str, tuple[list[BufferedEvent], float]] = TLRUCache(
            maxsize=maxsize, ttu=_expires_at, timer=timer
        )
        self._lock = threading.Lock()

    def get(self, key: str) -> list[BufferedEvent] | None:
        with self._lock:
            entry = self._cache.get(key)
        return list(entry[0]) if entry else None

    def set(self, key: str, events: list[BufferedEvent], ttl_seconds: float) -> None:
        with self._lock:
            self._cache[key] = (list(events), ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


class RedisWindowStore:
    """
    Windows in Redis as JSON strings.

    Raises TransientIOError on any Redis failure; wrap in FallbackWindowStore
    to keep ingestion running when Redis is unavailable.
    """

    def __init__(self, client: redis.Redis, key_prefix: str = BUFFER_KEY_PREFIX) -> None:
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = BUFFER_KEY_PREFIX) -> RedisWindowStore:
        return cls(redis.from_url(url, decode_responses=True), key_prefix=key_prefix)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def get(self, key: str) -> list[BufferedEvent] | None:
        try:
            raw = self.client.get(self._key(key))
        except redis.RedisError as e:
            raise TransientIOError(f"Redis get failed for {key}: {e}", original=e) from e
        if raw is None:
            return None
        try:
            return deserialize_window(raw)
        except ValueError as e:
            logger.warning("Discarding unreadable buffer window %s: %s", key, e)
            return None

    def set(self, key: str, events: list[BufferedEvent], ttl_seconds: float) -> None:
        try:
            self.client.set(self._key(key), serialize_window(events), ex=max(int(ttl_seconds), 1))
        except redis.RedisError as e:
            raise TransientIOError(f"Redis set failed for {key}: {e}", original=e) from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete(self._key(key))
        except redis.RedisError as e:
            raise TransientIOError(f"Redis delete failed for {key}: {e}", original=e) from e


class FallbackWindowStore:
    """
    Primary store with a process-local fallback.

    Reads prefer the primary; a window written to the fallback during an
    outage stays readable until the primary accepts a write for that key.
    """

    def __init__(self, primary: WindowStore, fallback: InMemoryWindowStore | None = None) -> None:
        self.primary = primary
        self.fallback = fallback or InMemoryWindowStore()
        self.fallback_operations = 0

    def _degrade(self, operation: str, key: str, error: TransientIOError) -> None:
        self.fallback_operations += 1
        counter("buffer.store_fallback")
        logger.error("Window store %s failed for %s, using local fallback: %s", operation, key, error)

    def get(self, key: str) -> list[BufferedEvent] | None:
        try:
            events = self.primary.get(key)
        except TransientIOError as e:
            self._degrade("get", key, e)
            return self.fallback.get(key)
        if events is None:
            return self.fallback.get(key)
        return events

    def set(self, key: str, events: list[BufferedEvent], ttl_seconds: float) -> None:
        try:
            self.primary.set(key, events, ttl_seconds)
        except TransientIOError as e:
            self._degrade("set", key, e)
            self.fallback.set(key, events, ttl_seconds)
            return
        self.fallback.delete(key)

    def delete(self, key: str) -> None:
        self.fallback.delete(key)
        try:
            self.primary.delete(key)
        except TransientIOError as e:
            self._degrade("delete", key, e)
