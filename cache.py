"""Recommendation cache with per-key single-flight refresh.

Concurrent callers asking for the same stale or missing key share one
generator invocation. Failures and timeouts never raise: the previous entry
(if any) is served flagged as stale and the error is attached to the result
and published on the event stream.
"""

import copy
import dataclasses
import json
import logging
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

import events
from errors import ConcurrencyTimeout, EngineError, GenerationCancelled, GenerationFailure
from models import CacheEntry

logger = logging.getLogger(__name__)

CACHE_PREFIX = "cache:"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KeyState(str, Enum):
    EMPTY = "empty"
    PENDING = "pending"
    FRESH = "fresh"
    STALE = "stale"


@dataclass(frozen=True)
class CacheResult:
    key: str
    payload: Any
    stale: bool
    generated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    refreshed: bool = False
    error: Optional[EngineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def copy(self) -> "CacheResult":
        return dataclasses.replace(self, payload=copy.deepcopy(self.payload))


class _Flight:
    """One in-progress generation for a key."""

    def __init__(self):
        self.done = threading.Event()
        self.result: Optional[CacheResult] = None
        self.future: Optional[Future] = None


class RecommendationCache:
    """Keyed cache of generated payloads, persisted to a key-value store."""

    def __init__(self, store, ttl: timedelta = timedelta(hours=24),
                 stale_grace: timedelta = timedelta(days=7),
                 timeout: Optional[float] = None, max_workers: int = 4,
                 clock: Callable[[], datetime] = _utcnow,
                 event_stream: Optional[events.EventStream] = None):
        self.store = store
        self.ttl = ttl
        self.stale_grace = stale_grace
        self.timeout = timeout
        self.clock = clock
        self.events = event_stream or events.EventStream()
        self._entries: dict[str, CacheEntry] = {}
        self._flights: dict[str, _Flight] = {}
        self._errors: dict[str, EngineError] = {}
        self._guard = threading.Lock()
        self._workers = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="generate")
        self._dispatcher = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="refresh")
        self._load()

    # ── Persistence ────────────────────────────────────────────

    def _load(self):
        for store_key in self.store.keys(CACHE_PREFIX):
            raw = self.store.get(store_key)
            if raw is None:
                continue
            try:
                entry = CacheEntry.from_dict(json.loads(raw.decode("utf-8")))
            except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Dropping unreadable cache entry {store_key}: {e}")
                self.store.delete(store_key)
                continue
            self._entries[entry.key] = entry
        if self._entries:
            logger.info(f"Loaded {len(self._entries)} cache entries")

    def _write(self, entry: CacheEntry):
        self.store.put(CACHE_PREFIX + entry.key, json.dumps(entry.to_dict()).encode("utf-8"))
        self._entries[entry.key] = entry

    def _drop(self, key: str):
        self._entries.pop(key, None)
        self.store.delete(CACHE_PREFIX + key)

    # ── Reads ──────────────────────────────────────────────────

    def _live_entry(self, key: str, now: datetime) -> Optional[CacheEntry]:
        """The entry for key, evicting it first if it is past its grace period."""
        entry = self._entries.get(key)
        if entry is not None and now >= entry.expires_at + self.stale_grace:
            logger.info(f"Evicting expired cache entry {key}")
            self._drop(key)
            return None
        return entry

    def peek(self, key: str) -> Optional[CacheEntry]:
        """A copy of the entry for key, fresh or stale, without refreshing."""
        with self._guard:
            entry = self._live_entry(key, self.clock())
        if entry is None:
            return None
        return dataclasses.replace(entry, payload=copy.deepcopy(entry.payload))

    def get(self, key: str) -> Optional[CacheResult]:
        entry = self.peek(key)
        if entry is None:
            return None
        return CacheResult(key, entry.payload, entry.is_stale(self.clock()),
                           entry.generated_at, entry.expires_at)

    def state(self, key: str) -> KeyState:
        with self._guard:
            if key in self._flights:
                return KeyState.PENDING
            now = self.clock()
            entry = self._live_entry(key, now)
        if entry is None:
            return KeyState.EMPTY
        return KeyState.STALE if entry.is_stale(now) else KeyState.FRESH

    def keys(self) -> list[str]:
        with self._guard:
            return sorted(set(self._entries) | set(self._flights))

    def errors(self) -> dict[str, EngineError]:
        """Last refresh error per key; cleared by the next successful refresh."""
        with self._guard:
            return dict(self._errors)

    # ── Refresh ────────────────────────────────────────────────

    def get_or_refresh(self, key: str, generator: Callable[[], Any],
                       force: bool = False) -> CacheResult:
        """Serve a fresh entry, or join/start the single refresh for key."""
        now = self.clock()
        with self._guard:
            entry = self._live_entry(key, now)
            if entry is not None and not entry.is_stale(now) and not force:
                return CacheResult(key, copy.deepcopy(entry.payload), False,
                                   entry.generated_at, entry.expires_at)
            flight = self._flights.get(key)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flights[key] = flight

        if leader:
            logger.debug(f"Refreshing cache key {key}")
            future = self._workers.submit(generator)
            flight.future = future
            future.add_done_callback(lambda f: self._on_generated(key, flight, f))
            if not flight.done.wait(self.timeout):
                error = ConcurrencyTimeout(key, self.timeout)
                if self._finish(key, flight, error):
                    future.cancel()
                    logger.warning(f"Cache refresh timed out: {error}")
                    self.events.publish(events.GENERATION_TIMEOUT, {"key": key, "error": str(error)})
        else:
            flight.done.wait()
        return flight.result.copy()

    def submit_refresh(self, key: str, generator: Callable[[], Any],
                       force: bool = True) -> Future:
        """Dispatch a refresh as an independent unit of work."""
        return self._dispatcher.submit(self.get_or_refresh, key, generator, force)

    def _on_generated(self, key: str, flight: _Flight, future: Future):
        if flight.done.is_set():
            logger.info(f"Discarding late result for cache key {key}")
            return
        try:
            payload = future.result()
        except CancelledError:
            return
        except Exception as e:
            error = GenerationFailure(key, e)
            if self._finish(key, flight, error):
                logger.warning(f"Cache refresh failed: {error}")
                self.events.publish(events.GENERATION_FAILED, {"key": key, "error": str(e)})
            return

        now = self.clock()
        entry = CacheEntry(key, now, now + self.ttl, payload)
        with self._guard:
            if flight.done.is_set():
                logger.info(f"Discarding late result for cache key {key}")
                return
            try:
                self._write(entry)
            except Exception as e:
                # Serialization or store failure; the flight must still settle.
                error = GenerationFailure(key, e)
                self._settle(key, flight, error, now)
            else:
                error = None
                self._errors.pop(key, None)
                flight.result = CacheResult(key, entry.payload, False, entry.generated_at,
                                            entry.expires_at, refreshed=True)
                self._release(key, flight)
        if error is not None:
            logger.warning(f"Could not store generated payload for {key}: {error}")
            self.events.publish(events.GENERATION_FAILED, {"key": key, "error": str(error.cause)})
            return
        self.events.publish(events.CACHE_REFRESHED, {
            "key": key,
            "generated_at": entry.generated_at.isoformat(),
            "expires_at": entry.expires_at.isoformat(),
        })

    def _finish(self, key: str, flight: _Flight, error: EngineError) -> bool:
        """Settle a flight with the degraded result. False if already settled."""
        with self._guard:
            if flight.done.is_set():
                return False
            self._settle(key, flight, error, self.clock())
            return True

    def _settle(self, key: str, flight: _Flight, error: EngineError, now: datetime):
        entry = self._live_entry(key, now)
        self._errors[key] = error
        if entry is None:
            flight.result = CacheResult(key, None, True, error=error)
        else:
            flight.result = CacheResult(key, entry.payload, entry.is_stale(now),
                                        entry.generated_at, entry.expires_at, error=error)
        self._release(key, flight)

    def _release(self, key: str, flight: _Flight):
        if self._flights.get(key) is flight:
            del self._flights[key]
        flight.done.set()

    # ── Invalidation ───────────────────────────────────────────

    def cancel(self, key: str) -> bool:
        """Abandon an in-flight refresh. The cache keeps its prior state."""
        with self._guard:
            flight = self._flights.get(key)
        if flight is None:
            return False
        error = GenerationCancelled(key)
        if not self._finish(key, flight, error):
            return False
        if flight.future is not None:
            flight.future.cancel()
        logger.info(f"Cancelled refresh for cache key {key}")
        self.events.publish(events.GENERATION_CANCELLED, {"key": key})
        return True

    def invalidate(self, key: str) -> bool:
        """Remove a key entirely, cancelling any refresh in progress."""
        self.cancel(key)
        with self._guard:
            existed = key in self._entries
            self._drop(key)
            self._errors.pop(key, None)
        return existed

    def evict_expired(self) -> int:
        """Sweep entries past their grace period."""
        now = self.clock()
        with self._guard:
            expired = [k for k, e in self._entries.items() if now >= e.expires_at + self.stale_grace]
            for key in expired:
                self._drop(key)
        if expired:
            logger.info(f"Evicted {len(expired)} expired cache entries")
        return len(expired)

    def shutdown(self, wait: bool = False):
        self._dispatcher.shutdown(wait=wait)
        self._workers.shutdown(wait=wait)
