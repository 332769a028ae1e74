"""
Result Cache
------------
Bounded in-memory TTL cache for tool invocation results.

Design:
- Entries are logically gone once now - created_at > ttl (ttl > 0)
- Expired entries are dropped lazily on read or by the background sweep
- At capacity, the single oldest entry (by creation time) is evicted
- All access goes through one lock; the sweep runs on a daemon thread
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
import json
import logging
import threading
import time

from pydantic import BaseModel


@dataclass
class CacheEntry:
    """A cached value with its creation time and time-to-live."""
    value: Any
    created_at: float
    ttl_seconds: float = 0.0

    def is_expired(self, now: float) -> bool:
        return self.ttl_seconds > 0 and now - self.created_at > self.ttl_seconds


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _repr_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {repr(k): _repr_keys(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_repr_keys(v) for v in value]
    return value


def canonical_json(value: Any) -> str:
    """
    Deterministic JSON: sorted keys, no insignificant whitespace.

    Dicts whose keys json cannot sort or encode (mixed types, tuples) are
    rendered with repr() keys instead.
    """
    options = dict(sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_json_default)
    try:
        return json.dumps(value, **options)
    except TypeError:
        return json.dumps(_repr_keys(value), **options)


def make_cache_key(tool_name: str, tool_input: Any) -> str:
    """Fingerprint of a tool call: name plus canonical input."""
    return f"{tool_name}:{canonical_json(tool_input)}"


class ToolCache:
    """
    Simple in-memory cache for tool execution results.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        cleanup_interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._logger = logging.getLogger("localrpc.infra.cache")

        self._stop_event: Optional[threading.Event] = None
        self._sweeper: Optional[threading.Thread] = None

        if cleanup_interval_seconds:
            self.start_cleanup(cleanup_interval_seconds)

    def set(self, key: str, value: Any, ttl_seconds: float = 0) -> None:
        """Store a value. ttl_seconds=0 means it never expires."""
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                oldest_key = self._find_oldest_entry()
                if oldest_key is not None:
                    del self._entries[oldest_key]
                    self._logger.debug(f"Evicted oldest cache entry: {oldest_key}")

            self._entries[key] = CacheEntry(
                value=value,
                created_at=self._clock(),
                ttl_seconds=ttl_seconds or 0,
            )

    def get(self, key: str) -> Optional[Any]:
        """Get a value, or None if missing or expired."""
        with self._lock:
            entry = self._live_entry(key)
            return entry.value if entry is not None else None

    def has(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def cleanup(self) -> int:
        """Remove expired entries. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]

        if expired:
            self._logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    def start_cleanup(self, interval_seconds: float = 60.0) -> None:
        """Run cleanup() every interval on a background thread."""
        self.stop_cleanup()

        stop_event = threading.Event()

        def _sweep() -> None:
            while not stop_event.wait(interval_seconds):
                try:
                    self.cleanup()
                except Exception:
                    self._logger.exception("Cache sweep failed")

        self._stop_event = stop_event
        self._sweeper = threading.Thread(target=_sweep, name="localrpc-cache-sweep", daemon=True)
        self._sweeper.start()

    def stop_cleanup(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._sweeper is not None and self._sweeper is not threading.current_thread():
            self._sweeper.join(timeout=1.0)
        self._stop_event = None
        self._sweeper = None

    @property
    def sweeping(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        """Caller must hold the lock."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        return entry

    def _find_oldest_entry(self) -> Optional[str]:
        oldest_key = None
        oldest_created = float("inf")
        for key, entry in self._entries.items():
            if entry.created_at < oldest_created:
                oldest_key = key
                oldest_created = entry.created_at
        return oldest_key
