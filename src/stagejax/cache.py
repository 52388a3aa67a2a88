"""Response cache capability and its backends."""

from __future__ import annotations

import logging
import os
import pickle
import threading
from collections import OrderedDict
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from .cache_key import KEY_SCHEMA_VERSION, CacheKey

if TYPE_CHECKING:
    from .dispatch import DispatchResponse

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = ".stagejax_cache/responses"
DEFAULT_MAX_ENTRIES = 4096


class ResponseCache(Protocol):
    """Key-value store the dispatcher reads and writes; must be thread safe."""

    def get(self, key: CacheKey) -> "DispatchResponse | None": ...

    def put(self, key: CacheKey, response: "DispatchResponse") -> None: ...


def _hit_stats(hits: int, misses: int) -> dict[str, float | int]:
    total = hits + misses
    return {
        "hits": hits,
        "misses": misses,
        "hit_rate": float(hits / total) if total else 0.0,
    }


class InMemoryResponseCache:
    """Process-local LRU cache; `max_entries=None` (or 0) means unbounded."""

    def __init__(self, max_entries: int | None = DEFAULT_MAX_ENTRIES) -> None:
        self._max_entries = max_entries if max_entries and max_entries > 0 else None
        self._entries: OrderedDict[str, DispatchResponse] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: CacheKey) -> "DispatchResponse | None":
        with self._lock:
            response = self._entries.get(key.digest)
            if response is None:
                self._misses += 1
                return None
            self._entries.move_to_end(key.digest)
            self._hits += 1
            return response

    def put(self, key: CacheKey, response: "DispatchResponse") -> None:
        with self._lock:
            self._entries[key.digest] = response
            self._entries.move_to_end(key.digest)
            if self._max_entries is not None:
                while len(self._entries) > self._max_entries:
                    self._entries.popitem(last=False)
                    self._evictions += 1

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self, *, reset: bool = False) -> dict[str, float | int]:
        with self._lock:
            stats = _hit_stats(self._hits, self._misses)
            stats["size"] = len(self._entries)
            stats["evictions"] = self._evictions
            stats["max_entries"] = self._max_entries or 0
            if reset:
                self._entries.clear()
                self._hits = 0
                self._misses = 0
                self._evictions = 0
        return stats


class PersistentResponseCache:
    """One pickle file per key digest under `directory`.

    Unreadable or foreign entries count as misses; write failures are logged
    and otherwise ignored, so the cache never changes a dispatch result.
    """

    def __init__(self, directory: str | os.PathLike[str] = DEFAULT_CACHE_DIR) -> None:
        self.directory = Path(directory)
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def _path(self, key: CacheKey) -> Path:
        return self.directory / f"{key.digest}.pkl"

    def _count(self, hit: bool) -> None:
        with self._lock:
            if hit:
                self._hits += 1
            else:
                self._misses += 1

    def get(self, key: CacheKey) -> "DispatchResponse | None":
        path = self._path(key)
        if not path.exists():
            self._count(False)
            return None
        try:
            version, digest, response = pickle.loads(path.read_bytes())
        except Exception as err:
            logger.warning(f"Ignoring unreadable cache entry {path}: {err}")
            self._count(False)
            return None
        if version != KEY_SCHEMA_VERSION or digest != key.digest:
            logger.warning(f"Ignoring foreign cache entry {path}")
            self._count(False)
            return None
        self._count(True)
        return response

    def put(self, key: CacheKey, response: "DispatchResponse") -> None:
        path = self._path(key)
        payload = pickle.dumps((KEY_SCHEMA_VERSION, key.digest, response), protocol=pickle.HIGHEST_PROTOCOL)
        tmp = path.with_suffix(f".{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(payload)
            os.replace(tmp, path)
        except OSError as err:
            logger.warning(f"Could not write cache entry {path}: {err}")

    def stats(self, *, reset: bool = False) -> dict[str, float | int]:
        with self._lock:
            stats = _hit_stats(self._hits, self._misses)
            if reset:
                self._hits = 0
                self._misses = 0
        stats["directory"] = str(self.directory)
        return stats


class NullResponseCache:
    """Never stores anything."""

    def get(self, key: CacheKey) -> None:
        return None

    def put(self, key: CacheKey, response: "DispatchResponse") -> None:
        return None


def cache_from_env(environ: Mapping[str, str] | None = None) -> ResponseCache:
    """Build the backend named by STAGEJAX_CACHE (memory, disk or none)."""
    env = os.environ if environ is None else environ
    kind = env.get("STAGEJAX_CACHE", "memory").strip().lower() or "memory"
    if kind == "none":
        return NullResponseCache()
    if kind == "disk":
        return PersistentResponseCache(env.get("STAGEJAX_CACHE_DIR", DEFAULT_CACHE_DIR))
    if kind != "memory":
        logger.warning(f"Unknown STAGEJAX_CACHE={kind!r}; using the in-memory cache")
    raw = env.get("STAGEJAX_CACHE_MAX_ENTRIES", str(DEFAULT_MAX_ENTRIES))
    try:
        max_entries = int(raw)
    except ValueError:
        max_entries = DEFAULT_MAX_ENTRIES
    return InMemoryResponseCache(max_entries=max_entries)
