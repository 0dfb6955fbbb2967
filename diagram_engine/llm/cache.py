"""
Semantic Cache — Durable LLM result caching with similarity lookup.

Avoids repeat model calls for segments that were already analyzed, or
that are near-duplicates of one (re-transcribed audio, small edits).

Lookup order:
1. Exact key match
2. Similarity scan over stored source texts that share the request's
   scope (its output-shaping options); the best match at or above
   `similarity_threshold` wins and its similarity is reported

Entries are write-once per key: a second `set()` replaces the entry
wholesale. Capacity is bounded and the oldest insertion is evicted
first. Entries expire after their TTL, measured in wall-clock time so
that expiry survives restarts.

Persistence: the whole store lives in one versioned JSON file, loaded at
construction, flushed after every `flush_every` writes and on `close()`.
Unreadable files and malformed entries are dropped with a warning; the
cache never fails a request.

Usage:
    cache = SemanticCache(persist_path=".cache/llm/unified-cache.json")

    hit = cache.get(request.cache_key, request.source_text, request.cache_scope)
    if hit is not None:
        analysis = DiagramAnalysis.from_dict(hit.response)
        print(f"cache hit (similarity {hit.similarity:.2f})")

    cache.set(request.cache_key, request.source_text, analysis.to_dict(), request.cache_scope)
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from difflib import SequenceMatcher
from pathlib import Path
from typing import Any, Optional

from diagram_engine.exceptions import CacheIOError

logger = logging.getLogger(__name__)

CACHE_FILE_VERSION = 1

_WS_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lower-case and collapse whitespace before comparing texts."""
    return _WS_RE.sub(" ", text.strip()).lower()


# ---------------------------------------------------------------------------
# Cache Entry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CacheEntry:
    """A cached analysis payload with expiration metadata."""

    key: str
    source_text: str
    response: dict[str, Any]    # DiagramAnalysis.to_dict()
    created_at: float           # time.time()
    ttl_seconds: float
    scope: str = ""             # options fingerprint; similarity only matches within a scope

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at

    @property
    def age_seconds(self) -> float:
        return time.time() - self.created_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "source_text": self.source_text,
            "response": self.response,
            "created_at": self.created_at,
            "ttl_seconds": self.ttl_seconds,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEntry":
        if not isinstance(data.get("response"), dict):
            raise TypeError("cache entry response must be an object")
        return cls(
            key=str(data["key"]),
            source_text=str(data["source_text"]),
            response=data["response"],
            created_at=float(data["created_at"]),
            ttl_seconds=float(data["ttl_seconds"]),
            scope=str(data.get("scope", "")),
        )


@dataclass(frozen=True)
class CacheLookup:
    """A cache hit: the stored payload plus how it was found."""

    key: str
    response: dict[str, Any]
    similarity: float

    @property
    def exact(self) -> bool:
        return self.similarity >= 1.0


# ---------------------------------------------------------------------------
# Semantic Cache
# ---------------------------------------------------------------------------

class SemanticCache:
    """
    Exact + similarity cache with oldest-first eviction and JSON persistence.

    All mutation happens under one re-entrant lock, so writes are
    serialized and reads never observe a half-updated store.
    """

    def __init__(
        self,
        max_entries: int = 200,
        ttl_seconds: float = 7200.0,
        similarity_threshold: float = 0.8,
        persist_path: Optional[str | Path] = None,
        flush_every: int = 10,
    ):
        if not 0.0 < similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be in (0, 1]")
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._threshold = similarity_threshold
        self._path = Path(persist_path) if persist_path else None
        self._flush_every = max(1, flush_every)

        # Insertion order: oldest first
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._normalized: dict[str, str] = {}
        self._lock = threading.RLock()
        self._pending_writes = 0

        # Stats
        self._hits = 0
        self._semantic_hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0
        self._stores = 0
        self._io_errors = 0

        if self._path is not None:
            self.load()

    @classmethod
    def from_config(cls, config: Any) -> "SemanticCache":
        """Build from a CacheConfig."""
        return cls(
            max_entries=config.max_entries,
            ttl_seconds=config.ttl_minutes * 60,
            similarity_threshold=config.similarity_threshold,
            persist_path=config.persist_path,
            flush_every=config.flush_every,
        )

    @property
    def size(self) -> int:
        """Current number of cached entries."""
        return len(self._entries)

    @property
    def hit_rate(self) -> float:
        """Cache hit rate (0.0 to 1.0)."""
        total = self._hits + self._misses
        return self._hits / total if total > 0 else 0.0

    @property
    def similarity_threshold(self) -> float:
        return self._threshold

    @property
    def persist_path(self) -> Optional[Path]:
        return self._path

    # --- Core Operations ---

    def get(self, key: str, text: str = "", scope: str = "") -> Optional[CacheLookup]:
        """
        Look up by exact key, then by similarity of `text` to stored sources.

        The similarity scan only considers entries stored under the same
        `scope`. Returns None on a miss. Expired entries met along the way
        are evicted.
        """
        now = time.time()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                if not entry.is_expired(now):
                    self._hits += 1
                    logger.debug(
                        "cache_hit",
                        extra={"key": key[:16], "similarity": 1.0},
                    )
                    return CacheLookup(key=key, response=entry.response, similarity=1.0)
                self._remove(key)
                self._expirations += 1

            match = self._best_match(normalize_text(text), scope, now) if text else None
            if match is not None:
                entry, similarity = match
                self._hits += 1
                self._semantic_hits += 1
                logger.debug(
                    "cache_semantic_hit",
                    extra={"key": entry.key[:16], "similarity": round(similarity, 3)},
                )
                return CacheLookup(key=entry.key, response=entry.response, similarity=similarity)

            self._misses += 1
            return None

    def set(self, key: str, text: str, response: dict[str, Any], scope: str = "") -> None:
        """
        Store a payload, replacing any existing entry for `key` wholesale.

        Evicts the oldest entries beyond capacity and flushes to disk every
        `flush_every` writes.
        """
        entry = CacheEntry(
            key=key,
            source_text=text,
            response=response,
            created_at=time.time(),
            ttl_seconds=self._ttl,
            scope=scope,
        )
        with self._lock:
            if key in self._entries:
                self._remove(key)
            self._insert(entry)
            self._stores += 1
            self._pending_writes += 1
            if self._pending_writes >= self._flush_every:
                self.flush()

    def invalidate(self, key: str) -> bool:
        """Remove a specific entry. Returns True if found."""
        with self._lock:
            if key in self._entries:
                self._remove(key)
                self._pending_writes += 1
                return True
            return False

    def clear(self) -> int:
        """Clear all entries (and the file on next flush). Returns number cleared."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._normalized.clear()
            self._pending_writes += 1
            return count

    def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns number removed."""
        now = time.time()
        with self._lock:
            expired = [k for k, v in self._entries.items() if v.is_expired(now)]
            for key in expired:
                self._remove(key)
            self._expirations += len(expired)
            return len(expired)

    # --- Persistence ---

    def load(self) -> int:
        """
        Replace the in-memory store with the persisted file's entries.

        Returns the number of entries loaded. Never raises: I/O and format
        problems are logged, counted, and leave the cache empty or partial.
        """
        if self._path is None:
            return 0
        try:
            payload = self._read_file(self._path)
        except CacheIOError as e:
            self._io_errors += 1
            logger.warning(
                "cache_load_failed",
                extra={"path": str(self._path), "error": str(e)},
            )
            return 0
        if payload is None:
            return 0

        if payload.get("version") != CACHE_FILE_VERSION:
            logger.warning(
                "cache_version_mismatch",
                extra={
                    "path": str(self._path),
                    "found": payload.get("version"),
                    "expected": CACHE_FILE_VERSION,
                },
            )
            return 0

        now = time.time()
        loaded = 0
        with self._lock:
            self._entries.clear()
            self._normalized.clear()
            for raw in payload.get("entries") or []:
                try:
                    entry = CacheEntry.from_dict(raw)
                except (KeyError, TypeError, ValueError, AttributeError) as e:
                    self._io_errors += 1
                    logger.warning("cache_entry_dropped", extra={"error": str(e)})
                    continue
                if entry.is_expired(now):
                    continue
                if entry.key in self._entries:
                    self._remove(entry.key)
                self._insert(entry)
                loaded += 1
            self._pending_writes = 0

        logger.info("cache_loaded", extra={"path": str(self._path), "entries": loaded})
        return loaded

    def flush(self) -> bool:
        """Write the store to disk atomically. Returns False if the write failed."""
        if self._path is None:
            return True
        with self._lock:
            payload = {
                "version": CACHE_FILE_VERSION,
                "saved_at": time.time(),
                "entries": [e.to_dict() for e in self._entries.values()],
            }
            try:
                self._write_file(self._path, payload)
            except CacheIOError as e:
                self._io_errors += 1
                logger.warning(
                    "cache_flush_failed",
                    extra={"path": str(self._path), "error": str(e)},
                )
                return False
            self._pending_writes = 0
            return True

    def close(self) -> None:
        """Flush outstanding writes."""
        if self._pending_writes:
            self.flush()

    @staticmethod
    def _read_file(path: Path) -> Optional[dict[str, Any]]:
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CacheIOError(
                f"Unreadable cache file: {e}", operation="load", path=str(path)
            ) from e
        if not isinstance(payload, dict):
            raise CacheIOError(
                "Cache file must contain a JSON object", operation="load", path=str(path)
            )
        return payload

    @staticmethod
    def _write_file(path: Path, payload: dict[str, Any]) -> None:
        tmp_name: Optional[str] = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False)
            os.replace(tmp_name, path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise CacheIOError(
                f"Could not write cache file: {e}", operation="flush", path=str(path)
            ) from e

    # --- Internals (callers hold the lock) ---

    def _insert(self, entry: CacheEntry) -> None:
        while len(self._entries) >= self._max_entries:
            evicted_key, _ = self._entries.popitem(last=False)
            self._normalized.pop(evicted_key, None)
            self._evictions += 1
            logger.debug("cache_eviction", extra={"key": evicted_key[:16]})
        self._entries[entry.key] = entry
        self._normalized[entry.key] = normalize_text(entry.source_text)

    def _remove(self, key: str) -> None:
        self._entries.pop(key, None)
        self._normalized.pop(key, None)

    def _best_match(self, query: str, scope: str, now: float) -> Optional[tuple[CacheEntry, float]]:
        if not query:
            return None

        best: Optional[tuple[CacheEntry, float]] = None
        expired: list[str] = []
        q_len = len(query)

        for key, entry in self._entries.items():
            if entry.is_expired(now):
                expired.append(key)
                continue
            if entry.scope != scope:
                continue
            candidate = self._normalized[key]
            if not candidate:
                continue

            # ratio() can never exceed this length-based bound
            c_len = len(candidate)
            if 2.0 * min(q_len, c_len) / (q_len + c_len) < self._threshold:
                continue

            matcher = SequenceMatcher(None, query, candidate, autojunk=False)
            if matcher.real_quick_ratio() < self._threshold or matcher.quick_ratio() < self._threshold:
                continue
            similarity = matcher.ratio()
            if similarity >= self._threshold and (best is None or similarity > best[1]):
                best = (entry, similarity)

        for key in expired:
            self._remove(key)
        self._expirations += len(expired)
        return best

    # --- Stats ---

    def get_stats(self) -> dict[str, Any]:
        """Return cache performance statistics."""
        return {
            "size": self.size,
            "max_entries": self._max_entries,
            "ttl_seconds": self._ttl,
            "similarity_threshold": self._threshold,
            "hits": self._hits,
            "semantic_hits": self._semantic_hits,
            "misses": self._misses,
            "hit_rate": round(self.hit_rate, 3),
            "evictions": self._evictions,
            "expirations": self._expirations,
            "stores": self._stores,
            "io_errors": self._io_errors,
            "persist_path": str(self._path) if self._path else None,
        }

    def reset_stats(self) -> None:
        """Reset performance counters without clearing cached data."""
        self._hits = 0
        self._semantic_hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0
        self._stores = 0
        self._io_errors = 0

    # --- Inspection ---

    def list_entries(self) -> list[dict[str, Any]]:
        """Return metadata for all cached entries (for debugging)."""
        with self._lock:
            return [
                {
                    "key": entry.key[:16] + "...",
                    "source_preview": entry.source_text[:60],
                    "nodes": len(entry.response.get("nodes", [])),
                    "age_seconds": round(entry.age_seconds, 1),
                    "is_expired": entry.is_expired(),
                }
                for entry in self._entries.values()
            ]
