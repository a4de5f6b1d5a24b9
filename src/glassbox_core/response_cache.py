"""
Response Cache

Content-addressable store for backend responses, keyed by the fingerprint of
(prompt, model, temperature, max_tokens). Entries expire after their TTL and
the total size is bounded; the least-recently-written entries are evicted
first.

With a cache directory, every entry is one gzip-compressed JSON file named
after its fingerprint, so the cache survives restarts and can be wiped by
deleting the directory. Unreadable files are discarded and count as misses.
"""

import gzip
import json
import logging
import os
import tempfile
import threading
import time
import zlib
from collections import OrderedDict
from dataclasses import replace
from pathlib import Path
from typing import Callable

from glassbox_core.domain.entities import CacheEntry, CacheStats
from glassbox_core.domain.errors import ConfigurationError
from glassbox_core.domain.value_objects import CacheKey
from glassbox_core.harness_config import CacheConfig

logger = logging.getLogger(__name__)

ENTRY_SUFFIX = ".json.gz"
_TMP_SUFFIX = ".tmp"

# Errors that mean "this persisted entry cannot be used"
_CORRUPT_ENTRY_ERRORS = (OSError, EOFError, ValueError, KeyError, TypeError, zlib.error)


def _encode_record(record: dict) -> bytes:
    data = json.dumps(record, ensure_ascii=False, sort_keys=True).encode("utf-8")
    return gzip.compress(data, mtime=0)


def _decode_record(blob: bytes) -> dict:
    record = json.loads(gzip.decompress(blob).decode("utf-8"))
    if not isinstance(record, dict) or not isinstance(record.get("response"), dict):
        raise ValueError("cache record has no response payload")
    return record


class ResponseCache:
    """
    Thread-safe response cache with TTL expiry and size-bounded eviction

    All public methods take the same re-entrant lock, so the cache can be
    shared by every worker of a run.
    """

    def __init__(
        self,
        cache_dir: str | Path | None = None,
        default_ttl_seconds: float = 24 * 60 * 60,
        max_size_bytes: int = 100 * 1024 * 1024,
        model_ttl_seconds: dict[str, float] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            cache_dir: Directory for persisted entries (memory-only when None)
            default_ttl_seconds: TTL applied when set() gets none
            max_size_bytes: Upper bound on the summed size of live entries
            model_ttl_seconds: Per-model TTL overrides
            clock: Wall-clock source (seconds)
        """
        if default_ttl_seconds <= 0:
            raise ConfigurationError("cache.ttl_seconds", "must be positive")
        if max_size_bytes <= 0:
            raise ConfigurationError("cache.max_size_bytes", "must be positive")

        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.default_ttl_seconds = default_ttl_seconds
        self.max_size_bytes = max_size_bytes
        self.model_ttl_seconds = dict(model_ttl_seconds or {})
        self._clock = clock

        self._lock = threading.RLock()
        # Metadata in write order, oldest first
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._blobs: dict[str, bytes] = {}
        self._total_size = 0

        self._hits = 0
        self._misses = 0
        self._writes = 0
        self._evictions = 0
        self._invalidations = 0
        self._errors = 0

        if self.cache_dir is not None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self._load_index()
        self.cleanup()

    @classmethod
    def from_config(cls, config: CacheConfig, clock: Callable[[], float] = time.time) -> "ResponseCache":
        """Create a cache from CacheConfig"""
        return cls(
            cache_dir=config.cache_dir or None,
            default_ttl_seconds=config.ttl_seconds,
            max_size_bytes=config.max_size_bytes,
            model_ttl_seconds=config.model_ttl_seconds,
            clock=clock,
        )

    # --- Keys ---

    @staticmethod
    def fingerprint(prompt: str, model: str, *, temperature: float = 0.0, max_tokens: int | None = None) -> str:
        """Fingerprint of a call's material inputs"""
        return CacheKey(prompt=prompt, model=model, temperature=temperature, max_tokens=max_tokens).fingerprint

    # --- Public operations ---

    def get(
        self,
        prompt: str,
        model: str,
        *,
        temperature: float = 0.0,
        max_tokens: int | None = None,
    ) -> CacheEntry | None:
        """
        Look up a response

        Returns:
            The live entry with its response payload, or None (counted as a miss)
        """
        return self.get_by_fingerprint(
            self.fingerprint(prompt, model, temperature=temperature, max_tokens=max_tokens)
        )

    def get_by_fingerprint(self, fingerprint: str) -> CacheEntry | None:
        """Look up a response by fingerprint (see get())"""
        with self._lock:
            meta = self._entries.get(fingerprint)
            if meta is None:
                self._misses += 1
                logger.debug("Cache miss: %s", fingerprint[:12])
                return None

            if meta.is_expired(self._clock()):
                self._remove(fingerprint)
                self._misses += 1
                logger.debug("Cache entry expired: %s", fingerprint[:12])
                return None

            try:
                record = _decode_record(self._read_blob(fingerprint))
            except _CORRUPT_ENTRY_ERRORS as e:
                logger.warning("Discarding unreadable cache entry %s: %s", fingerprint[:12], e)
                self._remove(fingerprint)
                self._errors += 1
                self._misses += 1
                return None

            self._hits += 1
            logger.debug("Cache hit: %s", fingerprint[:12])
            return replace(meta, response=record["response"])

    def set(
        self,
        prompt: str,
        model: str,
        response: dict,
        *,
        temperature: float = 0.0,
        max_tokens: int | None = None,
        ttl_seconds: float | None = None,
    ) -> str:
        """
        Store a response

        Expired entries are purged and the oldest entries evicted until the new
        entry fits. An entry larger than the whole cache is not stored.

        Args:
            prompt: Prompt text
            model: Model identifier
            response: JSON-serializable response payload
            temperature: Sampling temperature of the call
            max_tokens: Response token limit of the call
            ttl_seconds: TTL override (defaults to the per-model or default TTL)

        Returns:
            The entry's fingerprint
        """
        fingerprint = self.fingerprint(prompt, model, temperature=temperature, max_tokens=max_tokens)
        ttl = ttl_seconds if ttl_seconds is not None else self.model_ttl_seconds.get(model, self.default_ttl_seconds)
        now = self._clock()
        blob = _encode_record({
            "fingerprint": fingerprint,
            "model": model,
            "created_at": now,
            "ttl_seconds": ttl,
            "response": response,
        })
        size = len(blob)

        with self._lock:
            if fingerprint in self._entries:
                self._remove(fingerprint)

            if size > self.max_size_bytes:
                logger.warning(
                    "Cache entry %s (%d bytes) exceeds the cache size limit (%d bytes); not stored",
                    fingerprint[:12], size, self.max_size_bytes,
                )
                return fingerprint

            self._purge_expired(now)
            while self._entries and self._total_size + size > self.max_size_bytes:
                self._evict_oldest()

            try:
                self._write_blob(fingerprint, blob)
            except OSError as e:
                self._errors += 1
                logger.warning("Failed to persist cache entry %s: %s", fingerprint[:12], e)
                return fingerprint

            self._entries[fingerprint] = CacheEntry(
                fingerprint=fingerprint,
                model=model,
                created_at=now,
                ttl_seconds=ttl,
                size_bytes=size,
            )
            self._total_size += size
            self._writes += 1

        return fingerprint

    def invalidate(self, fingerprint: str) -> bool:
        """
        Remove one entry (idempotent)

        Returns:
            True if an entry was removed
        """
        with self._lock:
            if fingerprint not in self._entries:
                return False
            self._remove(fingerprint)
            self._invalidations += 1
            return True

    def clear(self) -> None:
        """Remove every entry. Hit/miss/write counters are cumulative and kept."""
        with self._lock:
            for fingerprint in list(self._entries):
                self._remove(fingerprint)
                self._invalidations += 1
            self._blobs.clear()
            self._total_size = 0
            if self.cache_dir is not None:
                for path in self.cache_dir.glob(f"*{ENTRY_SUFFIX}"):
                    path.unlink(missing_ok=True)

    def list_entries(self) -> list[CacheEntry]:
        """Metadata (no payload) of all live entries, newest first"""
        with self._lock:
            now = self._clock()
            live = [meta for meta in self._entries.values() if not meta.is_expired(now)]
        return sorted(live, key=lambda m: (-m.created_at, m.fingerprint))

    def cleanup(self) -> int:
        """
        Purge expired entries, then evict the oldest until under the size limit

        Returns:
            Number of entries removed
        """
        with self._lock:
            removed = self._purge_expired(self._clock())
            while self._entries and self._total_size > self.max_size_bytes:
                self._evict_oldest()
                removed += 1
            return removed

    def stats(self) -> CacheStats:
        """Snapshot of the cache counters"""
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                writes=self._writes,
                evictions=self._evictions,
                invalidations=self._invalidations,
                errors=self._errors,
                entry_count=len(self._entries),
                total_size=self._total_size,
                max_size=self.max_size_bytes,
            )

    def reset_stats(self) -> None:
        """Reset the cumulative counters"""
        with self._lock:
            self._hits = self._misses = self._writes = 0
            self._evictions = self._invalidations = self._errors = 0

    # --- Internals (callers hold the lock) ---

    def _purge_expired(self, now: float) -> int:
        expired = [fp for fp, meta in self._entries.items() if meta.is_expired(now)]
        for fingerprint in expired:
            self._remove(fingerprint)
        if expired:
            logger.debug("Purged %d expired cache entries", len(expired))
        return len(expired)

    def _evict_oldest(self) -> None:
        fingerprint = next(iter(self._entries))
        self._remove(fingerprint)
        self._evictions += 1
        logger.debug("Evicted cache entry %s", fingerprint[:12])

    def _remove(self, fingerprint: str) -> None:
        meta = self._entries.pop(fingerprint, None)
        if meta is not None:
            self._total_size -= meta.size_bytes
        if self.cache_dir is None:
            self._blobs.pop(fingerprint, None)
        else:
            try:
                self._entry_path(fingerprint).unlink(missing_ok=True)
            except OSError as e:
                self._errors += 1
                logger.warning("Failed to delete cache file for %s: %s", fingerprint[:12], e)

    def _entry_path(self, fingerprint: str) -> Path:
        return self.cache_dir / f"{fingerprint}{ENTRY_SUFFIX}"

    def _read_blob(self, fingerprint: str) -> bytes:
        if self.cache_dir is None:
            return self._blobs[fingerprint]
        return self._entry_path(fingerprint).read_bytes()

    def _write_blob(self, fingerprint: str, blob: bytes) -> None:
        if self.cache_dir is None:
            self._blobs[fingerprint] = blob
            return
        fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, suffix=_TMP_SUFFIX)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(blob)
            os.replace(tmp_name, self._entry_path(fingerprint))
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _load_index(self) -> None:
        """Rebuild the index from the cache directory"""
        for tmp in self.cache_dir.glob(f"*{_TMP_SUFFIX}"):
            tmp.unlink(missing_ok=True)

        loaded: list[CacheEntry] = []
        for path in self.cache_dir.glob(f"*{ENTRY_SUFFIX}"):
            expected_fp = path.name[: -len(ENTRY_SUFFIX)]
            try:
                blob = path.read_bytes()
                record = _decode_record(blob)
                if record["fingerprint"] != expected_fp:
                    raise ValueError("fingerprint does not match file name")
                loaded.append(CacheEntry(
                    fingerprint=expected_fp,
                    model=str(record["model"]),
                    created_at=float(record["created_at"]),
                    ttl_seconds=float(record["ttl_seconds"]),
                    size_bytes=len(blob),
                ))
            except _CORRUPT_ENTRY_ERRORS as e:
                logger.warning("Discarding unreadable cache file %s: %s", path.name, e)
                self._errors += 1
                path.unlink(missing_ok=True)

        for meta in sorted(loaded, key=lambda m: (m.created_at, m.fingerprint)):
            self._entries[meta.fingerprint] = meta
            self._total_size += meta.size_bytes
