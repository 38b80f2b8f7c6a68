"""In-process embedding cache keyed by text fingerprint."""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

Vector = List[float]


@dataclass
class CacheEntry:
    key: str
    vector: Vector
    last_used: float


class EmbeddingCache:
    """Thread-safe LRU cache of embedding vectors.

    Entries are write-once: inserting a key that is already present keeps
    the existing vector. The least recently used entry is evicted first;
    the ``OrderedDict`` keeps insertion order for entries never looked up,
    which breaks ties between equal ``last_used`` stamps.

    Workers that miss the same key at the same time coordinate through
    ``reserve``: one of them owns the computation, the others block on the
    future it hands out.
    """

    def __init__(self, max_entries: int, clock: Callable[[], float] = time.monotonic):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._pending: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def lookup(self, key: str) -> Optional[Vector]:
        """Return the cached vector and mark it recently used."""
        with self._lock:
            return self._lookup_locked(key)

    def _lookup_locked(self, key: str) -> Optional[Vector]:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        entry.last_used = self._clock()
        self._entries.move_to_end(key)
        self._hits += 1
        return entry.vector

    def insert(self, key: str, vector: Sequence[float]) -> None:
        """Store ``vector`` under ``key`` unless the key is already present."""
        with self._lock:
            if key not in self._entries:
                while len(self._entries) >= self._max_entries:
                    evicted, _ = self._entries.popitem(last=False)
                    self._evictions += 1
                    logger.debug("evicted embedding %s", evicted)
                self._entries[key] = CacheEntry(key=key, vector=list(vector), last_used=self._clock())
            stored = self._entries[key].vector
            pending = self._pending.pop(key, None)
        if pending is not None:
            pending.set_result(stored)

    def reserve(self, keys: Iterable[str]) -> Tuple[Dict[str, Vector], List[str], Dict[str, Future]]:
        """Split ``keys`` into hits, keys to compute and keys to wait for.

        Returns:
            (hits, owned, waiting). The caller must compute every ``owned``
            key and finish it with ``insert`` or ``release``. ``waiting`` maps
            keys another worker is computing to a future of the vector.
        """
        hits: Dict[str, Vector] = {}
        owned: List[str] = []
        waiting: Dict[str, Future] = {}
        with self._lock:
            for key in keys:
                if key in hits or key in waiting or key in owned:
                    continue
                vector = self._lookup_locked(key)
                if vector is not None:
                    hits[key] = vector
                elif key in self._pending:
                    waiting[key] = self._pending[key]
                else:
                    self._pending[key] = Future()
                    owned.append(key)
        return hits, owned, waiting

    def release(self, key: str, exc: BaseException) -> None:
        """Give up ownership of ``key``; waiters receive ``exc``."""
        with self._lock:
            pending = self._pending.pop(key, None)
        if pending is not None:
            pending.set_exception(exc)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": len(self._entries),
                "max_entries": self._max_entries,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "pending": len(self._pending),
            }

    def entries(self) -> List[CacheEntry]:
        """Snapshot of entries, least recently used first."""
        with self._lock:
            return [
                CacheEntry(key=entry.key, vector=entry.vector, last_used=entry.last_used)
                for entry in self._entries.values()
            ]
