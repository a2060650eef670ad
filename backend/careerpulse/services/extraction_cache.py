"""
In-process cache for extraction results.

Keyed by a content hash of (sender, subject, body), bounded, FIFO eviction.
Nothing is persisted: a restart clears it and the next sync re-extracts.
"""
import hashlib
import threading
from collections import OrderedDict
from datetime import datetime
from typing import NamedTuple, Optional

from ..models import utcnow
from ..schemas import ExtractionResult


class CacheEntry(NamedTuple):
    value: ExtractionResult
    inserted_at: datetime


def content_hash(sender: str, subject: str, body: str) -> str:
    """Deterministic SHA-256 hash of (sender, subject, body) for the cache key."""
    content = "\x1f".join((sender or "", subject or "", body or ""))
    return hashlib.sha256(content.encode("utf-8", errors="surrogatepass")).hexdigest()


class ExtractionCache:
    """
    Ordered map with a size bound. Lookups do not refresh an entry's position;
    the oldest insertion is evicted first.
    """

    def __init__(self, max_size: int = 1000):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[ExtractionResult]:
        with self._lock:
            entry = self._entries.get(key)
            return entry.value if entry else None

    def put(self, key: str, value: ExtractionResult) -> None:
        with self._lock:
            if key in self._entries:
                # Same content always yields the same result; keep original insertion order.
                self._entries[key] = CacheEntry(value, self._entries[key].inserted_at)
                return
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
            self._entries[key] = CacheEntry(value, utcnow())

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> list[str]:
        """Keys oldest first."""
        with self._lock:
            return list(self._entries.keys())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict:
        with self._lock:
            return {"size": len(self._entries), "max_size": self.max_size}
