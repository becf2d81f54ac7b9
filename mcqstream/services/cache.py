import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Sequence, Tuple

from mcqstream.core.clock import Clock, utc_now
from mcqstream.schemas import MCQ, Material

logger = logging.getLogger(__name__)


def fingerprint(material: Material, count: int) -> str:
    """Stable SHA-256 digest of (content, requested count)."""
    digest = hashlib.sha256()
    if material.is_file:
        digest.update(b"file\x00")
        digest.update((material.mime_type or "").encode("utf-8"))
        digest.update(b"\x00")
        digest.update((material.file_data or "").encode("utf-8"))
    else:
        digest.update(b"text\x00")
        digest.update((material.text or "").encode("utf-8"))
    digest.update(f"\x00{count}".encode("utf-8"))
    return digest.hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: str
    mcqs: Tuple[MCQ, ...]
    created_at: datetime


class ResponseCache:
    """
    Process-wide fingerprint → MCQ set map with a freshness window.

    Stale entries are evicted lazily: on the get() that finds them, and by a
    sweep when put() pushes the table past `max_entries`. Entries are replaced
    wholesale, never mutated.
    """

    def __init__(
        self,
        ttl_seconds: int = 2 * 60 * 60,
        max_entries: int = 200,
        clock: Clock = utc_now,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _is_stale(self, entry: CacheEntry, now: datetime) -> bool:
        return now - entry.created_at >= self.ttl

    def get(self, key: str) -> Optional[Tuple[MCQ, ...]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._is_stale(entry, self._clock()):
            del self._entries[key]
            return None
        return entry.mcqs

    def put(self, key: str, mcqs: Sequence[MCQ]) -> None:
        now = self._clock()
        self._entries[key] = CacheEntry(fingerprint=key, mcqs=tuple(mcqs), created_at=now)
        if len(self._entries) > self.max_entries:
            self._sweep(now)

    def _sweep(self, now: datetime) -> None:
        stale = [key for key, entry in self._entries.items() if self._is_stale(entry, now)]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.info(f"[CACHE] Swept {len(stale)} stale entr{'y' if len(stale) == 1 else 'ies'}")
