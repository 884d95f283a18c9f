from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from cachetools import TTLCache


logger = logging.getLogger(__name__)


DEFAULT_TTL_S = 30.0
DEFAULT_MAX_SIZE = 1000


@dataclass(frozen=True)
class CacheEntry:
    data: Sequence[str]
    fetched_at: float


class CompletionCache:
    def __init__(
        self,
        *,
        ttl_s: float = DEFAULT_TTL_S,
        maxsize: int = DEFAULT_MAX_SIZE,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._maxsize = maxsize
        self._timer = timer
        self._entries: TTLCache[str, CacheEntry] = TTLCache(
            maxsize=maxsize, ttl=ttl_s, timer=timer
        )

    @property
    def ttl_s(self) -> float:
        return self._entries.ttl

    def __len__(self) -> int:
        self._entries.expire()
        return len(self._entries)

    def get(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._timer() - entry.fetched_at >= self.ttl_s:
            self._entries.pop(key, None)
            return None
        return entry

    def set(self, key: str, data: Sequence[str]) -> CacheEntry:
        entry = CacheEntry(data=tuple(data), fetched_at=self._timer())
        self._entries[key] = entry
        return entry

    def clear(self) -> None:
        self._entries.clear()
        logger.info("Completion cache cleared")

    def set_ttl(self, ttl_s: float) -> None:
        if ttl_s < 0:
            msg = f"Cache TTL must not be negative, got {ttl_s}"
            raise ValueError(msg)
        entries: TTLCache[str, CacheEntry] = TTLCache(
            maxsize=self._maxsize, ttl=ttl_s, timer=self._timer
        )
        now = self._timer()
        for key, entry in list(self._entries.items()):
            if now - entry.fetched_at < ttl_s:
                entries[key] = entry
        self._entries = entries
        logger.info("Completion cache TTL set to %ss", ttl_s)
