"""Bounded FIFO cache in front of the message store."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from harvester.harvesting.errors import StoreFetchError
from harvester.harvesting.store_interface import MessageStore
from harvester.harvesting.types import CacheEntry, CacheState, MessageContent, MessagePreview, SearchRecord

logger = logging.getLogger(__name__)

DEFAULT_CACHE_CAPACITY = 200
DEFAULT_SEARCH_HISTORY_LIMIT = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SearchCache:
    """Message-id -> content cache plus recent query -> previews history.

    Eviction is strict FIFO on insertion order: reading a cached entry never
    re-promotes it. All bookkeeping lives in ``state`` so the owner can persist it.
    """

    def __init__(
        self,
        store: MessageStore,
        state: CacheState | None = None,
        *,
        capacity: int = DEFAULT_CACHE_CAPACITY,
        search_history_limit: int = DEFAULT_SEARCH_HISTORY_LIMIT,
        freshness_seconds: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if search_history_limit < 1:
            raise ValueError("search_history_limit must be >= 1")
        self._store = store
        self.state = state if state is not None else CacheState()
        self.capacity = capacity
        self.search_history_limit = search_history_limit
        self.freshness_seconds = freshness_seconds
        self._clock = clock
        self.store_searches = 0
        self.store_fetches = 0
        self._trim_entries()
        self._trim_search_history()

    def __len__(self) -> int:
        return len(self.state.entries)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self.state.entries

    def search(self, query: str) -> list[MessagePreview]:
        """Return previews for ``query``, from history when a fresh result exists."""

        cached = self._lookup_search(query)
        if cached is not None:
            logger.debug("harvest.search_cache_hit query=%r previews=%d", query, len(cached.previews))
            return list(cached.previews)

        previews = list(self._store.search(query))
        self.store_searches += 1
        self.state.search_history.append(SearchRecord(query=query, timestamp=self._clock(), previews=tuple(previews)))
        self._trim_search_history()
        return previews

    def fetch(self, message_id: str) -> MessageContent:
        """Return content for one message, calling the store only on a miss."""

        entry = self.state.entries.get(message_id)
        if entry is not None:
            return entry.content

        contents = self._store.fetch([message_id])
        self.store_fetches += 1
        content = next((item for item in contents if item.id == message_id), None)
        if content is None:
            raise StoreFetchError(f"Message store returned no content for {message_id}", [message_id])

        while len(self.state.entries) >= self.capacity:
            self._evict_oldest()
        self.state.entries[message_id] = CacheEntry(message_id=message_id, content=content, cached_at=self._clock())
        return content

    def _lookup_search(self, query: str) -> SearchRecord | None:
        for record in reversed(self.state.search_history):
            if record.query != query:
                continue
            if self.freshness_seconds is None:
                return record
            age = (self._clock() - record.timestamp).total_seconds()
            return record if age <= self.freshness_seconds else None
        return None

    def _evict_oldest(self) -> None:
        oldest = next(iter(self.state.entries))
        del self.state.entries[oldest]
        logger.debug("harvest.cache_evicted message_id=%s", oldest)

    def _trim_entries(self) -> None:
        while len(self.state.entries) > self.capacity:
            self._evict_oldest()

    def _trim_search_history(self) -> None:
        overflow = len(self.state.search_history) - self.search_history_limit
        if overflow > 0:
            del self.state.search_history[:overflow]
