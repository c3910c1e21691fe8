"""Shared, deduplicating cache of decoded archive blocks."""

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Hashable, Tuple

logger = logging.getLogger("pmtiles_proxy")

CacheKey = Tuple[str, Hashable]


class SharedBlockCache:
    """
    Process-wide cache of header, directory and metadata blocks.

    Entries are futures keyed by ``(archive_name, block_id)``. The first caller
    for a key starts the fetch; concurrent callers await the same future and
    observe the same result or exception. A fetch that fails or is cancelled is
    dropped rather than committed, so the next caller retries. Waiters attach
    through ``asyncio.shield`` so cancelling one request never cancels a fetch
    that other requests share.

    Least recently used entries are evicted beyond ``max_entries``. Fetches
    still in flight are never evicted or invalidated, so the cache can briefly
    hold more than ``max_entries`` until they complete.

    Attributes:
        max_entries: Maximum number of cached blocks.
        hits: Lookups served by an existing entry (in flight or done).
        misses: Lookups that started a new fetch.
    """

    def __init__(self, max_entries: int = 100) -> None:
        self.max_entries = max_entries
        self.hits = 0
        self.misses = 0
        self._entries: "OrderedDict[CacheKey, asyncio.Future]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    async def get_or_fetch(
        self, key: CacheKey, loader: Callable[[], Awaitable[Any]]
    ) -> Any:
        """
        Return the cached value for ``key``, running ``loader`` once if absent.

        Args:
            key: ``(archive_name, block_id)`` cache key.
            loader: Coroutine factory producing the value.

        Returns:
            The loaded (or shared) value.
        """
        future = self._entries.get(key)
        if future is not None:
            self.hits += 1
            self._entries.move_to_end(key)
        else:
            self.misses += 1
            future = asyncio.ensure_future(loader())
            self._entries[key] = future
            future.add_done_callback(lambda done: self._settle(key, done))
            self._evict()
        return await asyncio.shield(future)

    def put(self, key: CacheKey, value: Any) -> None:
        """Store an already decoded value."""
        future = asyncio.get_running_loop().create_future()
        future.set_result(value)
        self._entries[key] = future
        self._entries.move_to_end(key)
        self._evict()

    def invalidate(self, archive_name: str) -> int:
        """
        Drop every completed block cached for an archive.

        Fetches still in flight stay cached and shared.

        Args:
            archive_name: Archive whose blocks are dropped.

        Returns:
            Number of entries removed.
        """
        stale = [
            key
            for key, future in self._entries.items()
            if key[0] == archive_name and future.done()
        ]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.info("Invalidated %d cached blocks for '%s'", len(stale), archive_name)
        return len(stale)

    def _settle(self, key: CacheKey, future: asyncio.Future) -> None:
        if future.cancelled() or future.exception() is not None:
            if self._entries.get(key) is future:
                del self._entries[key]
        # Entries kept past the limit while in flight can go now
        self._evict()

    def _evict(self) -> None:
        excess = len(self._entries) - self.max_entries
        if excess <= 0:
            return
        evictable = [key for key, future in self._entries.items() if future.done()]
        for key in evictable[:excess]:
            del self._entries[key]
            logger.debug("Evicted cached block %s", key)
