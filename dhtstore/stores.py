import logging
import threading
import time

import config


log = logging.getLogger(__name__)


class StoreLocatorCache:
    """
    Remembers which peers store a given target hash.

    Lookups run outside the lock, so two concurrent misses for the same
    target may both hit the network; the last one to finish wins. Entries
    are routing hints, a stale one only costs a failed get or put.

    With ttl (seconds) entries expire, without it they live as long as the
    cache does.
    """
    def __init__(self, backend, limit=None, ttl=None):
        self.backend = backend
        self.limit = limit or config.CLOSEST_STORES_LIMIT
        self.ttl = ttl if ttl is not None else (config.STORE_CACHE_TTL or None)
        self._entries = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._entries)

    def __contains__(self, target):
        return self._lookup(target) is not None

    async def closest_stores_for_hash(self, target):
        """
        Walks the overlay towards target and returns the addresses of the
        closest store contacts, nearest first.
        """
        await self.backend.lookup_stores(target)
        contacts = self.backend.closest_stores(target, self.limit)
        return [contact.addr for contact in contacts]

    def _lookup(self, target):
        # dict reads are atomic, readers never wait for a writer
        entry = self._entries.get(target)
        if entry is None:
            return None
        addrs, stored_at = entry
        if self.ttl is not None and time.monotonic() - stored_at > self.ttl:
            return None
        return addrs

    async def resolve_stores(self, target):
        addrs = self._lookup(target)
        if addrs is not None:
            return addrs

        addrs = await self.closest_stores_for_hash(target)
        with self._lock:
            self._entries[target] = (addrs, time.monotonic())
        log.debug(f"Resolved {len(addrs)} stores for {target.hex()}")
        return addrs

    def invalidate(self, target=None):
        with self._lock:
            if target is None:
                self._entries.clear()
            else:
                self._entries.pop(target, None)
