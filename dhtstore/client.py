import asyncio
import logging

import config
from . import utils
from .exceptions import NetworkError, ValueNotFoundError
from .stores import StoreLocatorCache


class DHTClient:
    """
    Reads and writes BEP44 mutable items through a DHTBackend.

    Exactly one failure is recoverable: ValueNotFoundError from get. Every
    other failure is raised as a NetworkError naming the phase that failed.
    """
    def __init__(self, backend, cache=None):
        self.backend = backend
        self.cache = cache if cache is not None else StoreLocatorCache(backend)
        self.log = logging.getLogger("DHTClient")

    async def _resolve(self, target, phase):
        try:
            return await self.cache.resolve_stores(target)
        except Exception as e:
            raise NetworkError(phase, e) from e

    async def get(self, target, public_key, seq, salt=b""):
        """
        Returns the freshest value stored at target whose sequence number
        is at least seq.
        """
        target = utils.parse_hash(target)
        addrs = await self._resolve(target, "finding peers for get")
        try:
            return await self.backend.mget_all(target, public_key, seq, salt, *addrs)
        except ValueNotFoundError:
            raise
        except Exception as e:
            raise NetworkError("retrieving value from the DHT network", e) from e

    async def put(self, item):
        addrs = await self._resolve(item.target, "finding peers for put")
        try:
            await self.backend.mput_all(item, *addrs)
        except Exception as e:
            raise NetworkError("storing value in the DHT network", e) from e

    async def poll(self, target, public_key, seq, salt=b"", timeout=None,
                   initial_delay=None, max_delay=None):
        """
        Calls get until the value shows up. Waits with exponential backoff
        between attempts. With timeout, gives up with asyncio.TimeoutError;
        cancelling the calling task stops polling as well.
        """
        return await asyncio.wait_for(
            self._poll(target, public_key, seq, salt, initial_delay, max_delay), timeout
        )

    async def _poll(self, target, public_key, seq, salt, initial_delay, max_delay):
        delay = initial_delay if initial_delay is not None else config.POLL_INITIAL_DELAY
        max_delay = max_delay if max_delay is not None else config.POLL_MAX_DELAY
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.get(target, public_key, seq, salt)
            except ValueNotFoundError as e:
                self.log.info(f"{e} (attempt {attempt}), retrying in {delay:.1f}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, max_delay)

