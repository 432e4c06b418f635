import asyncio

import pytest
from unittest.mock import AsyncMock

from dhtstore import constants
from dhtstore.client import DHTClient
from dhtstore.exceptions import KRPCErrorResponse, NetworkError, ValueNotFoundError
from dhtstore.mutable import make_mutable_target, public_key_for
from dhtstore.stores import StoreLocatorCache

# Mark all tests in this file as asyncio
pytestmark = pytest.mark.asyncio


async def test_put_then_get(backend, private_key):
    client = DHTClient(backend)
    item = make_mutable_target(private_key, "hello", 1, "")

    await client.put(item)
    value = await client.get(item.target, public_key_for(private_key), 1, "")

    assert value == b"hello"
    assert all(store.get(item.target) is not None for store in backend.stores.values())


async def test_get_with_higher_seq_is_not_found(backend, private_key):
    client = DHTClient(backend)
    item = make_mutable_target(private_key, "hello", 1, "")
    await client.put(item)

    with pytest.raises(ValueNotFoundError):
        await client.get(item.target, public_key_for(private_key), 2, "")


async def test_get_accepts_hex_target(backend, private_key):
    client = DHTClient(backend)
    item = make_mutable_target(private_key, b"hello", 1)
    await client.put(item)
    assert await client.get(item.target.hex(), public_key_for(private_key), 1) == b"hello"


async def test_get_returns_freshest_value(backend, private_key):
    client = DHTClient(backend)
    await client.put(make_mutable_target(private_key, b"one", 1))
    item = make_mutable_target(private_key, b"two", 2)
    await client.put(item)
    assert await client.get(item.target, public_key_for(private_key), 1) == b"two"


async def test_lower_seq_put_is_rejected(backend, private_key):
    client = DHTClient(backend)
    await client.put(make_mutable_target(private_key, b"two", 2))

    with pytest.raises(NetworkError) as exc:
        await client.put(make_mutable_target(private_key, b"one", 1))
    assert isinstance(exc.value.__cause__, KRPCErrorResponse)
    assert exc.value.__cause__.code == constants.ERR_SEQ_LESS_THAN_CURRENT


async def test_stores_are_resolved_once(backend, private_key):
    client = DHTClient(backend)
    item = make_mutable_target(private_key, b"hello", 1)
    await client.put(item)
    await client.get(item.target, public_key_for(private_key), 1)
    await client.get(item.target, public_key_for(private_key), 1)
    assert backend.lookup_calls == 1


async def test_clients_can_share_a_cache(backend, private_key):
    cache = StoreLocatorCache(backend)
    writer = DHTClient(backend, cache=cache)
    reader = DHTClient(backend, cache=cache)
    item = make_mutable_target(private_key, b"hello", 1)
    await writer.put(item)
    await reader.get(item.target, public_key_for(private_key), 1)
    assert backend.lookup_calls == 1


async def test_lookup_failure_is_wrapped(backend, private_key):
    backend.fail_lookup = OSError("network down")
    client = DHTClient(backend)
    item = make_mutable_target(private_key, b"hello", 1)

    with pytest.raises(NetworkError, match="finding peers for put failed"):
        await client.put(item)
    with pytest.raises(NetworkError, match="finding peers for get failed"):
        await client.get(item.target, public_key_for(private_key), 1)


async def test_retrieval_failure_is_wrapped(backend, private_key):
    backend.mget_all = AsyncMock(side_effect=OSError("boom"))
    client = DHTClient(backend)

    with pytest.raises(NetworkError, match="retrieving value from the DHT network failed") as exc:
        await client.get(b"\x01" * 20, public_key_for(private_key), 1)
    assert isinstance(exc.value.__cause__, OSError)


async def test_poll_retries_until_found(backend, private_key):
    client = DHTClient(backend)
    item = make_mutable_target(private_key, b"late", 1)
    public_key = public_key_for(private_key)

    async def publish_later():
        await asyncio.sleep(0.05)
        await client.put(item)

    task = asyncio.ensure_future(publish_later())
    value = await client.poll(item.target, public_key, 1, timeout=5, initial_delay=0.01, max_delay=0.02)
    await task
    assert value == b"late"


async def test_poll_gives_up_at_deadline(backend, private_key):
    client = DHTClient(backend)
    client.get = AsyncMock(side_effect=ValueNotFoundError())

    with pytest.raises(asyncio.TimeoutError):
        await client.poll(b"\x01" * 20, public_key_for(private_key), 1,
                          timeout=0.1, initial_delay=0.01, max_delay=0.02)
    assert client.get.call_count > 1


async def test_poll_stops_on_fatal_error(backend, private_key):
    client = DHTClient(backend)
    client.get = AsyncMock(side_effect=NetworkError("retrieving value from the DHT network"))

    with pytest.raises(NetworkError):
        await client.poll(b"\x01" * 20, public_key_for(private_key), 1, timeout=1, initial_delay=0.01)
    assert client.get.call_count == 1


async def test_poll_backoff_doubles_up_to_max(backend, private_key, monkeypatch):
    client = DHTClient(backend)
    client.get = AsyncMock(side_effect=[ValueNotFoundError()] * 4 + [b"done"])
    delays = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay):
        delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr("dhtstore.client.asyncio.sleep", fake_sleep)
    value = await client.poll(b"\x01" * 20, b"k" * 32, 1, initial_delay=1, max_delay=5)

    assert value == b"done"
    assert delays == [1, 2, 4, 5]


async def test_empty_injected_cache_is_kept(backend):
    cache = StoreLocatorCache(backend)
    assert len(cache) == 0
    assert DHTClient(backend, cache=cache).cache is cache
