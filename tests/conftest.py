import pytest
from nacl.signing import SigningKey

from dhtstore import constants
from dhtstore.backend import Contact, DHTBackend
from dhtstore.exceptions import BootstrapError, KRPCErrorResponse, ValueNotFoundError
from dhtstore.storage import MutableStore, StoreRejected
from dhtstore import utils


class FakeBackend(DHTBackend):
    """
    An overlay held in memory: a fixed set of store addresses, each with
    its own MutableStore. Counts the calls the core makes into it.
    """
    def __init__(self, store_addrs=None, recommended_ips=None, export=None):
        self._node_id = utils.random_node_id()
        self.store_addrs = list(store_addrs if store_addrs is not None else
                                [("10.0.0.1", 6881), ("10.0.0.2", 6881), ("10.0.0.3", 6881)])
        self.stores = {addr: MutableStore() for addr in self.store_addrs}
        self.recommended_ips = list(recommended_ips or [])
        self.export = export if export is not None else ["10.0.0.9:6881"]
        self.bootstrap_calls = []
        self.lookup_calls = 0
        self.removed = []
        self.fail_lookup = None
        self.fail_bootstrap = None

    @property
    def node_id(self):
        return self._node_id

    @property
    def local_addr(self):
        return ("127.0.0.1", 6881)

    async def bootstrap(self, self_id, public_ip, contacts):
        self.bootstrap_calls.append((self_id, public_ip, list(contacts)))
        if self.fail_bootstrap is not None:
            raise self.fail_bootstrap
        self._node_id = self_id
        if self.recommended_ips:
            return self.recommended_ips.pop(0)
        return None

    def bootstrap_export(self):
        return list(self.export)

    async def lookup_stores(self, target):
        self.lookup_calls += 1
        if self.fail_lookup is not None:
            raise self.fail_lookup

    def closest_stores(self, target, limit):
        return [Contact(node_id=utils.random_node_id(), addr=addr) for addr in self.store_addrs[:limit]]

    async def mget_all(self, target, public_key, seq, salt, *addrs):
        best = None
        for addr in addrs:
            item = self.stores[addr].get(target)
            if item is None or item.public_key != public_key or item.seq < seq:
                continue
            if best is None or item.seq > best.seq:
                best = item
        if best is None:
            raise ValueNotFoundError(f"value not found for id {target.hex()}")
        return best.value

    async def mput_all(self, item, *addrs):
        if not addrs:
            raise BootstrapError("no stores")
        for addr in addrs:
            try:
                self.stores[addr].put(
                    item.target, item.value, item.seq, item.public_key, item.signature,
                    salt=item.salt, cas=item.cas if item.cas else None,
                )
            except StoreRejected as e:
                raise KRPCErrorResponse(e.code, constants.ERROR_MESSAGES[e.code])

    def remove_node(self, addr):
        self.removed.append(addr)

    async def listen_and_serve(self, query_handler=None, ready=None):
        if ready is not None:
            return await ready(self)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def private_key():
    return bytes(SigningKey(b"\x01" * 32))
