"""
The capabilities dhtstore needs from a DHT node.

The client, the bootstrap manager and the store cache only talk to the
overlay through DHTBackend, so the UDP node in dhtstore.node and an in-memory
fake can be swapped freely.
"""
import abc
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


@dataclass
class Contact:
    node_id: bytes
    addr: tuple
    token: Optional[bytes] = None
    last_seen: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def touch(self):
        self.last_seen = datetime.now(timezone.utc)


class DHTBackend(abc.ABC):

    @property
    @abc.abstractmethod
    def node_id(self):
        """The ID this node currently answers with."""

    @property
    @abc.abstractmethod
    def local_addr(self):
        """The (ip, port) the node is bound to, or None before listening."""

    @abc.abstractmethod
    async def bootstrap(self, self_id, public_ip, contacts):
        """
        Joins the overlay as self_id through the "host:port" contacts.

        Returns the public IP recommended by the overlay when it differs from
        public_ip, or when self_id is not secure for it. Returns None when
        nothing needs to change. Raises BootstrapError on failure.
        """

    @abc.abstractmethod
    def bootstrap_export(self):
        """The "host:port" addresses worth persisting for the next bootstrap."""

    @abc.abstractmethod
    async def lookup_stores(self, target):
        """Walks the overlay towards target, collecting store contacts."""

    @abc.abstractmethod
    def closest_stores(self, target, limit):
        """Up to limit known store contacts, closest to target first."""

    @abc.abstractmethod
    async def mget_all(self, target, public_key, seq, salt, *addrs):
        """
        Asks every addr for the mutable item at target and returns the value
        with the highest sequence number that is at least seq. Raises
        ValueNotFoundError when none qualifies.
        """

    @abc.abstractmethod
    async def mput_all(self, item, *addrs):
        """Stores item on every addr."""

    @abc.abstractmethod
    def remove_node(self, addr):
        """Forgets addr in every routing table."""

    @abc.abstractmethod
    async def listen_and_serve(self, query_handler=None, ready=None):
        """Serves queries; awaits ready(self) once listening."""
