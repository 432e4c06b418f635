import asyncio
import heapq
import logging

import config
from . import utils
from .backend import Contact


class RoutingTable:
    """
    A table of 160 k-buckets around an own node ID.

    When a bucket is full the least recently seen contact is challenged with
    ping(addr). If it answers it stays and the newcomer is dropped, otherwise
    it is replaced.
    """
    def __init__(self, node_id, ping=None, k=None, name="peers"):
        self.node_id = node_id
        self.k = k or config.K
        self.ping = ping
        self.name = name
        self.log = logging.getLogger(f"RoutingTable[{name}]")
        self.k_buckets = [[] for _ in range(160)]
        self.k_bucket_locks = [asyncio.Lock() for _ in range(160)]

    def __len__(self):
        return sum(len(bucket) for bucket in self.k_buckets)

    def __iter__(self):
        return (contact for bucket in self.k_buckets for contact in bucket)

    def _get_bucket_index(self, node_id):
        distance = utils.get_distance(self.node_id, node_id)
        if distance == 0:
            return 0
        return distance.bit_length() - 1

    def rebase(self, node_id):
        """Re-sorts every contact around a new own ID."""
        contacts = list(self)
        self.node_id = node_id
        self.k_buckets = [[] for _ in range(160)]
        for contact in contacts:
            bucket = self.k_buckets[self._get_bucket_index(contact.node_id)]
            if len(bucket) < self.k:
                bucket.append(contact)

    def find(self, addr):
        return next((c for c in self if c.addr == addr), None)

    def touch(self, addr):
        """Marks the contact at addr as most recently seen."""
        for bucket in self.k_buckets:
            contact = next((c for c in bucket if c.addr == addr), None)
            if contact:
                contact.touch()
                bucket.remove(contact)
                bucket.append(contact)
                return contact
        return None

    async def add_node(self, node_id, addr, token=None):
        if len(node_id) != 20 or node_id == self.node_id:
            return None
        bucket_index = self._get_bucket_index(node_id)
        lock = self.k_bucket_locks[bucket_index]

        async with lock:
            bucket = self.k_buckets[bucket_index]

            existing = next((c for c in bucket if c.node_id == node_id), None)
            if existing:
                existing.touch()
                existing.addr = addr
                if token is not None:
                    existing.token = token
                bucket.remove(existing)
                bucket.append(existing)
                return existing

            if len(bucket) < self.k:
                contact = Contact(node_id=node_id, addr=addr, token=token)
                bucket.append(contact)
                return contact

            # Bucket is full, challenge the least-recently-seen contact (at the front)
            lru = bucket[0]
            response = None
            if self.ping is not None:
                response = await self.ping(lru.addr)

            if response is None:
                bucket.remove(lru)
                contact = Contact(node_id=node_id, addr=addr, token=token)
                bucket.append(contact)
                self.log.debug(f"Evicted unresponsive {utils.format_addr(lru.addr)}")
                return contact

            bucket.remove(lru)
            lru.touch()
            bucket.append(lru)
            return None

    def remove_node(self, addr):
        removed = False
        for bucket in self.k_buckets:
            for contact in [c for c in bucket if c.addr == addr]:
                bucket.remove(contact)
                removed = True
        if removed:
            self.log.debug(f"Removed {utils.format_addr(addr)}")
        return removed

    def closest(self, target_id, limit=None):
        """
        Find the closest contacts to target_id, nearest first.
        """
        limit = limit or self.k
        return heapq.nsmallest(
            limit, self, key=lambda c: utils.get_distance(c.node_id, target_id)
        )
