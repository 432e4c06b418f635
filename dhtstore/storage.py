import logging
import time

from fastbencode import bencode

from . import constants
from .mutable import MutableItem, mutable_target, verify_signature


log = logging.getLogger(__name__)


class StoreRejected(Exception):
    """A put was refused. code is the KRPC error code sent back to the writer."""

    def __init__(self, code):
        self.code = code
        super().__init__(constants.ERROR_MESSAGES.get(code, b"").decode())


class MutableStore:
    """
    Mutable items held by this node on behalf of the overlay.

    Writes follow compare-and-swap semantics: a write is accepted only if its
    sequence number is not lower than the stored one, and, when the writer
    sends a cas value, only if cas equals the stored sequence number.
    """
    def __init__(self, max_items=10_000):
        self.max_items = max_items
        self.items = {}
        self.stored_at = {}

    def __len__(self):
        return len(self.items)

    def __contains__(self, target):
        return target in self.items

    def get(self, target):
        return self.items.get(target)

    def put(self, target, value, seq, public_key, signature, salt=b"", cas=None):
        if len(bencode(value)) >= constants.MAX_VALUE_SIZE:
            raise StoreRejected(constants.ERR_MESSAGE_TOO_BIG)
        if len(salt) > constants.MAX_SALT_SIZE:
            raise StoreRejected(constants.ERR_SALT_TOO_BIG)
        if target != mutable_target(public_key, salt):
            raise StoreRejected(constants.ERR_INVALID_SIGNATURE)
        if not verify_signature(public_key, signature, seq, value, salt):
            raise StoreRejected(constants.ERR_INVALID_SIGNATURE)

        current = self.items.get(target)
        if current is not None:
            if cas is not None and cas != current.seq:
                raise StoreRejected(constants.ERR_CAS_MISMATCH)
            if seq < current.seq:
                raise StoreRejected(constants.ERR_SEQ_LESS_THAN_CURRENT)
        elif len(self.items) >= self.max_items:
            self._evict_oldest()

        item = MutableItem(
            target=target,
            value=value,
            seq=seq,
            public_key=public_key,
            signature=signature,
            salt=salt,
            cas=cas,
        )
        self.items[target] = item
        self.stored_at[target] = time.monotonic()
        return item

    def _evict_oldest(self):
        oldest = min(self.stored_at, key=self.stored_at.get)
        log.debug(f"Store full, evicting {oldest.hex()}")
        del self.items[oldest]
        del self.stored_at[oldest]
