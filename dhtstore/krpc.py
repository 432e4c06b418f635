"""
KRPC messages and the BEP42 security filters.

A KRPC message is a bencoded dictionary with a transaction id "t", a type
"y" ("q", "r" or "e") and exactly one payload matching the type: "a" for
queries, "r" for responses, "e" for errors.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from fastbencode import bencode, bdecode

from . import constants
from . import utils
from .security import node_id_secure


log = logging.getLogger(__name__)


class KRPCDecodeError(ValueError):
    """The datagram is not a well formed KRPC message."""


def _opt_bytes(d, key):
    value = d.get(key)
    if value is None:
        return None
    if not isinstance(value, bytes):
        raise KRPCDecodeError(f"{key!r} must be a byte string")
    return value


def _opt_int(d, key):
    value = d.get(key)
    if value is None:
        return None
    if not isinstance(value, int):
        raise KRPCDecodeError(f"{key!r} must be an integer")
    return value


def _put(d, key, value):
    if value is not None:
        d[key] = value


@dataclass
class MsgArgs:
    """Query arguments."""
    id: bytes = b""
    info_hash: Optional[bytes] = None
    target: Optional[bytes] = None
    token: Optional[bytes] = None
    port: Optional[int] = None
    implied_port: Optional[int] = None
    v: Optional[bytes] = None
    seq: Optional[int] = None
    cas: Optional[int] = None
    k: Optional[bytes] = None
    salt: Optional[bytes] = None
    sig: Optional[bytes] = None

    def to_dict(self):
        d = {constants.KRPC_ID: self.id}
        _put(d, constants.KRPC_INFO_HASH, self.info_hash)
        _put(d, constants.KRPC_TARGET, self.target)
        _put(d, constants.KRPC_TOKEN, self.token)
        _put(d, constants.KRPC_PORT, self.port)
        _put(d, constants.KRPC_IMPLIED_PORT, self.implied_port)
        _put(d, constants.KRPC_V, self.v)
        _put(d, constants.KRPC_SEQ, self.seq)
        _put(d, constants.KRPC_CAS, self.cas)
        _put(d, constants.KRPC_K, self.k)
        if self.salt:
            d[constants.KRPC_SALT] = self.salt
        _put(d, constants.KRPC_SIG, self.sig)
        return d

    @classmethod
    def from_dict(cls, d):
        if not isinstance(d, dict):
            raise KRPCDecodeError("query arguments must be a dictionary")
        return cls(
            id=_opt_bytes(d, constants.KRPC_ID) or b"",
            info_hash=_opt_bytes(d, constants.KRPC_INFO_HASH),
            target=_opt_bytes(d, constants.KRPC_TARGET),
            token=_opt_bytes(d, constants.KRPC_TOKEN),
            port=_opt_int(d, constants.KRPC_PORT),
            implied_port=_opt_int(d, constants.KRPC_IMPLIED_PORT),
            v=d.get(constants.KRPC_V),
            seq=_opt_int(d, constants.KRPC_SEQ),
            cas=_opt_int(d, constants.KRPC_CAS),
            k=_opt_bytes(d, constants.KRPC_K),
            salt=_opt_bytes(d, constants.KRPC_SALT),
            sig=_opt_bytes(d, constants.KRPC_SIG),
        )


@dataclass
class Return:
    """Response payload."""
    id: bytes = b""
    nodes: Optional[bytes] = None
    token: Optional[bytes] = None
    values: Optional[List[bytes]] = None
    v: Optional[bytes] = None
    seq: Optional[int] = None
    k: Optional[bytes] = None
    sig: Optional[bytes] = None

    def to_dict(self):
        d = {constants.KRPC_ID: self.id}
        _put(d, constants.KRPC_NODES, self.nodes)
        _put(d, constants.KRPC_TOKEN, self.token)
        _put(d, constants.KRPC_VALUES, self.values)
        _put(d, constants.KRPC_V, self.v)
        _put(d, constants.KRPC_SEQ, self.seq)
        _put(d, constants.KRPC_K, self.k)
        _put(d, constants.KRPC_SIG, self.sig)
        return d

    @classmethod
    def from_dict(cls, d):
        if not isinstance(d, dict):
            raise KRPCDecodeError("response payload must be a dictionary")
        values = d.get(constants.KRPC_VALUES)
        if values is not None and not isinstance(values, list):
            raise KRPCDecodeError("'values' must be a list")
        return cls(
            id=_opt_bytes(d, constants.KRPC_ID) or b"",
            nodes=_opt_bytes(d, constants.KRPC_NODES),
            token=_opt_bytes(d, constants.KRPC_TOKEN),
            values=values,
            v=d.get(constants.KRPC_V),
            seq=_opt_int(d, constants.KRPC_SEQ),
            k=_opt_bytes(d, constants.KRPC_K),
            sig=_opt_bytes(d, constants.KRPC_SIG),
        )

    def split_nodes(self):
        return list(utils.split_nodes(self.nodes or b""))


@dataclass
class KRPCError:
    code: int = constants.ERR_GENERIC
    message: bytes = b""

    @classmethod
    def for_code(cls, code):
        return cls(code, constants.ERROR_MESSAGES.get(code, b""))

    def to_list(self):
        return [self.code, self.message]

    @classmethod
    def from_list(cls, e):
        if not isinstance(e, list) or not e:
            raise KRPCDecodeError("error payload must be a non empty list")
        code = e[0] if isinstance(e[0], int) else constants.ERR_GENERIC
        message = e[1] if len(e) > 1 and isinstance(e[1], bytes) else b""
        return cls(code, message)


@dataclass
class Msg:
    t: bytes
    y: bytes
    q: Optional[bytes] = None
    a: Optional[MsgArgs] = None
    r: Optional[Return] = None
    e: Optional[KRPCError] = None
    ip: Optional[tuple] = None  # BEP42: the receiver's address as seen by the sender
    ro: Optional[int] = None  # BEP43: read only node

    @classmethod
    def query(cls, tid, method, args, ro=None):
        return cls(t=tid, y=constants.KRPC_QUERY, q=method, a=args, ro=ro)

    @classmethod
    def response(cls, tid, ret, ip=None):
        return cls(t=tid, y=constants.KRPC_RESPONSE, r=ret, ip=ip)

    @classmethod
    def error(cls, tid, code, ip=None):
        return cls(t=tid, y=constants.KRPC_ERROR, e=KRPCError.for_code(code), ip=ip)

    @property
    def sender_id(self):
        if self.y == constants.KRPC_QUERY and self.a is not None:
            return self.a.id
        if self.y == constants.KRPC_RESPONSE and self.r is not None:
            return self.r.id
        return b""

    def to_dict(self):
        d = {constants.KRPC_T: self.t, constants.KRPC_Y: self.y}
        if self.y == constants.KRPC_QUERY:
            d[constants.KRPC_Q] = self.q
            d[constants.KRPC_A] = (self.a or MsgArgs()).to_dict()
        elif self.y == constants.KRPC_RESPONSE:
            d[constants.KRPC_R] = (self.r or Return()).to_dict()
        elif self.y == constants.KRPC_ERROR:
            d[constants.KRPC_E] = (self.e or KRPCError()).to_list()
        if self.ip is not None:
            d[constants.KRPC_IP] = utils.pack_addr(self.ip)
        if self.ro:
            d[constants.KRPC_RO] = self.ro
        return d

    def encode(self):
        return bencode(self.to_dict())

    @classmethod
    def from_dict(cls, d):
        if not isinstance(d, dict):
            raise KRPCDecodeError("message must be a dictionary")
        tid = d.get(constants.KRPC_T)
        y = d.get(constants.KRPC_Y)
        if not isinstance(tid, bytes):
            raise KRPCDecodeError("missing transaction id")
        if y not in (constants.KRPC_QUERY, constants.KRPC_RESPONSE, constants.KRPC_ERROR):
            raise KRPCDecodeError(f"unknown message type {y!r}")

        msg = cls(t=tid, y=y)
        if y == constants.KRPC_QUERY:
            msg.q = _opt_bytes(d, constants.KRPC_Q)
            if constants.KRPC_A in d:
                msg.a = MsgArgs.from_dict(d[constants.KRPC_A])
        elif y == constants.KRPC_RESPONSE:
            msg.r = Return.from_dict(d.get(constants.KRPC_R))
        else:
            msg.e = KRPCError.from_list(d.get(constants.KRPC_E))

        ip = d.get(constants.KRPC_IP)
        if isinstance(ip, bytes):
            msg.ip = utils.unpack_addr(ip)
        ro = d.get(constants.KRPC_RO)
        if isinstance(ro, int):
            msg.ro = ro
        return msg

    @classmethod
    def decode(cls, data):
        try:
            d = bdecode(data)
        except Exception as e:
            raise KRPCDecodeError(f"invalid bencode: {e}") from e
        return cls.from_dict(d)


def secured_response_only(remote, callback):
    """
    Wraps a response callback so that responses whose node ID does not
    match the responder's IP lose their token. Such a node is then not
    eligible as a storage target.
    """
    def wrapper(msg):
        if msg.r is not None and not node_id_secure(msg.r.id, remote[0]):
            if msg.r.token is not None:
                log.debug(f"Dropping token of insecure node {utils.format_addr(remote)}")
            msg.r.token = None
        return callback(msg)
    return wrapper


def secured_query_only(node, handler):
    """
    Wraps a query handler so that get and get_peers queries from nodes whose
    ID is not bound to their IP are refused with an error, and the sender is
    removed from both routing tables of node. Other queries go through.
    """
    async def wrapper(msg, remote):
        if msg.a is None:
            node.send_error(remote, msg.t, constants.ERR_PROTOCOL)
            return None
        if msg.q in (constants.KRPC_GET, constants.KRPC_GET_PEERS) \
                and not node_id_secure(msg.a.id, remote[0]):
            log.debug(f"Refusing {msg.q.decode()} from insecure node {utils.format_addr(remote)}")
            node.peers_table.remove_node(remote)
            node.stores_table.remove_node(remote)
            node.send_error(remote, msg.t, constants.ERR_INSECURE_NODE_ID)
            return None
        return await handler(msg, remote)
    return wrapper
