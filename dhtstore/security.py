"""
BEP42 node identity.

A node ID is bound to the node's public IP: the first 21 bits are a CRC32C of
the masked IP combined with three random bits taken from the last byte of the
ID. Peers recompute that prefix to decide whether a claimed ID may be trusted.
"""
import hashlib
import ipaddress
from dataclasses import dataclass
from typing import Optional

import crc32c

IPV4_MASK = bytes([0x03, 0x0f, 0x3f, 0xff])
IPV6_MASK = bytes([0x01, 0x03, 0x07, 0x0f, 0x1f, 0x3f, 0x7f, 0xff])


def _host_of(addr):
    if isinstance(addr, (tuple, list)):
        return addr[0]
    return str(addr)


def _crc_ip(ip, rand):
    ip = ipaddress.ip_address(_host_of(ip))
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped
    mask = IPV4_MASK if ip.version == 4 else IPV6_MASK
    masked = bytearray(b & m for b, m in zip(ip.packed, mask))
    masked[0] |= (rand & 0x7) << 5
    return crc32c.crc32c(bytes(masked))


def is_local_network(ip):
    ip = ipaddress.ip_address(_host_of(ip))
    return ip.is_private or ip.is_loopback or ip.is_link_local


def secure_node_id(node_id, ip):
    """Returns a copy of node_id with its BEP42 prefix computed for ip."""
    node_id = bytearray(node_id)
    crc = _crc_ip(ip, node_id[19])
    node_id[0] = (crc >> 24) & 0xff
    node_id[1] = (crc >> 16) & 0xff
    node_id[2] = ((crc >> 8) & 0xf8) | (node_id[2] & 0x7)
    return bytes(node_id)


def node_id_secure(node_id, ip):
    """
    Checks that node_id was generated for ip.

    Local network addresses are exempt, they never reach the public overlay
    with a meaningful address binding.
    """
    if not node_id or len(node_id) != 20:
        return False
    try:
        if is_local_network(ip):
            return True
        crc = _crc_ip(ip, node_id[19])
    except ValueError:
        return False
    if node_id[0] != (crc >> 24) & 0xff:
        return False
    if node_id[1] != (crc >> 16) & 0xff:
        return False
    if node_id[2] & 0xf8 != (crc >> 8) & 0xf8:
        return False
    return True


def generate_secure_node_id(hostname, local_addr=None, public_ip=None):
    """
    Derives a node ID from the host identity.

    hostname is the machine name (or empty), local_addr the socket address
    as an (ip, port) tuple, public_ip the externally observed IP if known.
    Without any IP the ID is the plain SHA-1 of the host identity.
    """
    seed = hostname or ""
    if local_addr is not None:
        seed += _format_local_addr(local_addr)
    node_id = hashlib.sha1(seed.encode("utf-8")).digest()
    if len(node_id) != 20:
        raise RuntimeError(f"node id must be 20 bytes, got {len(node_id)}")

    if public_ip is None and local_addr is not None:
        public_ip = _host_of(local_addr)
    if public_ip is not None:
        node_id = secure_node_id(node_id, public_ip)
    return node_id


def _format_local_addr(addr):
    if isinstance(addr, (tuple, list)):
        ip, port = addr[0], addr[1]
        if ":" in ip:
            return f"[{ip}]:{port}"
        return f"{ip}:{port}"
    return str(addr)


@dataclass(frozen=True)
class NodeIdentity:
    """
    The node ID of this process and the public IP it is bound to.

    An identity is Unbound while public_ip is None and Bound(ip) afterwards.
    bind() never mutates, it returns the next state.
    """
    node_id: bytes
    public_ip: Optional[str] = None

    @classmethod
    def create(cls, hostname, local_addr=None, public_ip=None):
        return cls(generate_secure_node_id(hostname, local_addr, public_ip), public_ip)

    @property
    def bound(self):
        return self.public_ip is not None

    def bind(self, public_ip, hostname, local_addr=None):
        return NodeIdentity(generate_secure_node_id(hostname, local_addr, public_ip), public_ip)

    def secure_for(self, ip):
        return node_id_secure(self.node_id, ip)
