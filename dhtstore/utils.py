import binascii
import ipaddress
import os
import socket
from socket import inet_ntoa
import struct
from struct import pack, unpack


def parse_hash(value):
    """Accepts a 20-byte hash or its 40-character hex form."""
    if isinstance(value, str):
        value = binascii.unhexlify(value)
    if len(value) != 20:
        raise ValueError(f"invalid hash length {len(value)}")
    return value


def random_node_id(size=20):
    return os.urandom(size)


def split_nodes(nodes):
    length = len(nodes)
    if (length % 26) != 0:
        return

    for i in range(0, length, 26):
        nid = nodes[i:i+20]
        ip = inet_ntoa(nodes[i+20:i+24])
        port = unpack("!H", nodes[i+24:i+26])[0]
        yield nid, ip, port


def pack_nodes(nodes):
    """
    Packs (node_id, (ip, port)) pairs into the compact node info format.
    Nodes with an invalid address are skipped.
    """
    packed_nodes = []
    for node_id, addr in nodes:
        try:
            packed_nodes.append(node_id + socket.inet_aton(addr[0]) + pack("!H", addr[1]))
        except (struct.error, OSError, TypeError):
            continue
    return b"".join(packed_nodes)


def get_distance(node1_id, node2_id):
    """
    Calculate the XOR distance between two node IDs.
    """
    return int.from_bytes(node1_id, 'big') ^ int.from_bytes(node2_id, 'big')


def pack_addr(addr):
    """Compact form of an (ip, port) pair: 6 bytes for IPv4, 18 for IPv6."""
    ip, port = addr[0], addr[1]
    return ipaddress.ip_address(ip).packed + pack("!H", port)


def unpack_addr(data):
    """Inverse of pack_addr. Returns None for anything that is not 6 or 18 bytes."""
    if len(data) not in (6, 18):
        return None
    ip = str(ipaddress.ip_address(data[:-2]))
    port = unpack("!H", data[-2:])[0]
    return ip, port


def parse_hostport(value, default_port=6881):
    """Splits "host:port" (or "[v6]:port") into a (host, port) tuple."""
    if value.startswith("["):
        host, _, rest = value[1:].partition("]")
        port = rest.lstrip(":")
    elif value.count(":") == 1:
        host, _, port = value.partition(":")
    else:
        host, port = value, ""
    return host, int(port) if port else default_port


def format_addr(addr):
    ip, port = addr[0], addr[1]
    if ":" in ip:
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"
