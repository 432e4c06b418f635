import pytest
from dhtstore import utils


def test_split_nodes():
    # Node ID: 20 bytes of 'a', IP 192.168.1.1, port 6881
    node_id = b'a' * 20
    nodes_data = node_id + b'\xc0\xa8\x01\x01\x1a\xe1'
    assert list(utils.split_nodes(nodes_data)) == [(node_id, "192.168.1.1", 6881)]

    node_id_2 = b'b' * 20
    nodes_data_two = nodes_data + node_id_2 + b'\x0a\x0a\x0a\x0a\xff\xff'
    assert list(utils.split_nodes(nodes_data_two)) == [
        (node_id, "192.168.1.1", 6881),
        (node_id_2, "10.10.10.10", 65535)
    ]

    assert list(utils.split_nodes(b'')) == []

    # Not a multiple of 26
    assert list(utils.split_nodes(b'a' * 25)) == []


def test_pack_nodes_skips_invalid_addresses():
    nodes = [
        (b'a' * 20, ("192.168.1.1", 6881)),
        (b'b' * 20, ("not an ip", 6881)),
        (b'c' * 20, ("10.10.10.10", 70000)),
    ]
    packed = utils.pack_nodes(nodes)
    assert packed == b'a' * 20 + b'\xc0\xa8\x01\x01\x1a\xe1'


def test_get_distance():
    id1 = b'\x00' * 20
    id2 = b'\x00' * 19 + b'\x01'
    assert utils.get_distance(id1, id2) == 1

    id3 = b'\xff' * 20
    assert utils.get_distance(id3, id1) == (2**160) - 1

    # Distance is symmetric
    assert utils.get_distance(id1, id3) == utils.get_distance(id3, id1)


def test_compact_addr():
    assert utils.pack_addr(("1.2.3.4", 6881)) == b'\x01\x02\x03\x04\x1a\xe1'
    assert utils.unpack_addr(b'\x01\x02\x03\x04\x1a\xe1') == ("1.2.3.4", 6881)
    assert utils.unpack_addr(b'\x00' * 16 + b'\x00\x50') == ("::", 80)
    assert utils.unpack_addr(b'\x01\x02\x03') is None


@pytest.mark.parametrize("value,expected", [
    ("router.bittorrent.com:6881", ("router.bittorrent.com", 6881)),
    ("1.2.3.4:51413", ("1.2.3.4", 51413)),
    ("1.2.3.4", ("1.2.3.4", 6881)),
    ("[::1]:7000", ("::1", 7000)),
])
def test_parse_hostport(value, expected):
    assert utils.parse_hostport(value) == expected


def test_format_addr():
    assert utils.format_addr(("1.2.3.4", 6881)) == "1.2.3.4:6881"
    assert utils.format_addr(("::1", 6881)) == "[::1]:6881"


def test_parse_hash():
    raw = bytes(range(20))
    assert utils.parse_hash(raw) == raw
    assert utils.parse_hash(raw.hex()) == raw
    with pytest.raises(ValueError):
        utils.parse_hash(b'short')
