import pytest
from fastbencode import bdecode, bencode
from unittest.mock import AsyncMock, MagicMock

from dhtstore import constants
from dhtstore.krpc import (
    KRPCDecodeError,
    Msg,
    MsgArgs,
    Return,
    secured_query_only,
    secured_response_only,
)
from dhtstore.security import generate_secure_node_id

REMOTE = ("124.31.75.21", 6881)
SECURE_ID = generate_secure_node_id("remote", None, REMOTE[0])
INSECURE_ID = generate_secure_node_id("remote", None, "21.75.31.124")


def test_query_encoding():
    msg = Msg.query(b"aa", constants.KRPC_GET, MsgArgs(id=b"i" * 20, target=b"t" * 20, seq=3))
    decoded = bdecode(msg.encode())
    assert decoded == {
        b"t": b"aa",
        b"y": b"q",
        b"q": b"get",
        b"a": {b"id": b"i" * 20, b"target": b"t" * 20, b"seq": 3},
    }


def test_put_query_omits_empty_salt():
    args = MsgArgs(id=b"i" * 20, token=b"tok", v=b"hello", seq=1, k=b"k" * 32, salt=b"", sig=b"s" * 64)
    decoded = bdecode(Msg.query(b"aa", constants.KRPC_PUT, args).encode())
    assert b"salt" not in decoded[b"a"]
    assert b"cas" not in decoded[b"a"]


def test_response_with_ip_decodes():
    data = bencode({
        b"t": b"aa",
        b"y": b"r",
        b"ip": b"\x01\x02\x03\x04\x1a\xe1",
        b"r": {b"id": b"i" * 20, b"token": b"tok", b"v": b"hello", b"seq": 4, b"k": b"k" * 32},
    })
    msg = Msg.decode(data)
    assert msg.y == constants.KRPC_RESPONSE
    assert msg.ip == ("1.2.3.4", 6881)
    assert msg.r.token == b"tok"
    assert msg.r.v == b"hello"
    assert msg.r.seq == 4
    assert msg.sender_id == b"i" * 20
    assert msg.a is None and msg.e is None


def test_error_decodes():
    msg = Msg.decode(bencode({b"t": b"aa", b"y": b"e", b"e": [302, b"sequence number less than current"]}))
    assert msg.e.code == 302
    assert msg.e.message == b"sequence number less than current"
    assert msg.sender_id == b""


def test_error_round_trip():
    msg = Msg.error(b"aa", constants.ERR_INSECURE_NODE_ID, ip=REMOTE)
    decoded = Msg.decode(msg.encode())
    assert decoded.e.code == 305
    assert decoded.ip == REMOTE


@pytest.mark.parametrize("data", [
    b"",
    b"not bencode",
    bencode([1, 2]),
    bencode({b"y": b"q"}),
    bencode({b"t": b"aa", b"y": b"x"}),
    bencode({b"t": b"aa", b"y": b"r", b"r": b"oops"}),
    bencode({b"t": b"aa", b"y": b"q", b"q": b"get", b"a": {b"seq": b"nan"}}),
])
def test_malformed_messages(data):
    with pytest.raises(KRPCDecodeError):
        Msg.decode(data)


def test_secured_response_keeps_token_of_secure_node():
    callback = MagicMock()
    msg = Msg.response(b"aa", Return(id=SECURE_ID, token=b"tok"))
    secured_response_only(REMOTE, callback)(msg)
    callback.assert_called_once_with(msg)
    assert msg.r.token == b"tok"


def test_secured_response_strips_token_of_insecure_node():
    callback = MagicMock()
    msg = Msg.response(b"aa", Return(id=INSECURE_ID, token=b"tok", v=b"hello"))
    secured_response_only(REMOTE, callback)(msg)
    callback.assert_called_once_with(msg)
    assert msg.r.token is None
    assert msg.r.v == b"hello"


def _node():
    node = MagicMock()
    return node


@pytest.mark.asyncio
@pytest.mark.parametrize("method", [constants.KRPC_GET, constants.KRPC_GET_PEERS])
async def test_insecure_get_is_refused(method):
    node = _node()
    handler = AsyncMock()
    msg = Msg.query(b"aa", method, MsgArgs(id=INSECURE_ID, target=b"t" * 20, info_hash=b"t" * 20))

    await secured_query_only(node, handler)(msg, REMOTE)

    handler.assert_not_called()
    node.peers_table.remove_node.assert_called_once_with(REMOTE)
    node.stores_table.remove_node.assert_called_once_with(REMOTE)
    node.send_error.assert_called_once_with(REMOTE, b"aa", constants.ERR_INSECURE_NODE_ID)


@pytest.mark.asyncio
async def test_secure_get_is_forwarded():
    node = _node()
    handler = AsyncMock(return_value="handled")
    msg = Msg.query(b"aa", constants.KRPC_GET, MsgArgs(id=SECURE_ID, target=b"t" * 20))

    result = await secured_query_only(node, handler)(msg, REMOTE)

    assert result == "handled"
    handler.assert_awaited_once_with(msg, REMOTE)
    node.send_error.assert_not_called()
    node.peers_table.remove_node.assert_not_called()


@pytest.mark.asyncio
@pytest.mark.parametrize("method", [constants.KRPC_PING, constants.KRPC_FIND_NODE, constants.KRPC_PUT])
async def test_other_queries_are_not_checked(method):
    node = _node()
    handler = AsyncMock()
    msg = Msg.query(b"aa", method, MsgArgs(id=INSECURE_ID))

    await secured_query_only(node, handler)(msg, REMOTE)

    handler.assert_awaited_once_with(msg, REMOTE)
    node.send_error.assert_not_called()


@pytest.mark.asyncio
async def test_query_without_arguments_is_a_protocol_error():
    node = _node()
    handler = AsyncMock()
    msg = Msg(t=b"aa", y=constants.KRPC_QUERY, q=constants.KRPC_GET)

    await secured_query_only(node, handler)(msg, REMOTE)

    handler.assert_not_called()
    node.send_error.assert_called_once_with(REMOTE, b"aa", constants.ERR_PROTOCOL)
