import asyncio
import collections
import hashlib
import logging
import os
import socket

import config
from . import constants
from . import utils
from .backend import DHTBackend
from .exceptions import (
    BootstrapError,
    KRPCErrorResponse,
    NetworkError,
    QueryTimeoutError,
    ValueNotFoundError,
)
from .krpc import KRPCDecodeError, Msg, MsgArgs, Return, secured_query_only, secured_response_only
from .mutable import mutable_target, verify_signature
from .routing import RoutingTable
from .security import node_id_secure
from .storage import MutableStore, StoreRejected


__version__ = '1.0.0'


class DHTNode(asyncio.DatagramProtocol, DHTBackend):
    """
    A KRPC node speaking the BEP5 routing queries and the BEP44 get/put
    extension over UDP, with BEP42 node ID enforcement.

    It keeps two routing tables: peers_table for plain node lookups and
    stores_table for nodes that handed out a write token for a get.
    """
    def __init__(self, node_id=None, host=config.DHT_HOST, port=config.DHT_PORT,
                 enforce_node_id=config.ENFORCE_NODE_ID, node_queue_maxsize=1000,
                 node_processor_concurrency=4):
        self._node_id = node_id or utils.random_node_id()
        self.host = host
        self.port = port
        self.transport = None
        self.log = logging.getLogger("DHTNode")
        self._pending_queries = {}
        self.background_tasks = set()

        self.peers_table = RoutingTable(self._node_id, ping=self.ping, name="peers")
        self.stores_table = RoutingTable(self._node_id, k=config.CLOSEST_STORES_LIMIT, name="stores")
        self.storage = MutableStore()
        self.token_secret = os.urandom(16)
        self.ip_votes = collections.Counter()

        self.enforce_node_id = enforce_node_id
        self.query_handler = self._secure(self.handle_query)

        self.node_processor_concurrency = node_processor_concurrency
        self.node_queue = asyncio.Queue(maxsize=node_queue_maxsize)
        self.node_processor_tasks = []

        self.__running = False
        self._stopped = None

    @property
    def node_id(self):
        return self._node_id

    @property
    def local_addr(self):
        if self.transport is None:
            return None
        return self.transport.get_extra_info("sockname")[:2]

    def set_node_id(self, node_id):
        if node_id == self._node_id:
            return
        self.log.info(f"Node ID changed to {node_id.hex()}")
        self._node_id = node_id
        self.peers_table.rebase(node_id)
        self.stores_table.rebase(node_id)

    def _secure(self, handler):
        if self.enforce_node_id:
            return secured_query_only(self, handler)
        return handler

    # -- Transport --

    def connection_made(self, transport):
        self.transport = transport

    def connection_lost(self, exc):
        self.__running = False
        if self._stopped is not None and not self._stopped.done():
            self._stopped.set_result(None)
        super().connection_lost(exc)

    def datagram_received(self, data, addr):
        addr = addr[:2]
        try:
            msg = Msg.decode(data)
        except KRPCDecodeError:
            return
        try:
            self.handle_message(msg, addr)
        except Exception as e:
            self.send_error(addr, msg.t, constants.ERR_SERVER)
            raise e

    def send_message(self, msg, addr):
        if self.transport is None:
            raise NetworkError("sending message", "node is not listening")
        self.transport.sendto(msg.encode(), addr)

    def send_error(self, addr, tid, code):
        self.send_message(Msg.error(tid, code, ip=addr), addr)

    def handle_message(self, msg, addr):
        if msg.y == constants.KRPC_RESPONSE:
            if msg.ip is not None:
                self.ip_votes[msg.ip[0]] += 1
            return self.handle_response(msg, addr)
        elif msg.y == constants.KRPC_ERROR:
            future = self._pending_queries.pop(msg.t, None)
            if future is not None and not future.done():
                future.set_exception(KRPCErrorResponse(msg.e.code, msg.e.message))
            return None
        elif msg.y == constants.KRPC_QUERY:
            task = asyncio.ensure_future(self.query_handler(msg, addr))
            self.background_tasks.add(task)
            task.add_done_callback(self.background_tasks.discard)
            return task

    def handle_response(self, msg, addr):
        future = self._pending_queries.pop(msg.t, None)
        if future is None or future.done():
            return
        self.peers_table.touch(addr)
        if self.enforce_node_id:
            secured_response_only(addr, future.set_result)(msg)
        else:
            future.set_result(msg)

    async def listen(self):
        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(lambda: self, local_addr=(self.host, self.port))
        self.__running = True
        for _ in range(self.node_processor_concurrency):
            task = asyncio.ensure_future(self._node_processor())
            self.background_tasks.add(task)
            task.add_done_callback(self.background_tasks.discard)
            self.node_processor_tasks.append(task)
        self.log.info(f"Listening on {utils.format_addr(self.local_addr)}")

    async def listen_and_serve(self, query_handler=None, ready=None):
        """
        Binds the socket and answers queries. With ready, returns what
        ready(self) returns and shuts down; without, serves until stop().
        """
        if query_handler is not None:
            self.query_handler = self._secure(query_handler)
        await self.listen()
        try:
            if ready is not None:
                return await ready(self)
            self._stopped = asyncio.get_running_loop().create_future()
            await self._stopped
        finally:
            self.stop()

    def stop(self):
        self.__running = False
        for task in self.node_processor_tasks:
            task.cancel()
        self.node_processor_tasks = []
        for future in self._pending_queries.values():
            if not future.done():
                future.cancel()
        self._pending_queries.clear()
        if self.transport:
            self.transport.close()
        if self._stopped is not None and not self._stopped.done():
            self._stopped.set_result(None)

    # -- Routing table upkeep --

    def _add_node_to_queue(self, node_id, addr):
        try:
            if self.node_queue.full():
                # Remove the oldest item to make space
                self.node_queue.get_nowait()
                self.node_queue.task_done()
            self.node_queue.put_nowait((node_id, addr))
        except (asyncio.QueueFull, asyncio.QueueEmpty):
            self.log.error("Failed to add node to queue even after attempting to make space.")

    async def _node_processor(self):
        """
        Pulls nodes from the queue and adds them to the peers table.
        """
        while self.__running:
            try:
                node_id, addr = await self.node_queue.get()
                try:
                    await self.peers_table.add_node(node_id, addr)
                finally:
                    self.node_queue.task_done()
            except asyncio.CancelledError:
                self.log.info("Node processor task cancelled.")
                break
            except Exception:
                self.log.exception("Error in node processor task.")

    def remove_node(self, addr):
        self.peers_table.remove_node(addr)
        self.stores_table.remove_node(addr)

    # -- Outgoing queries --

    async def _send_query_and_wait(self, method, args, addr, timeout=None):
        """
        Sends a query to a specific address and waits for the response.
        Returns None on timeout, raises KRPCErrorResponse on an error reply.
        """
        tid = os.urandom(2)
        while tid in self._pending_queries:
            tid = os.urandom(2)

        future = asyncio.get_running_loop().create_future()
        self._pending_queries[tid] = future

        try:
            self.send_message(Msg.query(tid, method, args), addr)
            return await asyncio.wait_for(future, timeout or config.QUERY_TIMEOUT)
        except asyncio.TimeoutError:
            return None
        except OSError as e:
            self.log.debug(f"Sending {method.decode()} to {utils.format_addr(addr)} failed: {e}")
            return None
        finally:
            self._pending_queries.pop(tid, None)

    async def _query(self, method, args, addr):
        """Like _send_query_and_wait, but an error reply counts as no answer."""
        try:
            return await self._send_query_and_wait(method, args, addr)
        except KRPCErrorResponse as e:
            self.log.debug(f"{utils.format_addr(addr)} answered {method.decode()} with error {e}")
            return None

    async def ping(self, addr):
        try:
            return await self._send_query_and_wait(
                constants.KRPC_PING, MsgArgs(id=self.node_id), addr, timeout=1
            )
        except KRPCErrorResponse:
            # Alive, just unhappy with us.
            return True

    async def find_node(self, target, addr):
        return await self._query(constants.KRPC_FIND_NODE, MsgArgs(id=self.node_id, target=target), addr)

    async def get(self, target, addr, seq=None):
        return await self._query(constants.KRPC_GET, MsgArgs(id=self.node_id, target=target, seq=seq), addr)

    async def _lookup(self, target, method, seeds):
        """
        Iterative lookup towards target. Each round queries the ALPHA closest
        addresses not asked yet; it ends when the K closest known addresses
        have all been asked or after LOOKUP_MAX_HOPS rounds. Returns the
        number of nodes that answered.
        """
        candidates = dict(seeds)
        queried = set()
        answered = 0

        def distance(addr):
            node_id = candidates[addr]
            if node_id is None:
                return constants.MAX_NODE_ID + 1
            return utils.get_distance(node_id, target)

        for hop in range(config.LOOKUP_MAX_HOPS):
            closest = sorted(candidates, key=distance)[:config.K]
            to_query = [addr for addr in closest if addr not in queried][:config.ALPHA]
            if not to_query:
                break

            queried.update(to_query)
            responses = await asyncio.gather(*(method(target, addr) for addr in to_query))

            for addr, msg in zip(to_query, responses):
                if msg is None or msg.r is None:
                    continue
                answered += 1
                r = msg.r
                await self.peers_table.add_node(r.id, addr)
                if method == self.get and r.token is not None:
                    await self.stores_table.add_node(r.id, addr, token=r.token)
                for node_id, ip, port in r.split_nodes():
                    if (ip, port) not in queried and (ip, port) not in candidates:
                        candidates[(ip, port)] = node_id

            self.log.debug(f"Lookup {target.hex()} hop {hop}: {answered} answered, {len(candidates)} known")
        return answered

    def _seeds(self, target):
        return [(c.addr, c.node_id) for c in self.peers_table.closest(target, config.K)]

    # -- DHTBackend --

    async def _resolve(self, contacts):
        loop = asyncio.get_running_loop()
        addrs = []
        for contact in contacts:
            host, port = utils.parse_hostport(contact)
            try:
                infos = await loop.getaddrinfo(host, port, family=socket.AF_INET, type=socket.SOCK_DGRAM)
            except socket.gaierror:
                self.log.warning(f"Could not resolve bootstrap node {contact}")
                continue
            for info in infos[:1]:
                addrs.append(info[4][:2])
        return addrs

    async def bootstrap(self, self_id, public_ip, contacts):
        if self.transport is None:
            raise BootstrapError("node is not listening")
        self.set_node_id(self_id)
        self.ip_votes.clear()

        addrs = await self._resolve(contacts)
        if not addrs:
            if contacts:
                raise BootstrapError("no bootstrap node could be resolved")
            return None

        answered = await self._lookup(self.node_id, self.find_node, [(addr, None) for addr in addrs])
        if answered == 0:
            raise BootstrapError(f"none of the {len(addrs)} bootstrap nodes answered")
        self.log.info(f"Bootstrap reached {answered} nodes, {len(self.peers_table)} in routing table")

        recommended = self.recommended_ip()
        if recommended is None:
            return None
        if recommended == public_ip and node_id_secure(self.node_id, recommended):
            return None
        return recommended

    def recommended_ip(self):
        if not self.ip_votes:
            return None
        return self.ip_votes.most_common(1)[0][0]

    def bootstrap_export(self):
        return [utils.format_addr(contact.addr) for contact in self.peers_table]

    async def lookup_stores(self, target):
        if self.transport is None:
            raise NetworkError("looking up stores", "node is not listening")
        seeds = self._seeds(target)
        if not seeds:
            self.log.warning(f"Routing table is empty, cannot look up {target.hex()}")
            return 0
        return await self._lookup(target, self.get, seeds)

    def closest_stores(self, target, limit):
        return self.stores_table.closest(target, limit)

    async def mget_all(self, target, public_key, seq, salt, *addrs):
        # Peers only send v when they hold a sequence number above the one asked.
        min_seq = seq - 1 if seq > 0 else None
        responses = await asyncio.gather(*(self.get(target, addr, seq=min_seq) for addr in addrs))

        best = None
        for addr, msg in zip(addrs, responses):
            if msg is None or msg.r is None:
                continue
            r = msg.r
            if r.token is not None:
                await self.stores_table.add_node(r.id, addr, token=r.token)
            if not isinstance(r.v, bytes) or r.seq is None or r.sig is None:
                continue
            if r.k != public_key or r.seq < seq:
                continue
            if not verify_signature(public_key, r.sig, r.seq, r.v, salt):
                self.log.debug(f"Bad signature from {utils.format_addr(addr)} for {target.hex()}")
                continue
            if best is None or r.seq > best.seq:
                best = r

        if best is None:
            raise ValueNotFoundError(f"value not found for id {target.hex()}")
        return best.v

    async def _put_one(self, item, addr):
        contact = self.stores_table.find(addr)
        token = contact.token if contact else None
        if token is None:
            msg = await self.get(item.target, addr)
            if msg is None or msg.r is None or msg.r.token is None:
                return False
            token = msg.r.token

        args = MsgArgs(
            id=self.node_id,
            token=token,
            v=item.value,
            seq=item.seq,
            cas=item.cas if item.cas else None,
            k=item.public_key,
            salt=item.salt or None,
            sig=item.signature,
        )
        return await self._send_query_and_wait(constants.KRPC_PUT, args, addr) is not None

    async def mput_all(self, item, *addrs):
        """
        Puts item on every addr concurrently. Succeeds once PUT_MIN_ACKS
        stores (or all of them, if fewer were given) acknowledged.
        """
        if not addrs:
            raise QueryTimeoutError(f"no store to put {item.target.hex()} on")
        results = await asyncio.gather(*(self._put_one(item, addr) for addr in addrs), return_exceptions=True)

        acks = 0
        errors = []
        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                errors.append(result)
            elif result:
                acks += 1
        self.log.info(f"Put {item.target.hex()} seq {item.seq}: {acks}/{len(addrs)} stores acknowledged")

        if acks < min(config.PUT_MIN_ACKS, len(addrs)):
            if errors:
                raise errors[0]
            raise QueryTimeoutError(f"no store acknowledged {item.target.hex()}")

    # -- Incoming queries --

    def make_token(self, addr):
        return hashlib.sha1(self.token_secret + addr[0].encode()).digest()[:constants.TOKEN_SIZE]

    def _closest_nodes(self, target):
        return utils.pack_nodes((c.node_id, c.addr) for c in self.peers_table.closest(target))

    async def handle_query(self, msg, addr):
        args = msg.a
        if args is None or not args.id:
            return self.send_error(addr, msg.t, constants.ERR_PROTOCOL)

        ret = Return(id=self.node_id)
        method = msg.q
        if method == constants.KRPC_PING:
            pass
        elif method == constants.KRPC_FIND_NODE:
            if not args.target:
                return self.send_error(addr, msg.t, constants.ERR_PROTOCOL)
            ret.nodes = self._closest_nodes(args.target)
        elif method == constants.KRPC_GET_PEERS:
            if not args.info_hash:
                return self.send_error(addr, msg.t, constants.ERR_PROTOCOL)
            ret.nodes = self._closest_nodes(args.info_hash)
            ret.token = self.make_token(addr)
        elif method == constants.KRPC_GET:
            if not args.target:
                return self.send_error(addr, msg.t, constants.ERR_PROTOCOL)
            ret.nodes = self._closest_nodes(args.target)
            ret.token = self.make_token(addr)
            item = self.storage.get(args.target)
            if item is not None:
                ret.seq = item.seq
                if args.seq is None or item.seq > args.seq:
                    ret.v = item.value
                    ret.k = item.public_key
                    ret.sig = item.signature
        elif method == constants.KRPC_PUT:
            error = self._handle_put(args, addr)
            if error is not None:
                return self.send_error(addr, msg.t, error)
        else:
            return self.send_error(addr, msg.t, constants.ERR_METHOD_UNKNOWN)

        self.send_message(Msg.response(msg.t, ret, ip=addr), addr)
        self._add_node_to_queue(args.id, addr)

    def _handle_put(self, args, addr):
        if args.token != self.make_token(addr):
            return constants.ERR_PROTOCOL
        if args.v is None or args.k is None or args.sig is None or args.seq is None:
            return constants.ERR_PROTOCOL
        if not isinstance(args.v, bytes):
            return constants.ERR_PROTOCOL
        salt = args.salt or b""
        try:
            self.storage.put(
                mutable_target(args.k, salt), args.v, args.seq, args.k, args.sig,
                salt=salt, cas=args.cas,
            )
        except StoreRejected as e:
            self.log.debug(f"Rejected put from {utils.format_addr(addr)}: {e}")
            return e.code
        return None
