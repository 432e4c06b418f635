import argparse
import asyncio
import binascii
import logging
import socket
import sys

import uvloop
from nacl.signing import SigningKey

import config
from dhtstore.bootstrap import BootstrapManager
from dhtstore.client import DHTClient
from dhtstore.exceptions import DHTError, SigningError
from dhtstore.mutable import make_mutable_target, public_key_for
from dhtstore.node import DHTNode, __version__
from dhtstore.security import NodeIdentity

# Configure basic logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
log = logging.getLogger(__name__)


def load_private_key(key_hex):
    """
    Decodes a hex private key (32-byte seed or 64-byte seed + public key).
    Without one a fresh key is generated for this run.
    """
    if key_hex:
        try:
            return binascii.unhexlify(key_hex)
        except binascii.Error as e:
            raise SigningError(f"private key is not valid hex: {e}") from e
    log.warning("No private key given, generating a throwaway one.")
    return bytes(SigningKey.generate())


async def main(args):
    private_key = load_private_key(args.key)
    public_key = public_key_for(private_key)
    log.info(f"Public Key: {public_key.hex()}")
    salt = args.salt.encode("utf-8")

    if args.action == "sign":
        item = make_mutable_target(private_key, args.value, args.seq, salt)
        log.info(f"hash: {item.target.hex()}")
        log.info(f"signature: {item.signature.hex()}")
        return None

    if args.action == "get":
        if len(args.target or "") != 40:
            raise SystemExit("please specify a valid target")
        if args.public_key:
            try:
                public_key = binascii.unhexlify(args.public_key)
            except binascii.Error as e:
                raise SigningError(f"public key is not valid hex: {e}") from e

    hostname = socket.gethostname()
    identity = NodeIdentity.create(hostname)
    node = DHTNode(node_id=identity.node_id, port=args.port)

    async def ready(node):
        manager = BootstrapManager(node, identity, hostname)
        await manager.bootstrap(args.bootstrap_file)
        client = DHTClient(node)

        if args.action == "get":
            value = await client.poll(args.target, public_key, args.seq, salt, timeout=args.timeout)
            log.info(f"seq: {args.seq}, val: {value.decode('utf-8', 'replace')}")
            return value

        item = make_mutable_target(private_key, args.value, args.seq, salt)
        log.info(f"put target hash: {item.target.hex()}")
        await client.put(item)
        log.info("put done")
        return item

    return await node.listen_and_serve(ready=ready)


def cli():
    parser = argparse.ArgumentParser(description="Sign, publish and fetch BEP44 mutable items on the BitTorrent DHT.")
    parser.add_argument("--action", choices=("sign", "get", "put"), default="sign", help="Program action.")
    parser.add_argument("--value", type=str, default="", help="Value to sign or put.")
    parser.add_argument("--seq", type=int, default=1, help="Sequence number of the item.")
    parser.add_argument("--salt", type=str, default="", help="Optional salt of the item.")
    parser.add_argument("--target", type=str, default="", help="Target hash to get, in hex.")
    parser.add_argument("--key", type=str, default=None, help="Private key in hex.")
    parser.add_argument("--public-key", type=str, default=None, help="Public key of the writer for get, in hex. Defaults to our own.")
    parser.add_argument("--bootstrap-file", type=str, default=config.BOOTSTRAP_FILE, help="File holding bootstrap nodes between runs.")
    parser.add_argument("--port", type=int, default=config.DHT_PORT, help="DHT listening port.")
    parser.add_argument("--timeout", type=float, default=None, help="Give up a get after this many seconds.")
    args = parser.parse_args()

    log.info(f"program: {sys.argv[0]}, version: {__version__}")
    try:
        uvloop.run(main(args))
    except DHTError as e:
        log.error(e)
        sys.exit(1)
    except asyncio.TimeoutError:
        log.error("Value did not show up before the timeout.")
        sys.exit(1)
    except KeyboardInterrupt:
        log.info("Stopped by user.")


if __name__ == "__main__":
    cli()
