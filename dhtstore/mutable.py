"""
BEP44 mutable items.

A mutable item lives under target = SHA-1(public key + salt) and carries an
ed25519 signature over its sequence number, salt and value.
"""
import hashlib
from dataclasses import dataclass
from typing import Optional

from fastbencode import bencode
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

from . import constants
from .exceptions import SaltTooBigError, SigningError, ValueTooBigError


@dataclass
class MutableItem:
    target: bytes
    value: bytes
    seq: int
    public_key: bytes
    signature: bytes
    salt: bytes = b""
    cas: Optional[int] = None

    @property
    def target_hex(self):
        return self.target.hex()


def _to_bytes(value):
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    raise TypeError(f"expected str or bytes, got {type(value).__name__}")


def mutable_target(public_key, salt=b""):
    """The storage key of the item published by public_key under salt."""
    return hashlib.sha1(bytes(public_key) + _to_bytes(salt)).digest()


def signing_buffer(seq, value, salt=b""):
    """
    The bytes covered by the signature: the bencoded seq and v entries of
    the item dictionary without the surrounding "d" and "e", prefixed by
    the salt entry when there is one.
    """
    salt = _to_bytes(salt)
    buf = b""
    if salt:
        buf += b"4:salt" + bencode(salt)
    buf += b"3:seqi%de1:v" % seq + bencode(_to_bytes(value))
    return buf


def check_value_size(value):
    if len(bencode(_to_bytes(value))) >= constants.MAX_VALUE_SIZE:
        raise ValueTooBigError(
            f"bencoded value must be smaller than {constants.MAX_VALUE_SIZE} bytes"
        )


def check_salt_size(salt):
    if len(_to_bytes(salt)) > constants.MAX_SALT_SIZE:
        raise SaltTooBigError(f"salt must be at most {constants.MAX_SALT_SIZE} bytes")


def signing_key_from(private_key):
    """
    Accepts the 32-byte ed25519 seed or the 64-byte seed + public key form.
    """
    private_key = bytes(private_key)
    if len(private_key) not in (32, 64):
        raise SigningError(f"invalid private key length {len(private_key)}")
    try:
        key = SigningKey(private_key[:32])
    except (CryptoError, TypeError, ValueError) as e:
        raise SigningError(f"invalid private key: {e}") from e
    if len(private_key) == 64 and bytes(key.verify_key) != private_key[32:]:
        raise SigningError("private key does not match its embedded public key")
    return key


def public_key_for(private_key):
    return bytes(signing_key_from(private_key).verify_key)


def make_mutable_target(private_key, value, seq, salt=b""):
    """
    Builds and signs the mutable item for value.

    The item carries cas = seq - 1, the sequence number the storing peers are
    expected to hold before this write.
    """
    value = _to_bytes(value)
    salt = _to_bytes(salt)
    check_value_size(value)
    check_salt_size(salt)
    try:
        key = signing_key_from(private_key)
        signature = key.sign(signing_buffer(seq, value, salt)).signature
    except SigningError as e:
        raise SigningError(f"failed to create mutable target: {e}") from e
    except CryptoError as e:
        raise SigningError(f"failed to create mutable target: {e}") from e

    public_key = bytes(key.verify_key)
    return MutableItem(
        target=mutable_target(public_key, salt),
        value=value,
        seq=seq,
        public_key=public_key,
        signature=signature,
        salt=salt,
        cas=seq - 1,
    )


def verify_signature(public_key, signature, seq, value, salt=b""):
    if len(public_key or b"") != constants.PUBLIC_KEY_SIZE:
        return False
    if len(signature or b"") != constants.SIGNATURE_SIZE:
        return False
    try:
        VerifyKey(bytes(public_key)).verify(signing_buffer(seq, value, salt), bytes(signature))
    except (BadSignatureError, CryptoError, TypeError, ValueError):
        return False
    return True


def verify_mutable(item):
    """Checks both the target binding and the signature of item."""
    if item.target != mutable_target(item.public_key, item.salt):
        return False
    return verify_signature(item.public_key, item.signature, item.seq, item.value, item.salt)
