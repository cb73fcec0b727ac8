"""Ed25519 identities, signatures, hashing and message authentication."""

import hashlib
import os
import time
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

from .errors import CryptoError, IoError

_KEY_LENGTH = 32
_SIGNATURE_LENGTH = 64


class IdentityKeyPair:
    """An Ed25519 key pair that identifies this peer."""

    __slots__ = ("_signing_key",)

    def __init__(self, signing_key: Ed25519PrivateKey) -> None:
        self._signing_key = signing_key

    @classmethod
    def generate(cls) -> "IdentityKeyPair":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def load_from_file(cls, path: str | os.PathLike) -> "IdentityKeyPair":
        """Load a raw 32-byte secret key."""
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            raise IoError(str(exc)) from exc
        if len(data) != _KEY_LENGTH:
            raise CryptoError("Invalid key file length")
        return cls(Ed25519PrivateKey.from_private_bytes(data))

    def save_to_file(self, path: str | os.PathLike) -> None:
        """Write the raw 32-byte secret key, creating parent directories."""
        target = Path(path)
        raw = self._signing_key.private_bytes(
            Encoding.Raw, PrivateFormat.Raw, NoEncryption()
        )
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(raw)
        except OSError as exc:
            raise IoError(str(exc)) from exc

    def public_key_bytes(self) -> bytes:
        return self._signing_key.public_key().public_bytes(
            Encoding.Raw, PublicFormat.Raw
        )

    def sign(self, data: bytes) -> bytes:
        return self._signing_key.sign(data)

    def verify(self, data: bytes, signature: bytes) -> bool:
        if len(signature) != _SIGNATURE_LENGTH:
            return False
        try:
            self._signing_key.public_key().verify(bytes(signature), data)
        except InvalidSignature:
            return False
        return True

    def __repr__(self) -> str:
        return f"IdentityKeyPair(public_key={self.public_key_bytes().hex()})"


def verify_signature(public_key: bytes, data: bytes, signature: bytes) -> bool:
    """Check an Ed25519 signature against a raw public key."""
    if len(public_key) != _KEY_LENGTH or len(signature) != _SIGNATURE_LENGTH:
        return False
    try:
        key = Ed25519PublicKey.from_public_bytes(bytes(public_key))
        key.verify(bytes(signature), data)
    except (InvalidSignature, ValueError):
        return False
    return True


def hash_data(data: bytes) -> bytes:
    """SHA-256 digest of ``data``."""
    return hashlib.sha256(data).digest()


def hash_file(path: str | os.PathLike) -> bytes:
    """SHA-256 digest of a file's contents."""
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise IoError(str(exc)) from exc
    return hash_data(data)


def generate_random_bytes(length: int) -> bytes:
    """Cryptographically secure random bytes."""
    return os.urandom(length)


def _signed_payload(data: bytes, timestamp: int) -> bytes:
    return bytes(data) + timestamp.to_bytes(8, "big")


@dataclass
class MessageAuth:
    """Signature over a message and the time it was signed."""

    sender_public_key: bytes
    signature: bytes
    timestamp: int

    @classmethod
    def create(cls, keypair: IdentityKeyPair, data: bytes) -> "MessageAuth":
        timestamp = int(time.time())
        return cls(
            sender_public_key=keypair.public_key_bytes(),
            signature=keypair.sign(_signed_payload(data, timestamp)),
            timestamp=timestamp,
        )

    def verify(self, data: bytes) -> bool:
        return verify_signature(
            self.sender_public_key,
            _signed_payload(data, self.timestamp),
            self.signature,
        )

    def is_fresh(self, max_age_seconds: int) -> bool:
        age = max(0, int(time.time()) - self.timestamp)
        return age <= max_age_seconds