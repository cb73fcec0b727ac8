import time

import pytest

from peerlink.errors import CryptoError, IoError
from peerlink.identity import (
    IdentityKeyPair,
    MessageAuth,
    generate_random_bytes,
    hash_data,
    hash_file,
    verify_signature,
)


def test_key_generation():
    keypair = IdentityKeyPair.generate()
    data = b"test message"
    signature = keypair.sign(data)
    assert keypair.verify(data, signature)


def test_message_auth():
    keypair = IdentityKeyPair.generate()
    data = b"test message"
    auth = MessageAuth.create(keypair, data)
    assert auth.verify(data)
    assert auth.is_fresh(60)


def test_hash_data():
    data = b"test data"
    hash1 = hash_data(data)
    hash2 = hash_data(data)
    assert hash1 == hash2
    assert len(hash1) == 32


def test_hash_data_known_value():
    expected = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    assert hash_data(b"abc").hex() == expected


def test_hash_file_matches_hash_data(tmp_path):
    path = tmp_path / "file.bin"
    path.write_bytes(b"payload")
    assert hash_file(path) == hash_data(b"payload")


def test_hash_file_missing(tmp_path):
    with pytest.raises(IoError):
        hash_file(tmp_path / "missing")


def test_save_and_load_round_trip(tmp_path):
    keypair = IdentityKeyPair.generate()
    path = tmp_path / "keys" / "identity.key"
    keypair.save_to_file(path)
    assert len(path.read_bytes()) == 32
    loaded = IdentityKeyPair.load_from_file(path)
    assert loaded.public_key_bytes() == keypair.public_key_bytes()
    assert loaded.verify(b"x", keypair.sign(b"x"))


def test_load_rejects_wrong_length(tmp_path):
    path = tmp_path / "bad.key"
    path.write_bytes(b"short")
    with pytest.raises(CryptoError):
        IdentityKeyPair.load_from_file(path)


def test_load_missing_file(tmp_path):
    with pytest.raises(IoError):
        IdentityKeyPair.load_from_file(tmp_path / "absent.key")


def test_verify_rejects_bad_signatures():
    keypair = IdentityKeyPair.generate()
    signature = keypair.sign(b"data")
    assert not keypair.verify(b"data", signature[:10])
    assert not keypair.verify(b"other", signature)


def test_verify_signature_function():
    keypair = IdentityKeyPair.generate()
    public_key = keypair.public_key_bytes()
    signature = keypair.sign(b"data")
    assert verify_signature(public_key, b"data", signature)
    assert not verify_signature(public_key, b"tampered", signature)
    assert not verify_signature(public_key[:31], b"data", signature)
    other = IdentityKeyPair.generate().public_key_bytes()
    assert not verify_signature(other, b"data", signature)


def test_random_bytes_length_and_variety():
    first = generate_random_bytes(16)
    assert len(first) == 16
    assert first != generate_random_bytes(16)


def test_message_auth_rejects_other_data():
    keypair = IdentityKeyPair.generate()
    auth = MessageAuth.create(keypair, b"original")
    assert not auth.verify(b"changed")


def test_message_auth_staleness():
    keypair = IdentityKeyPair.generate()
    auth = MessageAuth.create(keypair, b"data")
    stale = MessageAuth(auth.sender_public_key, auth.signature, 0)
    assert not stale.is_fresh(60)
    future = MessageAuth(auth.sender_public_key, auth.signature, int(time.time()) + 1000)
    assert future.is_fresh(0)