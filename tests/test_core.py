import hashlib
import json
import uuid
from datetime import datetime, timezone

import pytest

from peerlink.core import (
    AddressType,
    Chat,
    ChunkRequest,
    Custom,
    FileChunk,
    FileInfo,
    Heartbeat,
    MessageId,
    NetworkConfig,
    NetworkId,
    PeerAddress,
    PeerCapabilities,
    PeerId,
    PeerStatus,
    TransferId,
    TransferRequest,
    UpdateRequest,
    encode_message,
    message_category,
)
from peerlink.errors import SerializationError
from peerlink.identity import hash_data


def test_peer_id_display():
    peer = PeerId(b"\x01\xab", NetworkId("test"))
    assert str(peer) == "01ab:test"


def test_defaults():
    assert NetworkId().value == "default"
    peer = PeerId(b"key")
    assert peer.network_id == NetworkId()
    assert peer.capabilities.protocol_version == "1.0.0"
    assert peer.capabilities.supports_file_transfer


def test_peer_id_round_trip():
    caps = PeerCapabilities(supports_tor=True, max_bandwidth=2048)
    peer = PeerId(b"\x00\x10\xff", NetworkId("net"), caps)
    data = peer.to_dict()
    assert data["public_key"] == [0, 16, 255]
    assert "storage_capacity" not in data["capabilities"]
    assert PeerId.from_dict(data) == peer


def test_peer_id_hashable_key():
    a = PeerId(b"same", NetworkId("n"))
    b = PeerId(b"same", NetworkId("n"))
    table = {a: "value"}
    assert table[b] == "value"
    assert PeerId(b"other", NetworkId("n")) not in table


def test_ids_are_unique():
    message_ids = [MessageId() for _ in range(5)]
    assert len({str(m) for m in message_ids}) == 5
    transfer_ids = [TransferId() for _ in range(5)]
    assert len({str(t) for t in transfer_ids}) == 5
    assert uuid.UUID(str(transfer_ids[0])).version == 4


def test_peer_address_round_trip():
    when = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    addr = PeerAddress("10.0.0.1", 4000, AddressType.IPV4, when, 3, 1)
    data = addr.to_dict()
    assert data["address_type"] == "IPv4"
    assert PeerAddress.from_dict(data) == addr


def test_peer_address_missing_field():
    with pytest.raises(SerializationError):
        PeerAddress.from_dict({"address": "host", "port": 1})


def test_peer_address_invalid_port():
    with pytest.raises(ValueError):
        PeerAddress("host", 70000)


def test_file_chunk_checksum():
    data = b"chunk bytes"
    good = FileChunk(TransferId(), 0, data, hash_data(data))
    bad = FileChunk(TransferId(), 0, data, hash_data(b"other"))
    assert good.verify_checksum()
    assert not bad.verify_checksum()


def test_network_config_defaults_and_round_trip():
    config = NetworkConfig()
    assert config.listen_addresses == ["0.0.0.0:0"]
    assert config.max_connections == 100
    data = config.to_dict()
    assert "bandwidth_limit" not in data
    config.bootstrap_peers.append(PeerAddress("peer.example.com", 9000))
    assert NetworkConfig.from_dict(config.to_dict()) == config


def test_network_config_missing_field():
    data = NetworkConfig().to_dict()
    del data["max_connections"]
    with pytest.raises(SerializationError):
        NetworkConfig.from_dict(data)


@pytest.mark.parametrize(
    "message, category",
    [
        (Chat(PeerId(b"p"), "hi"), "data"),
        (Heartbeat(PeerId(b"p"), PeerStatus(online=True)), "control"),
        (ChunkRequest(TransferId(), [1, 2]), "file"),
        (UpdateRequest("0.1.0"), "update"),
    ],
)
def test_message_category(message, category):
    assert message_category(message) == category


def test_message_category_rejects_other_values():
    with pytest.raises(TypeError):
        message_category("not a message")


def test_encode_custom_message():
    decoded = json.loads(encode_message(Custom("kind", b"\x01\x02")))
    assert decoded == {"Data": {"Custom": {"data_type": "kind", "payload": [1, 2]}}}


def test_encode_transfer_request():
    transfer = TransferId()
    info = FileInfo("a.txt", 3, hashlib.sha256(b"abc").digest())
    message = TransferRequest(transfer, info, PeerId(b"r"))
    decoded = json.loads(encode_message(message))
    body = decoded["File"]["TransferRequest"]
    assert body["transfer_id"] == str(transfer)
    assert body["file_info"]["name"] == "a.txt"
    assert body["file_info"]["mime_type"] is None