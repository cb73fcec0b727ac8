"""Peer identities, addresses, file transfer records and protocol messages."""

import hashlib
import json
import uuid
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar

from .errors import SerializationError

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _time_to_wire(moment: datetime) -> dict[str, int]:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    delta = moment - _EPOCH
    return {
        "secs_since_epoch": delta.days * 86400 + delta.seconds,
        "nanos_since_epoch": delta.microseconds * 1000,
    }


def _time_from_wire(data: dict[str, int]) -> datetime:
    return _EPOCH + timedelta(
        seconds=data["secs_since_epoch"],
        microseconds=data.get("nanos_since_epoch", 0) // 1000,
    )


def _required(data: dict[str, Any], key: str) -> Any:
    try:
        return data[key]
    except KeyError:
        raise SerializationError(f"missing field `{key}`") from None


def _drop_none(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _drop_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_drop_none(v) for v in value]
    return value


@dataclass(frozen=True)
class NetworkId:
    """Identifier of a logical network, allowing several to coexist."""

    value: str = "default"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class PeerCapabilities:
    """Features a peer supports."""

    supports_file_transfer: bool = True
    supports_tor: bool = False
    supports_relay: bool = False
    max_bandwidth: int | None = None
    storage_capacity: int | None = None
    protocol_version: str = "1.0.0"


def _capabilities_from_dict(data: dict[str, Any]) -> PeerCapabilities:
    return PeerCapabilities(
        supports_file_transfer=_required(data, "supports_file_transfer"),
        supports_tor=_required(data, "supports_tor"),
        supports_relay=_required(data, "supports_relay"),
        max_bandwidth=data.get("max_bandwidth"),
        storage_capacity=data.get("storage_capacity"),
        protocol_version=_required(data, "protocol_version"),
    )


@dataclass(frozen=True)
class PeerId:
    """Identity of a peer: its Ed25519 public key within a network."""

    public_key: bytes
    network_id: NetworkId = field(default_factory=NetworkId)
    capabilities: PeerCapabilities = field(default_factory=PeerCapabilities)

    def __str__(self) -> str:
        return f"{self.public_key.hex()}:{self.network_id.value}"

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(_to_wire(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PeerId":
        capabilities = data.get("capabilities")
        return cls(
            public_key=bytes(_required(data, "public_key")),
            network_id=NetworkId(_required(data, "network_id")),
            capabilities=(
                _capabilities_from_dict(capabilities)
                if capabilities is not None
                else PeerCapabilities()
            ),
        )


@dataclass(frozen=True)
class MessageId:
    """Unique message identifier."""

    value: uuid.UUID = field(default_factory=uuid.uuid4)

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class TransferId:
    """Unique file transfer identifier."""

    value: uuid.UUID = field(default_factory=uuid.uuid4)

    def __str__(self) -> str:
        return str(self.value)


class AddressType(Enum):
    IPV4 = "IPv4"
    IPV6 = "IPv6"
    ONION = "Onion"
    DOMAIN = "Domain"


class ConnectionType(Enum):
    DIRECT = "Direct"
    RELAY = "Relay"
    TOR = "Tor"


class TransferStatus(Enum):
    PENDING = "Pending"
    ACTIVE = "Active"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


@dataclass
class PeerAddress:
    """A network address at which a peer may be reached."""

    address: str
    port: int
    address_type: AddressType = AddressType.DOMAIN
    last_successful: datetime | None = None
    success_count: int = 0
    failure_count: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port {self.port} out of range")

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(_to_wire(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PeerAddress":
        last = data.get("last_successful")
        try:
            return cls(
                address=_required(data, "address"),
                port=_required(data, "port"),
                address_type=AddressType(_required(data, "address_type")),
                last_successful=_time_from_wire(last) if last is not None else None,
                success_count=_required(data, "success_count"),
                failure_count=_required(data, "failure_count"),
            )
        except ValueError as exc:
            raise SerializationError(str(exc)) from exc


@dataclass
class PeerStatus:
    """Status report a peer sends with heartbeats."""

    online: bool
    bandwidth_usage: int = 0
    active_transfers: int = 0
    uptime: int = 0
    last_activity: datetime = field(default_factory=_now)


@dataclass
class FileInfo:
    """Metadata describing a file offered for transfer."""

    name: str
    size: int
    hash: bytes
    mime_type: str | None = None
    created: datetime | None = None
    modified: datetime | None = None


@dataclass
class FileChunk:
    """A piece of a file together with its SHA-256 checksum."""

    transfer_id: TransferId
    chunk_index: int
    data: bytes
    checksum: bytes

    def verify_checksum(self) -> bool:
        return hashlib.sha256(self.data).digest() == bytes(self.checksum)


@dataclass
class FileTransfer:
    """Progress record of a file transfer."""

    transfer_id: TransferId
    file_info: FileInfo
    chunk_size: int
    total_chunks: int
    completed_chunks: set[int] = field(default_factory=set)
    peers: list[PeerId] = field(default_factory=list)
    status: TransferStatus = TransferStatus.PENDING
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class MessageHeader:
    """Routing and authentication details attached to a message."""

    sender: PeerId
    recipient: PeerId | None = None
    message_id: MessageId = field(default_factory=MessageId)
    timestamp: datetime = field(default_factory=_now)
    signature: bytes = b""
    message_type: str = ""


class _MessageVariant:
    category: ClassVar[str] = ""


class _ControlVariant(_MessageVariant):
    category: ClassVar[str] = "control"


class _DataVariant(_MessageVariant):
    category: ClassVar[str] = "data"


class _FileVariant(_MessageVariant):
    category: ClassVar[str] = "file"


class _UpdateVariant(_MessageVariant):
    category: ClassVar[str] = "update"


@dataclass
class PeerDiscovery(_ControlVariant):
    requesting_peer: PeerId
    known_peers: list[PeerId] = field(default_factory=list)


@dataclass
class PeerAnnouncement(_ControlVariant):
    peer: PeerId
    addresses: list[PeerAddress] = field(default_factory=list)


@dataclass
class ConnectionRequest(_ControlVariant):
    requester: PeerId
    target: PeerId
    connection_type: ConnectionType = ConnectionType.DIRECT


@dataclass
class ConnectionResponse(_ControlVariant):
    accepted: bool
    reason: str | None = None


@dataclass
class Heartbeat(_ControlVariant):
    peer: PeerId
    status: PeerStatus


@dataclass
class NetworkStatus(_ControlVariant):
    active_peers: int
    total_bandwidth: int
    network_health: float


@dataclass
class Chat(_DataVariant):
    sender: PeerId
    content: str
    channel: str | None = None


@dataclass
class Custom(_DataVariant):
    data_type: str
    payload: bytes


@dataclass
class TransferRequest(_FileVariant):
    transfer_id: TransferId
    file_info: FileInfo
    requester: PeerId


@dataclass
class TransferResponse(_FileVariant):
    transfer_id: TransferId
    accepted: bool
    available_chunks: list[int] | None = None


@dataclass
class ChunkRequest(_FileVariant):
    transfer_id: TransferId
    chunk_indices: list[int] = field(default_factory=list)


@dataclass
class ChunkData(_FileVariant):
    transfer_id: TransferId
    chunk: FileChunk


@dataclass
class TransferComplete(_FileVariant):
    transfer_id: TransferId
    success: bool
    error: str | None = None


@dataclass
class UpdateAvailable(_UpdateVariant):
    version: str
    download_url: str
    signature: bytes
    changelog: str


@dataclass
class UpdateRequest(_UpdateVariant):
    current_version: str


@dataclass
class UpdateData(_UpdateVariant):
    version: str
    chunk_index: int
    total_chunks: int
    data: bytes
    checksum: bytes


@dataclass
class NetworkConfig:
    """Settings for the networking layer."""

    network_id: NetworkId = field(default_factory=NetworkId)
    listen_addresses: list[str] = field(default_factory=lambda: ["0.0.0.0:0"])
    bootstrap_peers: list[PeerAddress] = field(default_factory=list)
    max_connections: int = 100
    connection_timeout: int = 30
    enable_tor: bool = False
    enable_upnp: bool = True
    bandwidth_limit: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(_to_wire(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NetworkConfig":
        return cls(
            network_id=NetworkId(_required(data, "network_id")),
            listen_addresses=list(_required(data, "listen_addresses")),
            bootstrap_peers=[
                PeerAddress.from_dict(item)
                for item in _required(data, "bootstrap_peers")
            ],
            max_connections=_required(data, "max_connections"),
            connection_timeout=_required(data, "connection_timeout"),
            enable_tor=_required(data, "enable_tor"),
            enable_upnp=_required(data, "enable_upnp"),
            bandwidth_limit=data.get("bandwidth_limit"),
        )


def _to_wire(value: Any) -> Any:
    """Convert a value into JSON-compatible data."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (bytes, bytearray)):
        return list(value)
    if isinstance(value, datetime):
        return _time_to_wire(value)
    if isinstance(value, NetworkId):
        return value.value
    if isinstance(value, (MessageId, TransferId)):
        return str(value.value)
    if isinstance(value, (set, frozenset)):
        return sorted(_to_wire(item) for item in value)
    if isinstance(value, (list, tuple)):
        return [_to_wire(item) for item in value]
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_wire(getattr(value, f.name)) for f in fields(value)}
    raise SerializationError(f"cannot serialize {type(value).__name__}")


def message_category(message: Any) -> str:
    """Return "control", "data", "file" or "update" for a protocol message."""
    if not isinstance(message, _MessageVariant) or not message.category:
        raise TypeError(f"{type(message).__name__} is not a protocol message")
    return message.category


def encode_message(message: Any) -> bytes:
    """Encode a protocol message as tagged JSON."""
    category = message_category(message)
    envelope = {category.title(): {type(message).__name__: _to_wire(message)}}
    return json.dumps(envelope, separators=(",", ":")).encode("utf-8")