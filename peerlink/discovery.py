"""Peer discovery: bootstrap peers, peer exchange and local announcements."""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar

from .core import NetworkId, PeerAddress, PeerId
from .errors import NetworkError, P2PError, SerializationError

log = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_CONNECTABLE_AGE = 300
_STALE_AGE = 3600

Destination = tuple[str, int]
Sender = Callable[[Destination | None, bytes], Awaitable[None]]
"""Transport callback: send bytes to an address, or broadcast when it is None."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _unix_now() -> int:
    return int(time.time())


def _age_seconds(now: datetime, then: datetime) -> int | None:
    """Whole seconds from ``then`` to ``now``; None if ``then`` lies in the future."""
    delta = now - then
    if delta < timedelta(0):
        return None
    return delta.days * 86400 + delta.seconds


def _epoch_seconds(moment: datetime) -> int:
    delta = moment - _EPOCH
    return max(0, delta.days * 86400 + delta.seconds)


class DiscoveryMethod(Enum):
    BOOTSTRAP = "Bootstrap"
    LOCAL_BROADCAST = "LocalBroadcast"
    DHT = "DHT"
    PEER_EXCHANGE = "PeerExchange"
    MANUAL = "Manual"


@dataclass
class DiscoveredPeer:
    """A peer known to the discovery service."""

    peer_id: PeerId
    addresses: list[PeerAddress]
    discovered_at: datetime
    last_seen: datetime
    discovery_method: DiscoveryMethod


@dataclass
class PeerRecord:
    """Compact peer description exchanged between peers."""

    peer_id: PeerId
    addresses: list[PeerAddress] = field(default_factory=list)
    last_seen: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "peer_id": self.peer_id.to_dict(),
            "addresses": [address.to_dict() for address in self.addresses],
            "last_seen": self.last_seen,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PeerRecord":
        return cls(
            peer_id=PeerId.from_dict(data["peer_id"]),
            addresses=[PeerAddress.from_dict(item) for item in data["addresses"]],
            last_seen=int(data["last_seen"]),
        )


@dataclass
class PeerAnnouncementMessage:
    """A peer announcing itself and its addresses."""

    tag: ClassVar[str] = "PeerAnnouncement"

    peer_id: PeerId
    addresses: list[PeerAddress]
    network_id: NetworkId
    timestamp: int

    def _body(self) -> dict[str, Any]:
        return {
            "peer_id": self.peer_id.to_dict(),
            "addresses": [address.to_dict() for address in self.addresses],
            "network_id": self.network_id.value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def _from_body(cls, body: dict[str, Any]) -> "PeerAnnouncementMessage":
        return cls(
            peer_id=PeerId.from_dict(body["peer_id"]),
            addresses=[PeerAddress.from_dict(item) for item in body["addresses"]],
            network_id=NetworkId(str(body["network_id"])),
            timestamp=int(body["timestamp"]),
        )


@dataclass
class PeerRequestMessage:
    """A request for the list of peers the receiver knows."""

    tag: ClassVar[str] = "PeerRequest"

    requesting_peer: PeerId
    network_id: NetworkId
    timestamp: int

    def _body(self) -> dict[str, Any]:
        return {
            "requesting_peer": self.requesting_peer.to_dict(),
            "network_id": self.network_id.value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def _from_body(cls, body: dict[str, Any]) -> "PeerRequestMessage":
        return cls(
            requesting_peer=PeerId.from_dict(body["requesting_peer"]),
            network_id=NetworkId(str(body["network_id"])),
            timestamp=int(body["timestamp"]),
        )


@dataclass
class PeerResponseMessage:
    """The answer to a peer request."""

    tag: ClassVar[str] = "PeerResponse"

    responding_peer: PeerId
    known_peers: list[PeerRecord]
    network_id: NetworkId
    timestamp: int

    def _body(self) -> dict[str, Any]:
        return {
            "responding_peer": self.responding_peer.to_dict(),
            "known_peers": [record.to_dict() for record in self.known_peers],
            "network_id": self.network_id.value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def _from_body(cls, body: dict[str, Any]) -> "PeerResponseMessage":
        return cls(
            responding_peer=PeerId.from_dict(body["responding_peer"]),
            known_peers=[PeerRecord.from_dict(item) for item in body["known_peers"]],
            network_id=NetworkId(str(body["network_id"])),
            timestamp=int(body["timestamp"]),
        )


DiscoveryMessage = PeerAnnouncementMessage | PeerRequestMessage | PeerResponseMessage

_MESSAGE_TYPES: dict[str, type] = {
    cls.tag: cls
    for cls in (PeerAnnouncementMessage, PeerRequestMessage, PeerResponseMessage)
}


def encode_discovery_message(message: DiscoveryMessage) -> bytes:
    """Encode a discovery message as tagged JSON."""
    if not isinstance(message, tuple(_MESSAGE_TYPES.values())):
        raise SerializationError(f"cannot serialize {type(message).__name__}")
    envelope = {message.tag: message._body()}
    return json.dumps(envelope, separators=(",", ":")).encode("utf-8")


def decode_discovery_message(data: bytes | str) -> DiscoveryMessage:
    """Decode a discovery message produced by :func:`encode_discovery_message`."""
    try:
        envelope = json.loads(data)
    except (ValueError, UnicodeDecodeError) as exc:
        raise SerializationError(str(exc)) from exc
    if not isinstance(envelope, dict) or len(envelope) != 1:
        raise SerializationError("expected an object with exactly one variant")
    (tag, body), = envelope.items()
    cls = _MESSAGE_TYPES.get(tag)
    if cls is None:
        raise SerializationError(f"unknown variant `{tag}`")
    if not isinstance(body, dict):
        raise SerializationError(f"invalid body for `{tag}`")
    try:
        return cls._from_body(body)
    except KeyError as exc:
        raise SerializationError(f"missing field `{exc.args[0]}`") from exc
    except (TypeError, ValueError) as exc:
        raise SerializationError(str(exc)) from exc


class DiscoveryService:
    """Keeps track of known peers and exchanges peer lists with them."""

    def __init__(
        self,
        network_id: NetworkId,
        local_peer_id: PeerId,
        bootstrap_peers: Iterable[PeerAddress] = (),
        *,
        send: Sender | None = None,
        local_addresses: Iterable[PeerAddress] = (),
        discovery_interval: float = 30.0,
        broadcast_interval: float = 60.0,
    ) -> None:
        self.network_id = network_id
        self.local_peer_id = local_peer_id
        self.bootstrap_peers = list(bootstrap_peers)
        self.local_addresses = list(local_addresses)
        self.discovery_interval = discovery_interval
        self.broadcast_interval = broadcast_interval
        self._send = send
        self._known_peers: dict[PeerId, DiscoveredPeer] = {}
        self._tasks: list[asyncio.Task[None]] = []

    async def start(self) -> None:
        """Register bootstrap peers and start the periodic discovery tasks."""
        if self._tasks:
            return
        self._add_bootstrap_peers()
        self._tasks = [
            asyncio.create_task(self._discovery_loop()),
            asyncio.create_task(self._broadcast_loop()),
        ]

    async def stop(self) -> None:
        """Stop the periodic discovery tasks."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def add_peer(self, peer_id: PeerId, addresses: Iterable[PeerAddress]) -> None:
        """Record a manually discovered peer."""
        now = _now()
        self._known_peers[peer_id] = DiscoveredPeer(
            peer_id=peer_id,
            addresses=list(addresses),
            discovered_at=now,
            last_seen=now,
            discovery_method=DiscoveryMethod.MANUAL,
        )

    def get_known_peers(self) -> list[DiscoveredPeer]:
        return list(self._known_peers.values())

    def get_connectable_peers(self) -> list[DiscoveredPeer]:
        """Peers seen within the last five minutes."""
        now = _now()
        result = []
        for peer in self._known_peers.values():
            age = _age_seconds(now, peer.last_seen)
            if age is not None and age < _CONNECTABLE_AGE:
                result.append(peer)
        return result

    async def handle_discovery_message(
        self, message: DiscoveryMessage, from_addr: Destination
    ) -> None:
        """Process a message received from ``from_addr``; other networks are ignored."""
        if message.network_id != self.network_id:
            return
        if isinstance(message, PeerAnnouncementMessage):
            self._handle_peer_announcement(message.peer_id, message.addresses)
        elif isinstance(message, PeerRequestMessage):
            await self._handle_peer_request(message.requesting_peer, from_addr)
        elif isinstance(message, PeerResponseMessage):
            self._handle_peer_response(message.known_peers)
        else:
            raise SerializationError(f"unsupported message {type(message).__name__}")

    def cleanup_stale_peers(self) -> None:
        """Forget peers not seen for an hour, except bootstrap peers."""
        now = _now()
        self._known_peers = {
            peer_id: peer
            for peer_id, peer in self._known_peers.items()
            if peer.discovery_method is DiscoveryMethod.BOOTSTRAP
            or (_age_seconds(now, peer.last_seen) or 0) < _STALE_AGE
        }

    def _add_bootstrap_peers(self) -> None:
        for index, address in enumerate(self.bootstrap_peers):
            peer_id = PeerId(f"bootstrap_{index}".encode(), self.network_id)
            now = _now()
            self._known_peers[peer_id] = DiscoveredPeer(
                peer_id=peer_id,
                addresses=[address],
                discovered_at=now,
                last_seen=now,
                discovery_method=DiscoveryMethod.BOOTSTRAP,
            )

    async def _transmit(self, destination: Destination | None, data: bytes) -> None:
        if self._send is None:
            log.debug("No transport configured; dropping %d bytes", len(data))
            return
        try:
            await self._send(destination, data)
        except OSError as exc:
            raise NetworkError(f"failed to send discovery message: {exc}") from exc

    async def _discovery_loop(self) -> None:
        while True:
            for peer in self.get_connectable_peers():
                try:
                    await self._request_peers_from(peer)
                except P2PError as exc:
                    log.debug("Failed to request peers from %s: %s", peer.peer_id, exc)
            self.cleanup_stale_peers()
            await asyncio.sleep(self.discovery_interval)

    async def _request_peers_from(self, peer: DiscoveredPeer) -> None:
        if not peer.addresses:
            return
        message = PeerRequestMessage(
            requesting_peer=self.local_peer_id,
            network_id=self.network_id,
            timestamp=_unix_now(),
        )
        data = encode_discovery_message(message)
        target = peer.addresses[0]
        log.debug("Requesting peers from %s: %d bytes", peer.peer_id, len(data))
        await self._transmit((target.address, target.port), data)

    async def _broadcast_loop(self) -> None:
        while True:
            try:
                await self._broadcast_announcement()
            except P2PError as exc:
                log.warning("Broadcast discovery error: %s", exc)
            await asyncio.sleep(self.broadcast_interval)

    async def _broadcast_announcement(self) -> None:
        message = PeerAnnouncementMessage(
            peer_id=self.local_peer_id,
            addresses=list(self.local_addresses),
            network_id=self.network_id,
            timestamp=_unix_now(),
        )
        data = encode_discovery_message(message)
        log.debug("Broadcasting peer announcement: %d bytes", len(data))
        await self._transmit(None, data)

    def _handle_peer_announcement(
        self, peer_id: PeerId, addresses: list[PeerAddress]
    ) -> None:
        now = _now()
        self._known_peers[peer_id] = DiscoveredPeer(
            peer_id=peer_id,
            addresses=list(addresses),
            discovered_at=now,
            last_seen=now,
            discovery_method=DiscoveryMethod.PEER_EXCHANGE,
        )

    async def _handle_peer_request(
        self, requesting_peer: PeerId, from_addr: Destination
    ) -> None:
        response = PeerResponseMessage(
            responding_peer=self.local_peer_id,
            known_peers=self._known_peer_records(),
            network_id=self.network_id,
            timestamp=_unix_now(),
        )
        data = encode_discovery_message(response)
        log.debug("Responding to peer request from %s: %d bytes", requesting_peer, len(data))
        await self._transmit(from_addr, data)

    def _handle_peer_response(self, records: list[PeerRecord]) -> None:
        for record in records:
            if record.peer_id == self.local_peer_id:
                continue
            self._known_peers[record.peer_id] = DiscoveredPeer(
                peer_id=record.peer_id,
                addresses=list(record.addresses),
                discovered_at=_now(),
                last_seen=_EPOCH + timedelta(seconds=record.last_seen),
                discovery_method=DiscoveryMethod.PEER_EXCHANGE,
            )

    def _known_peer_records(self) -> list[PeerRecord]:
        return [
            PeerRecord(
                peer_id=peer.peer_id,
                addresses=list(peer.addresses),
                last_seen=_epoch_seconds(peer.last_seen),
            )
            for peer in self._known_peers.values()
        ]