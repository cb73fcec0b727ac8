"""Network manager tying together connections, discovery and message routing."""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum

from .connection import (
    Connected,
    ConnectionEvent,
    ConnectionFailed,
    ConnectionManager,
    Disconnected,
    MessageReceived,
)
from .core import NetworkConfig, PeerAddress, PeerId
from .discovery import DiscoveryService
from .errors import P2PError
from .messaging import MessageRouter

log = logging.getLogger(__name__)

DISCONNECTED_RETENTION = 300


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PeerInfo:
    """What the manager knows about a peer it has been connected to."""

    peer_id: PeerId
    addresses: list[PeerAddress]
    connection_time: datetime
    last_seen: datetime
    bytes_sent: int = 0
    bytes_received: int = 0
    is_connected: bool = True


@dataclass(frozen=True)
class NetworkEvent:
    """Something that happened on the network."""

    class Kind(Enum):
        PEER_CONNECTED = "PeerConnected"
        PEER_DISCONNECTED = "PeerDisconnected"
        MESSAGE_RECEIVED = "MessageReceived"
        PEER_DISCOVERED = "PeerDiscovered"
        CONNECTION_FAILED = "ConnectionFailed"
        NETWORK_ERROR = "NetworkError"

    kind: "NetworkEvent.Kind"
    peer_id: PeerId | None = None
    message: bytes = b""
    addresses: tuple[PeerAddress, ...] = field(default=())
    error: str | None = None


class NetworkManager:
    """Runs the peer-to-peer networking services and tracks connected peers."""

    def __init__(
        self,
        config: NetworkConfig,
        *,
        maintenance_interval: float = 1.0,
        disconnected_retention: float = DISCONNECTED_RETENTION,
    ) -> None:
        self.config = config
        self.maintenance_interval = maintenance_interval
        self.disconnected_retention = disconnected_retention
        self.local_peer_id = PeerId(b"local_peer", config.network_id)
        self.connection_manager = ConnectionManager(
            config.max_connections, float(config.connection_timeout)
        )
        self.discovery_service = DiscoveryService(
            config.network_id, self.local_peer_id, config.bootstrap_peers
        )
        self.message_router = MessageRouter()
        self.events: "asyncio.Queue[NetworkEvent]" = asyncio.Queue()
        self.listen_addresses: list[tuple[str, int]] = []
        self._peers: dict[PeerId, PeerInfo] = {}
        self._peer_addresses: dict[PeerId, list[PeerAddress]] = {}
        self._tasks: list[asyncio.Task[None]] = []

    async def __aenter__(self) -> "NetworkManager":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def start(self) -> None:
        """Start discovery, listeners and the event loop, then dial bootstrap peers."""
        if self._tasks:
            return
        try:
            await self.discovery_service.start()
            for address in self.config.listen_addresses:
                self.listen_addresses.append(
                    await self.connection_manager.start_listener(address)
                )
        except BaseException:
            await self.close()
            raise
        self._tasks = [
            asyncio.create_task(self._pump_events()),
            asyncio.create_task(self._maintenance_loop()),
        ]
        for bootstrap in self.config.bootstrap_peers:
            peer_id = PeerId(
                f"bootstrap_{bootstrap.address}".encode(), self.config.network_id
            )
            self._peer_addresses[peer_id] = [bootstrap]
            try:
                await self.connection_manager.connect_to_peer(peer_id, bootstrap)
            except P2PError as exc:
                log.warning("Failed to connect to bootstrap peer: %s", exc)

    async def close(self) -> None:
        """Stop every service and drop all connections."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.discovery_service.stop()
        await self.connection_manager.close()

    async def connect_to_peer(self, peer_address: PeerAddress) -> None:
        """Connect to a peer at the given address."""
        peer_id = PeerId(
            f"peer_{peer_address.address}".encode(), self.config.network_id
        )
        self._peer_addresses[peer_id] = [peer_address]
        try:
            await self.connection_manager.connect_to_peer(peer_id, peer_address)
        except P2PError as exc:
            self.events.put_nowait(
                NetworkEvent(
                    NetworkEvent.Kind.CONNECTION_FAILED, peer_id=peer_id, error=str(exc)
                )
            )
            raise

    async def send_message(self, peer_id: PeerId, message: bytes) -> None:
        await self.connection_manager.send_message(peer_id, message)
        info = self._peers.get(peer_id)
        if info is not None:
            info.bytes_sent += len(message)
            info.last_seen = _now()

    async def broadcast_message(self, message: bytes) -> None:
        """Send a message to every connected peer; failures are logged."""
        for peer_id in self.connection_manager.get_connected_peers():
            try:
                await self.send_message(peer_id, message)
            except P2PError as exc:
                log.warning("Failed to send message to peer %s: %s", peer_id, exc)

    def get_peers(self) -> dict[PeerId, PeerInfo]:
        return {
            peer_id: replace(info, addresses=list(info.addresses))
            for peer_id, info in self._peers.items()
        }

    def get_peer(self, peer_id: PeerId) -> PeerInfo | None:
        info = self._peers.get(peer_id)
        return replace(info, addresses=list(info.addresses)) if info is not None else None

    def perform_maintenance(self) -> None:
        """Forget peers that have been disconnected for too long."""
        now = _now()

        def keep(info: PeerInfo) -> bool:
            if info.is_connected:
                return True
            age = now - info.last_seen
            if age < timedelta(0):
                return False
            return int(age.total_seconds()) < self.disconnected_retention

        self._peers = {pid: info for pid, info in self._peers.items() if keep(info)}

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.maintenance_interval)
            self.perform_maintenance()

    async def _pump_events(self) -> None:
        while True:
            event = await self.connection_manager.events.get()
            self._apply(event)

    def _apply(self, event: ConnectionEvent) -> None:
        now = _now()
        kind = NetworkEvent.Kind
        if isinstance(event, Connected):
            addresses = list(self._peer_addresses.get(event.peer_id, []))
            self._peers[event.peer_id] = PeerInfo(
                peer_id=event.peer_id,
                addresses=addresses,
                connection_time=now,
                last_seen=now,
            )
            self.events.put_nowait(NetworkEvent(kind.PEER_CONNECTED, peer_id=event.peer_id))
        elif isinstance(event, Disconnected):
            info = self._peers.get(event.peer_id)
            if info is not None:
                info.is_connected = False
                info.last_seen = now
            self.events.put_nowait(
                NetworkEvent(kind.PEER_DISCONNECTED, peer_id=event.peer_id, error=event.detail)
            )
        elif isinstance(event, MessageReceived):
            info = self._peers.get(event.peer_id)
            if info is not None:
                info.bytes_received += len(event.message)
                info.last_seen = now
            self.events.put_nowait(
                NetworkEvent(kind.MESSAGE_RECEIVED, peer_id=event.peer_id, message=event.message)
            )
        elif isinstance(event, ConnectionFailed):
            self.events.put_nowait(
                NetworkEvent(kind.CONNECTION_FAILED, peer_id=event.peer_id, error=event.error)
            )