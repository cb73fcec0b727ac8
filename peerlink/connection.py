"""TCP connections between peers: handshake, length-prefixed framing and lifecycle events."""

import asyncio
import json
import logging
import struct
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .core import PeerAddress, PeerId
from .errors import (
    NetworkError,
    P2PError,
    PeerNotFoundError,
    PeerTimeoutError,
    SerializationError,
)

log = logging.getLogger(__name__)

HANDSHAKE_LIMIT = 1024 * 1024
MESSAGE_LIMIT = 10 * 1024 * 1024
PROTOCOL_VERSION = "1.0.0"
CAPABILITIES = ("file_transfer", "messaging")

_LENGTH = struct.Struct("!I")
_MAX_FRAME = 0xFFFFFFFF


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DisconnectReason(Enum):
    PEER_DISCONNECTED = "PeerDisconnected"
    TIMEOUT = "Timeout"
    ERROR = "Error"
    MAX_CONNECTIONS_REACHED = "MaxConnectionsReached"
    SHUTDOWN = "Shutdown"


@dataclass(frozen=True)
class Connected:
    """A connection to a peer was established."""

    peer_id: PeerId
    is_outbound: bool


@dataclass(frozen=True)
class Disconnected:
    """A connection to a peer ended; ``detail`` describes an error, if any."""

    peer_id: PeerId
    reason: DisconnectReason
    detail: str | None = None


@dataclass(frozen=True)
class MessageReceived:
    """A framed message arrived from a peer."""

    peer_id: PeerId
    message: bytes


@dataclass(frozen=True)
class ConnectionFailed:
    """An attempt to connect to a peer failed."""

    peer_id: PeerId
    error: str


ConnectionEvent = Connected | Disconnected | MessageReceived | ConnectionFailed


@dataclass
class HandshakeMessage:
    """First message exchanged on every new connection."""

    peer_id: PeerId
    protocol_version: str = PROTOCOL_VERSION
    capabilities: list[str] = field(default_factory=lambda: list(CAPABILITIES))
    timestamp: int = field(default_factory=lambda: int(time.time()))

    def to_bytes(self) -> bytes:
        document = {
            "peer_id": self.peer_id.to_dict(),
            "protocol_version": self.protocol_version,
            "capabilities": list(self.capabilities),
            "timestamp": self.timestamp,
        }
        return json.dumps(document, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "HandshakeMessage":
        try:
            document: Any = json.loads(data)
        except (ValueError, UnicodeDecodeError) as exc:
            raise SerializationError(str(exc)) from exc
        if not isinstance(document, dict):
            raise SerializationError("handshake must be an object")
        try:
            version = document["protocol_version"]
            capabilities = document["capabilities"]
            timestamp = document["timestamp"]
            if not isinstance(version, str):
                raise SerializationError("`protocol_version` must be a string")
            if not isinstance(capabilities, list) or not all(
                isinstance(item, str) for item in capabilities
            ):
                raise SerializationError("`capabilities` must be a list of strings")
            if not isinstance(timestamp, int) or isinstance(timestamp, bool) or timestamp < 0:
                raise SerializationError("`timestamp` must be a non-negative integer")
            peer_id = PeerId.from_dict(document["peer_id"])
        except KeyError as exc:
            raise SerializationError(f"missing field `{exc.args[0]}`") from exc
        except SerializationError:
            raise
        except (P2PError, TypeError, ValueError, AttributeError) as exc:
            raise SerializationError(f"invalid handshake: {exc}") from exc
        return cls(
            peer_id=peer_id,
            protocol_version=version,
            capabilities=list(capabilities),
            timestamp=timestamp,
        )


@dataclass(frozen=True)
class ConnectionInfo:
    """Snapshot of one connection's state."""

    peer_id: PeerId
    established_at: datetime
    last_activity: datetime
    bytes_sent: int
    bytes_received: int
    is_outbound: bool


async def _read_frame(reader: asyncio.StreamReader, limit: int, what: str) -> bytes:
    try:
        header = await reader.readexactly(_LENGTH.size)
    except (asyncio.IncompleteReadError, OSError) as exc:
        raise NetworkError(f"Failed to read {what} length: {exc}") from exc
    (length,) = _LENGTH.unpack(header)
    if length > limit:
        raise NetworkError(f"{what[0].upper()}{what[1:]} too large")
    try:
        return await reader.readexactly(length)
    except (asyncio.IncompleteReadError, OSError) as exc:
        raise NetworkError(f"Failed to read {what}: {exc}") from exc


async def _write_frame(writer: Any, data: bytes, what: str) -> None:
    if len(data) > _MAX_FRAME:
        raise NetworkError(f"Failed to send {what}: frame too large")
    try:
        writer.write(_LENGTH.pack(len(data)) + data)
        await writer.drain()
    except OSError as exc:
        raise NetworkError(f"Failed to send {what}: {exc}") from exc


async def read_frame(reader: asyncio.StreamReader, limit: int) -> bytes:
    """Read one frame: a big-endian 32-bit length followed by that many bytes."""
    return await _read_frame(reader, limit, "message")


async def write_frame(writer: Any, data: bytes) -> None:
    """Write one length-prefixed frame and wait until it is flushed."""
    await _write_frame(writer, bytes(data), "message")


@dataclass
class _Connection:
    peer_id: PeerId
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    established_at: datetime
    last_activity: datetime
    bytes_sent: int
    bytes_received: int
    is_outbound: bool
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    task: "asyncio.Task[Any] | None" = None

    def info(self) -> ConnectionInfo:
        return ConnectionInfo(
            peer_id=self.peer_id,
            established_at=self.established_at,
            last_activity=self.last_activity,
            bytes_sent=self.bytes_sent,
            bytes_received=self.bytes_received,
            is_outbound=self.is_outbound,
        )


def _split_bind_address(bind_address: str) -> tuple[str | None, int]:
    host, sep, port_text = bind_address.rpartition(":")
    if not sep or not port_text.isdigit() or int(port_text) > 65535:
        raise NetworkError(f"Failed to bind to {bind_address}: invalid address")
    host = host.strip("[]")
    return (host or None), int(port_text)


class ConnectionManager:
    """Owns the TCP connections to peers and reports their events on ``events``."""

    def __init__(self, max_connections: int, connection_timeout: float) -> None:
        self.max_connections = max_connections
        self.connection_timeout = connection_timeout
        self.events: "asyncio.Queue[ConnectionEvent]" = asyncio.Queue()
        self._connections: dict[PeerId, _Connection] = {}
        self._servers: list[asyncio.Server] = []
        self._handlers: set[asyncio.Task[Any]] = set()

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def start_listener(self, bind_address: str) -> tuple[str, int]:
        """Accept incoming connections on ``host:port``; returns the bound address."""
        host, port = _split_bind_address(bind_address)
        try:
            server = await asyncio.start_server(self._handle_incoming, host, port)
        except OSError as exc:
            raise NetworkError(f"Failed to bind to {bind_address}: {exc}") from exc
        self._servers.append(server)
        sockname = server.sockets[0].getsockname()
        log.info("Listening for connections on %s", bind_address)
        return sockname[0], sockname[1]

    async def connect_to_peer(self, peer_id: PeerId, address: PeerAddress) -> None:
        """Open a connection and perform the handshake; no-op if already connected."""
        if peer_id in self._connections:
            return
        if len(self._connections) >= self.max_connections:
            raise NetworkError("Max connections reached")
        target = f"{address.address}:{address.port}"
        log.debug("Connecting to peer %s at %s", peer_id, target)
        try:
            async with asyncio.timeout(self.connection_timeout):
                reader, writer = await asyncio.open_connection(address.address, address.port)
        except TimeoutError:
            raise PeerTimeoutError("Connection timeout") from None
        except OSError as exc:
            raise NetworkError(f"Failed to connect to {target}: {exc}") from exc
        try:
            connection = await self._outbound_handshake(peer_id, reader, writer)
        except BaseException:
            writer.close()
            raise
        self._store(connection)
        self.events.put_nowait(Connected(peer_id=peer_id, is_outbound=True))

    async def send_message(self, peer_id: PeerId, message: bytes) -> None:
        """Send one framed message to a connected peer."""
        connection = self._connections.get(peer_id)
        if connection is None:
            raise PeerNotFoundError(f"Peer {peer_id} not connected")
        data = bytes(message)
        async with connection.send_lock:
            await _write_frame(connection.writer, data, "message")
        connection.bytes_sent += len(data)
        connection.last_activity = _now()
        log.debug("Sent %d bytes to peer %s", len(data), peer_id)

    async def disconnect_peer(self, peer_id: PeerId, reason: DisconnectReason) -> None:
        """Close the connection to a peer, if there is one."""
        connection = self._connections.pop(peer_id, None)
        if connection is None:
            return
        self._teardown(connection)
        log.debug("Disconnected from peer %s: %s", peer_id, reason.value)
        self.events.put_nowait(Disconnected(peer_id=peer_id, reason=reason))

    def get_connected_peers(self) -> list[PeerId]:
        return list(self._connections)

    def get_connection_info(self, peer_id: PeerId) -> ConnectionInfo | None:
        connection = self._connections.get(peer_id)
        return connection.info() if connection is not None else None

    async def close(self) -> None:
        """Stop listening and drop every connection."""
        servers, self._servers = self._servers, []
        for server in servers:
            server.close()
        for peer_id in list(self._connections):
            await self.disconnect_peer(peer_id, DisconnectReason.SHUTDOWN)
        handlers = list(self._handlers)
        for task in handlers:
            task.cancel()
        await asyncio.gather(*handlers, return_exceptions=True)
        for server in servers:
            await server.wait_closed()

    def _store(self, connection: _Connection) -> None:
        previous = self._connections.get(connection.peer_id)
        if previous is not None and previous is not connection:
            self._teardown(previous)
        self._connections[connection.peer_id] = connection

    @staticmethod
    def _teardown(connection: _Connection) -> None:
        connection.writer.close()
        task = connection.task
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _handle_incoming(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)
        try:
            remote = writer.get_extra_info("peername")
            log.debug("Incoming connection from %s", remote)
            if len(self._connections) >= self.max_connections:
                log.warning("Max connections reached, rejecting connection from %s", remote)
                writer.close()
                return
            try:
                connection = await self._inbound_handshake(reader, writer)
            except P2PError as exc:
                log.warning("Failed to handle incoming connection: %s", exc)
                writer.close()
                return
            connection.task = task
            self._store(connection)
            self.events.put_nowait(Connected(peer_id=connection.peer_id, is_outbound=False))
            await self._receive_loop(connection)
        finally:
            if task is not None:
                self._handlers.discard(task)

    async def _receive_loop(self, connection: _Connection) -> None:
        peer_id = connection.peer_id
        while True:
            try:
                message = await _read_frame(connection.reader, MESSAGE_LIMIT, "message")
            except P2PError as exc:
                log.warning("Failed to read message from peer %s: %s", peer_id, exc)
                if self._connections.get(peer_id) is connection:
                    del self._connections[peer_id]
                connection.writer.close()
                self.events.put_nowait(
                    Disconnected(peer_id=peer_id, reason=DisconnectReason.ERROR, detail=str(exc))
                )
                return
            connection.bytes_received += len(message)
            connection.last_activity = _now()
            self.events.put_nowait(MessageReceived(peer_id=peer_id, message=message))

    async def _outbound_handshake(
        self,
        peer_id: PeerId,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> _Connection:
        handshake_data = HandshakeMessage(peer_id=peer_id).to_bytes()
        await _write_frame(writer, handshake_data, "handshake")
        response_data = await _read_frame(reader, HANDSHAKE_LIMIT, "handshake response")
        HandshakeMessage.from_bytes(response_data)
        now = _now()
        return _Connection(
            peer_id=peer_id,
            reader=reader,
            writer=writer,
            established_at=now,
            last_activity=now,
            bytes_sent=len(handshake_data),
            bytes_received=len(response_data),
            is_outbound=True,
        )

    async def _inbound_handshake(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> _Connection:
        handshake_data = await _read_frame(reader, HANDSHAKE_LIMIT, "handshake message")
        handshake = HandshakeMessage.from_bytes(handshake_data)
        peer_id = handshake.peer_id
        response_data = HandshakeMessage(peer_id=peer_id).to_bytes()
        await _write_frame(writer, response_data, "handshake response")
        now = _now()
        return _Connection(
            peer_id=peer_id,
            reader=reader,
            writer=writer,
            established_at=now,
            last_activity=now,
            bytes_sent=len(response_data),
            bytes_received=len(handshake_data),
            is_outbound=False,
        )