import asyncio
import socket

import pytest

from peerlink.core import AddressType, NetworkConfig, NetworkId, PeerAddress, PeerId
from peerlink.errors import NetworkError, P2PError, PeerNotFoundError
from peerlink.network import NetworkEvent, NetworkManager


def _config(listen=("127.0.0.1:0",)):
    return NetworkConfig(
        network_id=NetworkId("test"),
        listen_addresses=list(listen),
        bootstrap_peers=[],
        max_connections=10,
        connection_timeout=5,
        enable_tor=False,
        enable_upnp=False,
        bandwidth_limit=None,
    )


async def _wait_until(predicate, timeout=5.0):
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


async def _next_event(manager, kind, timeout=5.0):
    async with asyncio.timeout(timeout):
        while True:
            event = await manager.events.get()
            if event.kind is kind:
                return event


def _address(port):
    return PeerAddress(address="127.0.0.1", port=port, address_type=AddressType.IPV4)


REMOTE_ID = PeerId(b"peer_127.0.0.1", NetworkId("test"))


@pytest.mark.asyncio
async def test_network_manager_creation():
    async with NetworkManager(_config()) as manager:
        assert manager.local_peer_id == PeerId(b"local_peer", NetworkId("test"))
        assert manager.get_peers() == {}


@pytest.mark.asyncio
async def test_connected_peers_are_tracked_on_both_sides():
    async with NetworkManager(_config()) as server, NetworkManager(_config([])) as client:
        await server.start()
        await client.start()
        port = server.listen_addresses[0][1]
        await client.connect_to_peer(_address(port))
        await _wait_until(lambda: REMOTE_ID in client.get_peers())
        await _wait_until(lambda: REMOTE_ID in server.get_peers())
        info = client.get_peer(REMOTE_ID)
        assert info.is_connected
        assert info.addresses == [_address(port)]
        assert server.get_peer(REMOTE_ID).is_connected


@pytest.mark.asyncio
async def test_message_reaches_listening_side():
    async with NetworkManager(_config()) as server, NetworkManager(_config([])) as client:
        await server.start()
        await client.start()
        await client.connect_to_peer(_address(server.listen_addresses[0][1]))
        await _wait_until(lambda: REMOTE_ID in client.get_peers())
        await client.send_message(REMOTE_ID, b"hello")
        event = await _next_event(server, NetworkEvent.Kind.MESSAGE_RECEIVED)
        assert event.message == b"hello"
        assert event.peer_id == REMOTE_ID
        assert client.get_peer(REMOTE_ID).bytes_sent == 5
        await _wait_until(lambda: server.get_peer(REMOTE_ID).bytes_received == 5)
        assert server.get_peer(REMOTE_ID).bytes_received == 5


@pytest.mark.asyncio
async def test_broadcast_reaches_connected_peer():
    async with NetworkManager(_config()) as server, NetworkManager(_config([])) as client:
        await server.start()
        await client.start()
        await client.connect_to_peer(_address(server.listen_addresses[0][1]))
        await client.broadcast_message(b"to all")
        event = await _next_event(server, NetworkEvent.Kind.MESSAGE_RECEIVED)
        assert event.message == b"to all"


@pytest.mark.asyncio
async def test_send_to_unknown_peer_raises():
    async with NetworkManager(_config([])) as manager:
        with pytest.raises(PeerNotFoundError):
            await manager.send_message(PeerId(b"nobody", NetworkId("test")), b"x")


@pytest.mark.asyncio
async def test_failed_connection_raises_and_emits_event():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    async with NetworkManager(_config([])) as manager:
        with pytest.raises(P2PError):
            await manager.connect_to_peer(_address(port))
        event = await _next_event(manager, NetworkEvent.Kind.CONNECTION_FAILED)
        assert event.peer_id == REMOTE_ID
        assert event.error


@pytest.mark.asyncio
async def test_listener_bind_failure_raises():
    async with NetworkManager(_config(["not-an-address"])) as manager:
        with pytest.raises(NetworkError):
            await manager.start()


@pytest.mark.asyncio
async def test_maintenance_keeps_recently_disconnected_peer():
    server = NetworkManager(_config())
    async with server:
        await server.start()
        client = NetworkManager(_config([]))
        await client.start()
        await client.connect_to_peer(_address(server.listen_addresses[0][1]))
        await _wait_until(lambda: REMOTE_ID in server.get_peers())
        await client.close()
        await _wait_until(lambda: not server.get_peer(REMOTE_ID).is_connected)
        server.perform_maintenance()
        assert REMOTE_ID in server.get_peers()


@pytest.mark.asyncio
async def test_maintenance_drops_expired_disconnected_peer():
    server = NetworkManager(_config(), disconnected_retention=0, maintenance_interval=60)
    async with server:
        await server.start()
        client = NetworkManager(_config([]))
        await client.start()
        await client.connect_to_peer(_address(server.listen_addresses[0][1]))
        await _wait_until(lambda: REMOTE_ID in server.get_peers())
        await client.close()
        await _next_event(server, NetworkEvent.Kind.PEER_DISCONNECTED)
        server.perform_maintenance()
        assert server.get_peers() == {}