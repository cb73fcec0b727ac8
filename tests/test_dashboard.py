import asyncio

import aiohttp
import pytest
from aiohttp.test_utils import TestClient, TestServer

from peerlink.core import AddressType, NetworkConfig, NetworkId, PeerAddress
from peerlink.dashboard import DashboardServer, create_app, main
from peerlink.network import NetworkManager


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


@pytest.mark.asyncio
async def test_index_page():
    async with NetworkManager(_config([])) as network:
        async with TestClient(TestServer(create_app(network))) as client:
            response = await client.get("/")
            assert response.status == 200
            assert response.content_type == "text/html"
            assert await response.text() == "<h1>P2P Dashboard</h1>"


@pytest.mark.asyncio
async def test_peers_empty_without_connections():
    async with NetworkManager(_config([])) as network:
        async with TestClient(TestServer(create_app(network))) as client:
            response = await client.get("/peers")
            assert response.status == 200
            assert await response.json() == []


@pytest.mark.asyncio
async def test_peers_lists_connected_peer():
    async with NetworkManager(_config()) as server, NetworkManager(_config([])) as network:
        await server.start()
        await network.start()
        port = server.listen_addresses[0][1]
        await network.connect_to_peer(
            PeerAddress(address="127.0.0.1", port=port, address_type=AddressType.IPV4)
        )
        await _wait_until(lambda: len(network.get_peers()) == 1)
        async with TestClient(TestServer(create_app(network))) as client:
            response = await client.get("/peers")
            assert await response.json() == [b"peer_127.0.0.1".hex() + ":test"]


@pytest.mark.asyncio
async def test_server_run_serves_until_cancelled():
    async with NetworkManager(_config([])) as network:
        server = DashboardServer("127.0.0.1:0", network)
        task = asyncio.create_task(server.run())
        try:
            await _wait_until(lambda: server.bound_address is not None)
            host, port = server.bound_address
            async with aiohttp.ClientSession() as session:
                async with session.get(f"http://{host}:{port}/peers") as response:
                    assert response.status == 200
                    assert await response.json() == []
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        assert server.bound_address is None


@pytest.mark.asyncio
@pytest.mark.parametrize("address", ["nohost", "127.0.0.1:http", ":8080", "127.0.0.1:70000"])
async def test_server_rejects_bad_address(address):
    async with NetworkManager(_config([])) as network:
        with pytest.raises(ValueError):
            DashboardServer(address, network)


def test_main_rejects_bad_address():
    with pytest.raises(SystemExit) as excinfo:
        main(["--address", "nohost"])
    assert excinfo.value.code == 2