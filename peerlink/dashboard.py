"""Small web dashboard showing the state of the peer-to-peer network."""

import argparse
import asyncio
import logging

from aiohttp import web

from .core import NetworkConfig, PeerId
from .network import NetworkManager

log = logging.getLogger(__name__)

DEFAULT_ADDRESS = "127.0.0.1:8080"

_NETWORK = web.AppKey("network", NetworkManager)


def _parse_address(text: str) -> tuple[str, int]:
    host, sep, port_text = text.rpartition(":")
    if not sep or not port_text.isascii() or not port_text.isdigit():
        raise ValueError(f"invalid address {text!r}")
    port = int(port_text)
    host = host.strip("[]")
    if not host or port > 0xFFFF:
        raise ValueError(f"invalid address {text!r}")
    return host, port


def _peer_label(peer_id: PeerId) -> str:
    return f"{peer_id.public_key.hex()}:{peer_id.network_id.value}"


async def _index(request: web.Request) -> web.Response:
    return web.Response(text="<h1>P2P Dashboard</h1>", content_type="text/html")


async def _get_peers(request: web.Request) -> web.Response:
    network = request.app[_NETWORK]
    return web.json_response([_peer_label(peer_id) for peer_id in network.get_peers()])


def create_app(network: NetworkManager) -> web.Application:
    """Build the dashboard web application for a network manager."""
    app = web.Application()
    app[_NETWORK] = network
    app.router.add_get("/", _index)
    app.router.add_get("/peers", _get_peers)
    return app


class DashboardServer:
    """Serves the dashboard over HTTP on ``host:port``."""

    def __init__(self, address: str, network: NetworkManager) -> None:
        self.address = address
        self.host, self.port = _parse_address(address)
        self.network = network
        self.bound_address: tuple[str, int] | None = None

    async def run(self) -> None:
        """Serve until cancelled."""
        runner = web.AppRunner(create_app(self.network))
        await runner.setup()
        try:
            site = web.TCPSite(runner, self.host, self.port)
            await site.start()
            sockname = runner.addresses[0]
            self.bound_address = (sockname[0], sockname[1])
            log.info("Dashboard listening on %s:%d", *self.bound_address)
            await asyncio.Event().wait()
        finally:
            self.bound_address = None
            await runner.cleanup()


def _address_argument(text: str) -> str:
    _parse_address(text)
    return text


async def _serve(address: str) -> None:
    network = NetworkManager(NetworkConfig())
    await DashboardServer(address, network).run()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the peer-to-peer network dashboard.")
    parser.add_argument(
        "--address",
        type=_address_argument,
        default=DEFAULT_ADDRESS,
        help="host:port to listen on",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(_serve(args.address))
    except KeyboardInterrupt:
        pass
    return 0