"""High-level client for joining and using the peer-to-peer network."""

from .config import AppConfig
from .core import AddressType, PeerAddress, PeerId
from .errors import NetworkError
from .network import NetworkManager, PeerInfo


def _parse_port(text: str) -> int:
    """Parse a 16-bit port number; anything unparsable becomes 0."""
    digits = text[1:] if text.startswith("+") else text
    if digits and digits.isascii() and digits.isdigit():
        value = int(digits)
        if value <= 0xFFFF:
            return value
    return 0


class P2PClient:
    """Wraps a network manager configured from an application configuration."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self.network = NetworkManager(config.network)

    async def __aenter__(self) -> "P2PClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def start(self) -> None:
        """Start networking services."""
        await self.network.start()

    async def close(self) -> None:
        await self.network.close()

    async def connect(self, addr: str) -> None:
        """Connect to a peer given as ``host:port``."""
        parts = addr.split(":")
        if len(parts) != 2:
            raise NetworkError("invalid address")
        host, port_text = parts
        peer_address = PeerAddress(
            address=host,
            port=_parse_port(port_text),
            address_type=AddressType.DOMAIN,
        )
        await self.network.connect_to_peer(peer_address)

    def peers(self) -> dict[PeerId, PeerInfo]:
        """Known peers and what is known about them."""
        return self.network.get_peers()