"""NAT traversal: direct binding, UPnP port mapping, STUN and UDP hole punching."""

import asyncio
import contextlib
import ipaddress
import logging
import os
import socket
import struct
import xml.etree.ElementTree as ET
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urljoin
from xml.sax.saxutils import escape

import httpx

from .core import AddressType, PeerAddress, PeerId
from .errors import InvalidDataError, NetworkError, PeerTimeoutError

log = logging.getLogger(__name__)

SocketAddress = tuple[str, int]

_MAGIC_COOKIE = 0x2112A442
_COOKIE_BYTES = _MAGIC_COOKIE.to_bytes(4, "big")
_HEADER_LENGTH = 20
_TRANSACTION_ID_LENGTH = 12

_BINDING_REQUEST = 0x0001
_BINDING_SUCCESS = 0x0101
_BINDING_ERROR = 0x0111

_ATTR_MAPPED_ADDRESS = 0x0001
_ATTR_ERROR_CODE = 0x0009
_ATTR_XOR_MAPPED_ADDRESS = 0x0020

_FAMILY_IPV4 = 0x01
_FAMILY_IPV6 = 0x02

_SSDP_ADDRESS = ("239.255.255.250", 1900)
_IGD_SEARCH_TARGET = "urn:schemas-upnp-org:device:InternetGatewayDevice:1"
_WAN_SERVICES = ("WANIPConnection", "WANPPPConnection")
_SOAP_ENVELOPE = "http://schemas.xmlsoap.org/soap/envelope/"
_SOAP_ENCODING = "http://schemas.xmlsoap.org/soap/encoding/"


class Protocol(Enum):
    TCP = "TCP"
    UDP = "UDP"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class PortMapping:
    """A port mapping to request from a UPnP gateway."""

    external_port: int
    internal_port: int
    protocol: Protocol
    description: str
    duration: int  # seconds


class TraversalMethod(Enum):
    DIRECT = "Direct"
    UPNP = "UPnP"
    STUN = "STUN"
    TURN = "TURN"
    HOLE_PUNCHING = "HolePunching"


@dataclass(frozen=True)
class TraversalResult:
    """Outcome of one traversal attempt."""

    method: TraversalMethod
    external_address: SocketAddress | None
    success: bool
    error: str | None = None

    @classmethod
    def ok(cls, method: TraversalMethod, address: SocketAddress) -> "TraversalResult":
        return cls(method=method, external_address=address, success=True, error=None)

    @classmethod
    def failed(cls, method: TraversalMethod, error: str) -> "TraversalResult":
        return cls(method=method, external_address=None, success=False, error=error)


def build_binding_request(transaction_id: bytes | None = None) -> bytes:
    """Encode a STUN Binding Request; a random transaction id is used if none is given."""
    if transaction_id is None:
        transaction_id = os.urandom(_TRANSACTION_ID_LENGTH)
    if len(transaction_id) != _TRANSACTION_ID_LENGTH:
        raise ValueError("transaction id must be 12 bytes")
    return struct.pack("!HHI", _BINDING_REQUEST, 0, _MAGIC_COOKIE) + bytes(transaction_id)


def _iter_attributes(body: bytes) -> Iterable[tuple[int, bytes]]:
    offset = 0
    while offset + 4 <= len(body):
        attr_type, attr_length = struct.unpack_from("!HH", body, offset)
        start = offset + 4
        end = start + attr_length
        if end > len(body):
            raise InvalidDataError("truncated STUN attribute")
        yield attr_type, body[start:end]
        offset = start + ((attr_length + 3) & ~3)


def _decode_address(value: bytes, xor_key: bytes | None) -> SocketAddress:
    if len(value) < 4:
        raise InvalidDataError("STUN address attribute too short")
    family = value[1]
    port = struct.unpack_from("!H", value, 2)[0]
    if family == _FAMILY_IPV4:
        raw = value[4:8]
        if len(raw) != 4:
            raise InvalidDataError("STUN IPv4 address truncated")
    elif family == _FAMILY_IPV6:
        raw = value[4:20]
        if len(raw) != 16:
            raise InvalidDataError("STUN IPv6 address truncated")
    else:
        raise InvalidDataError(f"unknown STUN address family {family}")
    if xor_key is not None:
        port ^= _MAGIC_COOKIE >> 16
        raw = bytes(a ^ b for a, b in zip(raw, xor_key))
    return str(ipaddress.ip_address(raw)), port


def parse_binding_response(data: bytes, transaction_id: bytes) -> SocketAddress:
    """Decode a STUN Binding response and return the mapped address.

    Raises InvalidDataError for malformed or unrelated packets and NetworkError
    for error responses or unexpected message types.
    """
    if len(data) < _HEADER_LENGTH:
        raise InvalidDataError("STUN message too short")
    message_type, length, cookie = struct.unpack_from("!HHI", data, 0)
    if cookie != _MAGIC_COOKIE:
        raise InvalidDataError("STUN magic cookie mismatch")
    if len(data) < _HEADER_LENGTH + length:
        raise InvalidDataError("STUN message truncated")
    if data[8:_HEADER_LENGTH] != bytes(transaction_id):
        raise InvalidDataError("STUN transaction id mismatch")
    body = data[_HEADER_LENGTH:_HEADER_LENGTH + length]
    attributes = list(_iter_attributes(body))

    if message_type == _BINDING_ERROR:
        code, reason = 0, ""
        for attr_type, value in attributes:
            if attr_type == _ATTR_ERROR_CODE and len(value) >= 4:
                code = (value[2] & 0x07) * 100 + value[3]
                reason = value[4:].decode("utf-8", errors="replace")
                break
        raise NetworkError(f"STUN error {code}: {reason}")
    if message_type != _BINDING_SUCCESS:
        raise NetworkError("Unexpected STUN response")

    xor_key = _COOKIE_BYTES + bytes(transaction_id)
    mapped = None
    for attr_type, value in attributes:
        if attr_type == _ATTR_XOR_MAPPED_ADDRESS:
            return _decode_address(value, xor_key)
        if attr_type == _ATTR_MAPPED_ADDRESS and mapped is None:
            mapped = _decode_address(value, None)
    if mapped is None:
        raise InvalidDataError("STUN response carries no mapped address")
    return mapped


def _parse_socket_address(text: str) -> SocketAddress:
    host, sep, port_text = text.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in {text!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
        ip = ipaddress.ip_address(host)
        if ip.version != 6:
            raise ValueError(f"invalid address {text!r}")
    else:
        ip = ipaddress.ip_address(host)
        if ip.version != 4:
            raise ValueError(f"invalid address {text!r}")
    if not port_text.isdigit() or not 0 <= int(port_text) <= 65535:
        raise ValueError(f"invalid port in {text!r}")
    return str(ip), int(port_text)


def _family_of(host: str) -> socket.AddressFamily:
    return socket.AF_INET6 if ipaddress.ip_address(host).version == 6 else socket.AF_INET


def _address_type(host: str) -> AddressType:
    return AddressType.IPV6 if ipaddress.ip_address(host).version == 6 else AddressType.IPV4


class _DatagramQueue(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self.queue.put_nowait((data, addr))

    def error_received(self, exc: Exception) -> None:
        self.queue.put_nowait(exc)

    async def receive(self) -> tuple[bytes, SocketAddress]:
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        data, addr = item
        return data, (addr[0], addr[1])


@contextlib.asynccontextmanager
async def _udp_endpoint(
    local_addr: SocketAddress, family: socket.AddressFamily
) -> AsyncIterator[tuple[asyncio.DatagramTransport, _DatagramQueue]]:
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        _DatagramQueue, local_addr=local_addr, family=family
    )
    try:
        yield transport, protocol
    finally:
        transport.close()


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child_text(element: ET.Element, name: str) -> str | None:
    for child in element:
        if _local_name(child.tag) == name:
            return (child.text or "").strip()
    return None


def _find_text(root: ET.Element, name: str) -> str | None:
    for element in root.iter():
        if _local_name(element.tag) == name:
            return (element.text or "").strip()
    return None


@dataclass(frozen=True)
class _Gateway:
    control_url: str
    service_type: str


class NatTraversalService:
    """Discovers how this peer can be reached from outside its network."""

    def __init__(
        self,
        local_addr: SocketAddress,
        upnp_enabled: bool,
        *,
        stun_servers: Iterable[str] = (),
        stun_timeout: float = 5.0,
        hole_punch_timeout: float = 5.0,
        upnp_timeout: float = 3.0,
    ) -> None:
        host, port = local_addr
        self.local_addr: SocketAddress = (str(ipaddress.ip_address(host)), int(port))
        if not 0 <= self.local_addr[1] <= 65535:
            raise ValueError(f"port {port} out of range")
        self.upnp_enabled = upnp_enabled
        self.stun_servers = list(stun_servers)
        self.stun_timeout = stun_timeout
        self.hole_punch_timeout = hole_punch_timeout
        self.upnp_timeout = upnp_timeout

    async def establish_connectivity(self) -> list[TraversalResult]:
        """Try every traversal method in turn and report each outcome."""
        results = [await self._test_direct_connectivity()]
        if self.upnp_enabled:
            results.append(await self._try_upnp_mapping())
        results.append(await self._discover_external_address())
        results.append(await self._attempt_hole_punching())
        return results

    async def stun_request(self, stun_server: str) -> SocketAddress:
        """Ask a STUN server (given as ``ip:port``) for our external address."""
        try:
            server = _parse_socket_address(stun_server)
        except ValueError as exc:
            raise NetworkError(f"Invalid STUN server address: {exc}") from exc
        family = _family_of(server[0])
        bind = ("::", 0) if family == socket.AF_INET6 else ("0.0.0.0", 0)
        transaction_id = os.urandom(_TRANSACTION_ID_LENGTH)
        request = build_binding_request(transaction_id)
        try:
            async with _udp_endpoint(bind, family) as (transport, protocol):
                transport.sendto(request, server)
                try:
                    async with asyncio.timeout(self.stun_timeout):
                        while True:
                            data, _ = await protocol.receive()
                            try:
                                return parse_binding_response(data, transaction_id)
                            except InvalidDataError:
                                continue
                except TimeoutError:
                    raise PeerTimeoutError("STUN request timeout") from None
        except OSError as exc:
            raise NetworkError(f"STUN request failed: {exc}") from exc

    async def coordinate_hole_punch(
        self, peer_id: PeerId, peer_addr: PeerAddress
    ) -> SocketAddress:
        """Send a punch packet to the peer and return the address that answers."""
        log.debug("Coordinating hole punch with peer %s at %s", peer_id, peer_addr.address)
        try:
            target = (str(ipaddress.ip_address(peer_addr.address)), peer_addr.port)
        except ValueError as exc:
            raise NetworkError(f"Invalid peer address: {exc}") from exc
        try:
            async with _udp_endpoint(
                self.local_addr, _family_of(self.local_addr[0])
            ) as (transport, protocol):
                transport.sendto(b"punch", target)
                try:
                    async with asyncio.timeout(self.hole_punch_timeout):
                        _, addr = await protocol.receive()
                except TimeoutError:
                    raise PeerTimeoutError("Hole punch timeout") from None
                return addr
        except OSError as exc:
            raise NetworkError(f"Hole punch failed: {exc}") from exc

    async def get_connection_addresses(self) -> list[PeerAddress]:
        """The local address followed by every external address discovered."""
        host, port = self.local_addr
        addresses = [PeerAddress(address=host, port=port, address_type=_address_type(host))]
        for result in await self.establish_connectivity():
            if result.success and result.external_address is not None:
                ext_host, ext_port = result.external_address
                addresses.append(
                    PeerAddress(
                        address=ext_host,
                        port=ext_port,
                        address_type=_address_type(ext_host),
                    )
                )
        return addresses

    async def _test_direct_connectivity(self) -> TraversalResult:
        try:
            async with _udp_endpoint(self.local_addr, _family_of(self.local_addr[0])):
                pass
        except OSError as exc:
            return TraversalResult.failed(TraversalMethod.DIRECT, str(exc))
        return TraversalResult.ok(TraversalMethod.DIRECT, self.local_addr)

    async def _discover_external_address(self) -> TraversalResult:
        for server in self.stun_servers:
            try:
                address = await self.stun_request(server)
            except (NetworkError, PeerTimeoutError) as exc:
                log.debug("STUN request to %s failed: %s", server, exc)
                continue
            return TraversalResult.ok(TraversalMethod.STUN, address)
        return TraversalResult.failed(TraversalMethod.STUN, "All STUN servers failed")

    async def _attempt_hole_punching(self) -> TraversalResult:
        log.debug("Attempting UDP hole punching")
        if not self.stun_servers:
            return TraversalResult.failed(
                TraversalMethod.HOLE_PUNCHING, "No STUN servers configured"
            )
        try:
            address = await self.stun_request(self.stun_servers[0])
        except (NetworkError, PeerTimeoutError) as exc:
            return TraversalResult.failed(TraversalMethod.HOLE_PUNCHING, str(exc))
        return TraversalResult.ok(TraversalMethod.HOLE_PUNCHING, address)

    async def _try_upnp_mapping(self) -> TraversalResult:
        log.debug("Attempting UPnP port mapping")
        host, port = self.local_addr
        if ipaddress.ip_address(host).version != 4:
            return TraversalResult.failed(
                TraversalMethod.UPNP, "UPnP only supports IPv4 addresses"
            )
        mapping = PortMapping(
            external_port=port,
            internal_port=port,
            protocol=Protocol.TCP,
            description="P2P Application",
            duration=3600,
        )
        try:
            async with httpx.AsyncClient(timeout=self.upnp_timeout) as client:
                gateway = await self._search_gateway(client)
                response = await self._soap_call(
                    client, gateway, "GetExternalIPAddress", {}
                )
                external_ip = _find_text(response, "NewExternalIPAddress")
                if not external_ip:
                    raise NetworkError("gateway returned no external address")
                await self._soap_call(
                    client,
                    gateway,
                    "AddPortMapping",
                    {
                        "NewRemoteHost": "",
                        "NewExternalPort": str(mapping.external_port),
                        "NewProtocol": str(mapping.protocol),
                        "NewInternalPort": str(mapping.internal_port),
                        "NewInternalClient": host,
                        "NewEnabled": "1",
                        "NewPortMappingDescription": mapping.description,
                        "NewLeaseDuration": str(mapping.duration),
                    },
                )
        except (NetworkError, PeerTimeoutError, OSError, httpx.HTTPError, ET.ParseError) as exc:
            return TraversalResult.failed(TraversalMethod.UPNP, str(exc))
        return TraversalResult.ok(TraversalMethod.UPNP, (external_ip, mapping.external_port))

    async def _search_gateway(self, client: httpx.AsyncClient) -> _Gateway:
        search = (
            "M-SEARCH * HTTP/1.1\r\n"
            f"HOST: {_SSDP_ADDRESS[0]}:{_SSDP_ADDRESS[1]}\r\n"
            f"ST: {_IGD_SEARCH_TARGET}\r\n"
            'MAN: "ssdp:discover"\r\n'
            "MX: 2\r\n\r\n"
        ).encode("ascii")
        async with _udp_endpoint(("0.0.0.0", 0), socket.AF_INET) as (transport, protocol):
            transport.sendto(search, _SSDP_ADDRESS)
            try:
                async with asyncio.timeout(self.upnp_timeout):
                    while True:
                        data, _ = await protocol.receive()
                        location = self._ssdp_location(data)
                        if location is None:
                            continue
                        try:
                            return await self._describe_gateway(client, location)
                        except NetworkError as exc:
                            log.debug("Ignoring gateway at %s: %s", location, exc)
            except TimeoutError:
                raise PeerTimeoutError("gateway search timed out") from None

    @staticmethod
    def _ssdp_location(data: bytes) -> str | None:
        for line in data.decode("latin-1").splitlines():
            name, sep, value = line.partition(":")
            if sep and name.strip().lower() == "location":
                return value.strip()
        return None

    @staticmethod
    async def _describe_gateway(client: httpx.AsyncClient, location: str) -> _Gateway:
        response = await client.get(location)
        if response.status_code != 200:
            raise NetworkError(f"gateway description returned HTTP {response.status_code}")
        root = ET.fromstring(response.content)
        base = _find_text(root, "URLBase") or location
        for element in root.iter():
            if _local_name(element.tag) != "service":
                continue
            service_type = _child_text(element, "serviceType") or ""
            control = _child_text(element, "controlURL")
            if control and any(name in service_type for name in _WAN_SERVICES):
                return _Gateway(urljoin(base, control), service_type)
        raise NetworkError("gateway offers no WAN connection service")

    @staticmethod
    async def _soap_call(
        client: httpx.AsyncClient,
        gateway: _Gateway,
        action: str,
        arguments: dict[str, str],
    ) -> ET.Element:
        args = "".join(f"<{k}>{escape(v)}</{k}>" for k, v in arguments.items())
        body = (
            '<?xml version="1.0"?>'
            f'<s:Envelope xmlns:s="{_SOAP_ENVELOPE}" s:encodingStyle="{_SOAP_ENCODING}">'
            f'<s:Body><u:{action} xmlns:u="{gateway.service_type}">{args}</u:{action}>'
            "</s:Body></s:Envelope>"
        )
        response = await client.post(
            gateway.control_url,
            content=body.encode("utf-8"),
            headers={
                "Content-Type": 'text/xml; charset="utf-8"',
                "SOAPAction": f'"{gateway.service_type}#{action}"',
            },
        )
        root = ET.fromstring(response.content) if response.content else None
        if response.status_code != 200:
            description = _find_text(root, "errorDescription") if root is not None else None
            raise NetworkError(
                f"UPnP {action} failed: {description or f'HTTP {response.status_code}'}"
            )
        if root is None:
            raise NetworkError(f"UPnP {action} returned an empty response")
        return root