# peerlink

An asyncio toolkit for building peer-to-peer applications. It contains these modules:

| Module | What it provides |
| --- | --- |
| `peerlink.identity` | `IdentityKeyPair` (Ed25519), `verify_signature`, `hash_data`, `hash_file`, `generate_random_bytes` and `MessageAuth`, which signs data together with a timestamp. |
| `peerlink.core` | The data model: `PeerId`, `NetworkId`, `PeerAddress`, `FileInfo`, `FileChunk` and `FileTransfer`. It also defines the control, data, file and update message classes (`Chat`, `Heartbeat`, `TransferRequest`, `UpdateAvailable`, ...), together with `message_category` and `encode_message`. |
| `peerlink.types` | Value types: `ReputationScore` (clamped to -1000..1000), `Bandwidth`, `FileSize`, `ProtocolVersion` and `NetworkStats`. |
| `peerlink.config` | `AppConfig` with network, storage, security, dashboard, Tor and logging sections. It reads and writes TOML. |
| `peerlink.messaging` | `MessageRouter`, `NetworkMessage`, the abstract `MessageHandler` and the default `ControlMessageHandler` and `DataMessageHandler`. |
| `peerlink.files` | `FileManager`, which reports file metadata and SHA-256 hashes and splits files into checksummed chunks. |
| `peerlink.discovery` | `DiscoveryService` and the JSON discovery messages, with `encode_discovery_message` and `decode_discovery_message`. |
| `peerlink.connection` | `ConnectionManager`: TCP connections with a JSON handshake and length-prefixed frames. It also provides `read_frame` and `write_frame`. |
| `peerlink.nat` | `NatTraversalService`: direct binding, UPnP port mapping, STUN requests and UDP hole punching. It also has a STUN codec (`build_binding_request`, `parse_binding_response`). |
| `peerlink.network` | `NetworkManager`, which ties connections, discovery and routing together and tracks peers as `PeerInfo`. |
| `peerlink.client` | `P2PClient`, a small wrapper around `NetworkManager` that is built from an `AppConfig`. |
| `peerlink.updater` | `Updater`, which fetches a release manifest, compares semantic versions, verifies Ed25519 signatures and replaces an installed file atomically. |
| `peerlink.dashboard` | An aiohttp dashboard (`create_app`, `DashboardServer`) and the `peerlink-dashboard` command. |

## Installation

```
pip install peerlink
```

To install the test requirements as well (pytest, pytest-asyncio, respx):

```
pip install "peerlink[test]"
```

Python 3.11 or later is required.

## Identity and signatures

```python
from peerlink.identity import IdentityKeyPair, MessageAuth, hash_data, verify_signature

keys = IdentityKeyPair.generate()
signature = keys.sign(b"hello")
assert keys.verify(b"hello", signature)
assert verify_signature(keys.public_key_bytes(), b"hello", signature)

auth = MessageAuth.create(keys, b"hello")   # signs data + 8-byte big-endian timestamp
assert auth.verify(b"hello")
assert auth.is_fresh(60)

digest = hash_data(b"hello")   # 32-byte SHA-256 digest
```

`save_to_file` writes the raw 32-byte secret key and creates any missing parent directories. `load_from_file` reads that key back, and raises `CryptoError` if the file is not exactly 32 bytes long.

## Configuration

```python
from pathlib import Path
from peerlink.config import AppConfig

config = AppConfig()
config.storage.data_dir = Path("/var/lib/peerlink")
config.save_to_file("config/peerlink.toml")
loaded = AppConfig.load_from_file("config/peerlink.toml")
loaded.validate()
```

`validate` raises `ConfigError` in three cases:

- `network.max_connections` is 0.
- `storage.data_dir` is not an absolute path. The default `./data` is relative, so a default configuration fails validation.
- The dashboard is enabled and its port is 0.

Reading or parsing a file that is missing or malformed also raises `ConfigError`.

## Files and chunks

```python
from peerlink.files import FileManager

files = FileManager("shared")
info = files.file_info("movie.mkv")          # name, size, SHA-256 hash, timestamps
chunks = files.read_chunks("movie.mkv", 64 * 1024)
assert all(chunk.verify_checksum() for chunk in chunks)
```

Each chunk gets a fresh `TransferId`.

## Sizes and bandwidth

```python
from peerlink.types import Bandwidth, FileSize

str(FileSize.mb(3))      # "3.00 MB"
str(Bandwidth.kbps(2))   # "2.00 KB/s"
```

## Connections

Every frame on the wire is a big-endian 32-bit length followed by the payload. The first frame exchanged is a JSON handshake, limited to 1 MiB. Messages after that are limited to 10 MiB. `ConnectionManager.events` is an `asyncio.Queue` that receives `Connected`, `Disconnected`, `MessageReceived` and `ConnectionFailed` events.

```python
import asyncio
from peerlink.connection import ConnectionManager
from peerlink.core import PeerAddress, PeerId

async def demo():
    async with ConnectionManager(10, 5.0) as server, ConnectionManager(10, 5.0) as client:
        host, port = await server.start_listener("127.0.0.1:0")
        peer = PeerId(b"alice")
        await client.connect_to_peer(peer, PeerAddress(host, port))
        await client.send_message(peer, b"hi")
        print(await server.events.get())   # Connected(..., is_outbound=False)
        print(await server.events.get())   # MessageReceived(..., message=b'hi')

asyncio.run(demo())
```

`NetworkManager` builds on this layer. Calling `start()` starts discovery, opens every `listen_addresses` entry and dials the bootstrap peers. While running, it turns connection events into `NetworkEvent`s on its own `events` queue. `perform_maintenance()` forgets peers that have been disconnected for five minutes or longer.

`P2PClient.connect("host:port")` connects through the manager. A port that cannot be parsed becomes 0. An address with other than one colon raises `NetworkError`.

## Discovery

`DiscoveryService` holds the table of known peers:

- It seeds the table from bootstrap peers on `start()`.
- It records peers added through `add_peer` and through announcements, and merges peer lists from peer responses.
- `get_connectable_peers` returns peers seen in the last five minutes.
- `cleanup_stale_peers` forgets any peer unseen for an hour, except bootstrap peers.

Messages from another `NetworkId` are ignored.

The service does no sending of its own. Pass `send=`, an async callable `(destination, data)`. Here `destination` is `(host, port)`, or `None` for a broadcast. Without this callable, outgoing discovery messages are dropped.

## NAT traversal

`NatTraversalService(local_addr, upnp_enabled, stun_servers=[...])` works as follows:

- `establish_connectivity()` tries, in order: a direct UDP bind, UPnP (if enabled, IPv4 only, via SSDP and SOAP), STUN, and a STUN-based hole-punching check.
- STUN servers must be given as `ip:port`. The default list is empty.
- `coordinate_hole_punch` sends a `punch` datagram and returns the address that answers.

## Updates

```python
from peerlink.updater import Updater

updater = Updater("0.1.0", "https://updates.example.com/manifest.json", public_key,
                  install_path="bin/app")
manifest = await updater.check_for_update()      # UpdateManifest, or None if not newer
if manifest:
    data = await updater.download_update(manifest.download_url)
    if updater.verify_update(data, manifest.signature):   # base64 Ed25519 signature
        await updater.apply_update(data)                  # atomic file replacement
```

`verify_update` raises `InvalidDataError` if the signature is not valid base64.

## Dashboard

```
peerlink-dashboard --address 127.0.0.1:8080
```

The address defaults to `127.0.0.1:8080`. The dashboard serves two routes:

- `/` returns a short HTML heading.
- `/peers` returns a JSON list of peer ids, each written as `hex(public_key):network`.

To serve the dashboard for a running `NetworkManager` of your own, use `create_app(network)` or `DashboardServer(address, network).run()`.

## Errors

Every failure raises a subclass of `peerlink.errors.P2PError`. Examples are `NetworkError`, `CryptoError`, `ConfigError`, `SerializationError`, `PeerNotFoundError`, `PeerTimeoutError` and `InvalidDataError`. Catch `P2PError` to handle all of them in one place.

## What the package does not do

- **No encryption or TLS on connections.** Frames travel over plain TCP, and the handshake is not authenticated.
- **No Tor.** `TorConfig` is only stored; nothing routes traffic through Tor.
- **Most settings are not acted on.** The storage, security and logging sections of `AppConfig` are likewise not used by the other modules.
- **Peer ids are not key-based.** `NetworkManager` identifies peers by ids derived from their addresses (`peer_<address>`, `bootstrap_<address>`), not by their public keys.
- **No transfer protocol.** File chunks and file-transfer messages can be built and encoded, but nothing exchanges them between peers.
- **No discovery transport.** Discovery has no built-in UDP socket; you supply the `send` callable.
- **The dashboard command starts no networking.** `peerlink-dashboard` creates a network manager but does not start it, so its `/peers` list stays empty.