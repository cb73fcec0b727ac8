import base64

import httpx
import pytest
import respx

from peerlink.errors import (
    ConfigError,
    CryptoError,
    InvalidDataError,
    NetworkError,
    SerializationError,
)
from peerlink.identity import IdentityKeyPair
from peerlink.updater import UpdateManifest, Updater

MANIFEST_URL = "https://updates.example.com/manifest.json"
DOWNLOAD_URL = "https://updates.example.com/release.bin"


def _manifest(version: str) -> dict:
    return {
        "version": version,
        "download_url": DOWNLOAD_URL,
        "signature": "c2ln",
        "changelog": "fixes",
    }


@pytest.fixture
def keypair():
    return IdentityKeyPair.generate()


@pytest.fixture
def updater(keypair):
    return Updater("0.1.0", MANIFEST_URL, keypair.public_key_bytes())


def test_verify(keypair):
    data = b"test"
    signature = keypair.sign(data)
    up = Updater("0.1.0", "http://localhost", keypair.public_key_bytes())
    signature_b64 = base64.b64encode(signature).decode()
    assert up.verify_update(data, signature_b64) is True


def test_verify_rejects_tampered_data(keypair, updater):
    signature_b64 = base64.b64encode(keypair.sign(b"test")).decode()
    assert updater.verify_update(b"tampered", signature_b64) is False


def test_verify_rejects_wrong_length(updater):
    assert updater.verify_update(b"test", base64.b64encode(b"short").decode()) is False


def test_verify_rejects_invalid_base64(updater):
    with pytest.raises(InvalidDataError):
        updater.verify_update(b"test", "not base64!!")


def test_invalid_current_version(keypair):
    with pytest.raises(InvalidDataError):
        Updater("not-a-version", MANIFEST_URL, keypair.public_key_bytes())


def test_invalid_public_key_length():
    with pytest.raises(CryptoError, match="invalid public key length"):
        Updater("0.1.0", MANIFEST_URL, b"\x00" * 31)


@pytest.mark.asyncio
async def test_check_for_update_newer(updater):
    with respx.mock() as router:
        router.get(MANIFEST_URL).respond(200, json=_manifest("0.2.0"))
        result = await updater.check_for_update()
    assert result == UpdateManifest("0.2.0", DOWNLOAD_URL, "c2ln", "fixes")


@pytest.mark.asyncio
async def test_check_for_update_same_or_older(updater):
    with respx.mock() as router:
        route = router.get(MANIFEST_URL)
        route.respond(200, json=_manifest("0.1.0"))
        assert await updater.check_for_update() is None
        route.respond(200, json=_manifest("0.0.9"))
        assert await updater.check_for_update() is None


@pytest.mark.asyncio
async def test_check_for_update_bad_json(updater):
    with respx.mock() as router:
        router.get(MANIFEST_URL).respond(200, text="not json")
        with pytest.raises(SerializationError):
            await updater.check_for_update()


@pytest.mark.asyncio
async def test_check_for_update_missing_field(updater):
    manifest = _manifest("0.2.0")
    del manifest["changelog"]
    with respx.mock() as router:
        router.get(MANIFEST_URL).respond(200, json=manifest)
        with pytest.raises(SerializationError, match="changelog"):
            await updater.check_for_update()


@pytest.mark.asyncio
async def test_check_for_update_bad_version(updater):
    with respx.mock() as router:
        router.get(MANIFEST_URL).respond(200, json=_manifest("latest"))
        with pytest.raises(InvalidDataError):
            await updater.check_for_update()


@pytest.mark.asyncio
async def test_check_for_update_network_failure(updater):
    with respx.mock() as router:
        router.get(MANIFEST_URL).mock(side_effect=httpx.ConnectError("unreachable"))
        with pytest.raises(NetworkError, match="manifest fetch failed"):
            await updater.check_for_update()


@pytest.mark.asyncio
async def test_download_update(updater):
    with respx.mock() as router:
        router.get(DOWNLOAD_URL).respond(200, content=b"binary payload")
        assert await updater.download_update(DOWNLOAD_URL) == b"binary payload"


@pytest.mark.asyncio
async def test_download_update_failure(updater):
    with respx.mock() as router:
        router.get(DOWNLOAD_URL).mock(side_effect=httpx.ConnectError("unreachable"))
        with pytest.raises(NetworkError, match="download failed"):
            await updater.download_update(DOWNLOAD_URL)


@pytest.mark.asyncio
async def test_apply_update_replaces_file(keypair, tmp_path):
    target = tmp_path / "bin" / "app"
    up = Updater("0.1.0", MANIFEST_URL, keypair.public_key_bytes(), install_path=target)
    await up.apply_update(b"first")
    assert target.read_bytes() == b"first"
    await up.apply_update(b"second")
    assert target.read_bytes() == b"second"
    assert [p.name for p in target.parent.iterdir()] == ["app"]


@pytest.mark.asyncio
async def test_apply_update_without_install_path(updater):
    with pytest.raises(ConfigError):
        await updater.apply_update(b"data")