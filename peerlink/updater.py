"""Checking for, downloading, verifying and installing software updates."""

import asyncio
import base64
import contextlib
import os
import tempfile
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
import semver
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from .errors import (
    ConfigError,
    CryptoError,
    InvalidDataError,
    IoError,
    NetworkError,
    SerializationError,
)

_KEY_LENGTH = 32
_SIGNATURE_LENGTH = 64


@dataclass(frozen=True)
class UpdateManifest:
    """Description of an available release."""

    version: str
    download_url: str
    signature: str
    changelog: str


def _manifest_from_json(data: Any) -> UpdateManifest:
    if not isinstance(data, dict):
        raise SerializationError("manifest decode failed: expected an object")
    values = {}
    for name in ("version", "download_url", "signature", "changelog"):
        if name not in data:
            raise SerializationError(f"manifest decode failed: missing field `{name}`")
        if not isinstance(data[name], str):
            raise SerializationError(f"manifest decode failed: `{name}` must be a string")
        values[name] = data[name]
    return UpdateManifest(**values)


def _parse_version(text: str, context: str) -> semver.Version:
    try:
        return semver.Version.parse(text)
    except (ValueError, TypeError) as exc:
        raise InvalidDataError(f"{context}: {exc}") from exc


def _replace_file(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    mode = target.stat().st_mode & 0o7777 if target.exists() else None
    fd, temp_name = tempfile.mkstemp(
        dir=target.parent, prefix=f".{target.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        if mode is not None:
            os.chmod(temp_name, mode)
        os.replace(temp_name, target)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(temp_name)
        raise


class Updater:
    """Fetches release manifests and verifies signed update payloads."""

    def __init__(
        self,
        current_version: str,
        manifest_url: str,
        public_key: bytes,
        *,
        install_path: str | os.PathLike | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.current_version = _parse_version(current_version, "invalid version")
        self.manifest_url = manifest_url
        key_bytes = bytes(public_key)
        if len(key_bytes) != _KEY_LENGTH:
            raise CryptoError("invalid public key length")
        try:
            self._verifying_key = Ed25519PublicKey.from_public_bytes(key_bytes)
        except ValueError as exc:
            raise CryptoError(f"invalid public key: {exc}") from exc
        self.install_path = Path(install_path) if install_path is not None else None
        self._client = client

    @contextlib.asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(follow_redirects=True) as client:
                yield client

    async def check_for_update(self) -> UpdateManifest | None:
        """Return the manifest if it announces a newer version, else None."""
        async with self._session() as client:
            try:
                response = await client.get(self.manifest_url)
            except httpx.HTTPError as exc:
                raise NetworkError(f"manifest fetch failed: {exc}") from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise SerializationError(f"manifest decode failed: {exc}") from exc
        manifest = _manifest_from_json(payload)
        new_version = _parse_version(manifest.version, "invalid version in manifest")
        return manifest if new_version > self.current_version else None

    async def download_update(self, url: str) -> bytes:
        """Fetch the update payload from ``url``."""
        async with self._session() as client:
            try:
                response = await client.get(url)
            except httpx.HTTPError as exc:
                raise NetworkError(f"download failed: {exc}") from exc
        return response.content

    def verify_update(self, data: bytes, signature_b64: str) -> bool:
        """Check a base64 Ed25519 signature over ``data``."""
        try:
            signature = base64.b64decode(signature_b64, validate=True)
        except ValueError as exc:
            raise InvalidDataError(f"invalid signature: {exc}") from exc
        if len(signature) != _SIGNATURE_LENGTH:
            return False
        try:
            self._verifying_key.verify(signature, bytes(data))
        except InvalidSignature:
            return False
        return True

    async def apply_update(self, data: bytes) -> None:
        """Atomically replace the installed file with ``data``."""
        if self.install_path is None:
            raise ConfigError("no install path configured for updates")
        try:
            await asyncio.to_thread(_replace_file, self.install_path, bytes(data))
        except OSError as exc:
            raise IoError(str(exc)) from exc