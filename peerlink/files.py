"""Reading shared files: metadata, hashes and fixed-size chunks."""

import hashlib
import os
from datetime import datetime, timezone
from pathlib import Path

from .core import FileChunk, FileInfo, TransferId
from .errors import IoError

_READ_BLOCK = 8192


def _timestamp(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class FileManager:
    """Reads files below a base directory for sharing."""

    def __init__(self, base_dir: str | os.PathLike) -> None:
        self.base_dir = Path(base_dir)

    def file_info(self, path: str | os.PathLike) -> FileInfo:
        """Size, SHA-256 hash and timestamps of a file."""
        relative = Path(path)
        full = self.base_dir / relative
        try:
            stat = full.stat()
            digest = hashlib.sha256()
            with full.open("rb") as handle:
                for block in iter(lambda: handle.read(_READ_BLOCK), b""):
                    digest.update(block)
        except OSError as exc:
            raise IoError(str(exc)) from exc
        birth = getattr(stat, "st_birthtime", None)
        return FileInfo(
            name=str(relative),
            size=stat.st_size,
            hash=digest.digest(),
            mime_type=None,
            created=_timestamp(birth) if birth is not None else None,
            modified=_timestamp(stat.st_mtime),
        )

    def read_chunks(self, path: str | os.PathLike, chunk_size: int) -> list[FileChunk]:
        """Split a file into checksummed chunks of at most ``chunk_size`` bytes."""
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        info = self.file_info(path)
        total_chunks = -(-info.size // chunk_size)
        chunks: list[FileChunk] = []
        try:
            with (self.base_dir / Path(path)).open("rb") as handle:
                for index in range(total_chunks):
                    data = handle.read(chunk_size)
                    chunks.append(
                        FileChunk(
                            transfer_id=TransferId(),
                            chunk_index=index,
                            data=data,
                            checksum=hashlib.sha256(data).digest(),
                        )
                    )
        except OSError as exc:
            raise IoError(str(exc)) from exc
        return chunks