"""Small value types: reputation, bandwidth, file sizes and protocol versions."""

from dataclasses import dataclass, field
from typing import ClassVar

_KIB = 1024
_MIB = 1024 * 1024
_GIB = 1024 * 1024 * 1024

_REPUTATION_MIN = -1000
_REPUTATION_MAX = 1000
_REPUTATION_DEFAULT = 100


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _check_unsigned(value: int, name: str) -> None:
    if value < 0:
        raise ValueError(f"{name} must not be negative")


@dataclass(order=True)
class ReputationScore:
    """Peer reputation, always kept within [MIN, MAX]."""

    MIN: ClassVar[int] = _REPUTATION_MIN
    MAX: ClassVar[int] = _REPUTATION_MAX
    DEFAULT: ClassVar[int] = _REPUTATION_DEFAULT

    value: int = _REPUTATION_DEFAULT

    def __post_init__(self) -> None:
        self.value = _clamp(self.value, self.MIN, self.MAX)

    def adjust(self, delta: int) -> None:
        """Shift the score by ``delta``, clamping to the allowed range."""
        self.value = _clamp(self.value + delta, self.MIN, self.MAX)

    def is_trusted(self) -> bool:
        return self.value >= 50

    def is_banned(self) -> bool:
        return self.value <= -100

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True, order=True)
class Bandwidth:
    """Bandwidth in bytes per second."""

    bytes_per_second: int = 0

    def __post_init__(self) -> None:
        _check_unsigned(self.bytes_per_second, "bandwidth")

    @classmethod
    def kbps(cls, kbps: int) -> "Bandwidth":
        return cls(kbps * _KIB)

    @classmethod
    def mbps(cls, mbps: int) -> "Bandwidth":
        return cls(mbps * _MIB)

    def as_kbps(self) -> float:
        return self.bytes_per_second / _KIB

    def as_mbps(self) -> float:
        return self.bytes_per_second / _MIB

    def __str__(self) -> str:
        if self.bytes_per_second >= _MIB:
            return f"{self.as_mbps():.2f} MB/s"
        if self.bytes_per_second >= _KIB:
            return f"{self.as_kbps():.2f} KB/s"
        return f"{self.bytes_per_second} B/s"


@dataclass(frozen=True, order=True)
class FileSize:
    """A size in bytes."""

    bytes: int = 0

    def __post_init__(self) -> None:
        _check_unsigned(self.bytes, "file size")

    @classmethod
    def kb(cls, kb: int) -> "FileSize":
        return cls(kb * _KIB)

    @classmethod
    def mb(cls, mb: int) -> "FileSize":
        return cls(mb * _MIB)

    @classmethod
    def gb(cls, gb: int) -> "FileSize":
        return cls(gb * _GIB)

    def as_kb(self) -> float:
        return self.bytes / _KIB

    def as_mb(self) -> float:
        return self.bytes / _MIB

    def as_gb(self) -> float:
        return self.bytes / _GIB

    def __str__(self) -> str:
        if self.bytes >= _GIB:
            return f"{self.as_gb():.2f} GB"
        if self.bytes >= _MIB:
            return f"{self.as_mb():.2f} MB"
        if self.bytes >= _KIB:
            return f"{self.as_kb():.2f} KB"
        return f"{self.bytes} B"


@dataclass(frozen=True)
class ProtocolVersion:
    """Semantic protocol version used for compatibility checks."""

    major: int = 1
    minor: int = 0
    patch: int = 0

    def is_compatible(self, other: "ProtocolVersion") -> bool:
        """Same major version and a minor version no newer than ``other``."""
        return self.major == other.major and self.minor <= other.minor

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass
class NetworkStats:
    """Aggregate statistics about the network."""

    total_peers: int = 0
    active_peers: int = 0
    total_bandwidth: Bandwidth = field(default_factory=Bandwidth)
    total_storage: FileSize = field(default_factory=FileSize)
    active_transfers: int = 0
    uptime: int = 0