"""Error hierarchy shared by every part of the peer-to-peer stack."""


class P2PError(Exception):
    """Base class for all errors raised by the package."""

    prefix = "P2P error"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail)
        self.detail = detail

    def __str__(self) -> str:
        return f"{self.prefix}: {self.detail}"


class NetworkError(P2PError):
    """A network operation failed."""

    prefix = "Network error"


class CryptoError(P2PError):
    """A cryptographic operation failed or received bad key material."""

    prefix = "Cryptographic error"


class SerializationError(P2PError):
    """Data could not be encoded or decoded."""

    prefix = "Serialization error"


class ConfigError(P2PError):
    """Configuration could not be read, written or validated."""

    prefix = "Configuration error"


class FileSystemError(P2PError):
    """A file system operation failed."""

    prefix = "File system error"


class TlsError(P2PError):
    """A TLS operation failed."""

    prefix = "TLS error"


class IoError(P2PError):
    """An input/output operation failed."""

    prefix = "I/O error"


class AuthenticationError(P2PError):
    """A peer or user could not be authenticated."""

    prefix = "Authentication failed"


class AuthorizationError(P2PError):
    """An operation was not permitted."""

    prefix = "Authorization failed"


class PeerNotFoundError(P2PError):
    """The requested peer is unknown or not connected."""

    prefix = "Peer not found"


class TransferError(P2PError):
    """A file transfer failed."""

    prefix = "Transfer error"


class PeerTimeoutError(P2PError):
    """An operation did not complete in time."""

    prefix = "Timeout error"


class InvalidDataError(P2PError):
    """Received data was malformed or out of range."""

    prefix = "Invalid data"


class InternalError(P2PError):
    """An unexpected internal failure."""

    prefix = "Internal error"