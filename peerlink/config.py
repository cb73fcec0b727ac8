"""Application configuration and its TOML file format."""

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path, PurePath
from typing import Any

import tomli_w

from .core import NetworkConfig
from .errors import ConfigError, IoError, P2PError

_GIB = 1024 * 1024 * 1024
_MIB = 1024 * 1024


def _path_field(default: Path) -> Any:
    return field(default=default, metadata={"path": True})


def _optional_field(default: Any, *, path: bool = False) -> Any:
    return field(default=default, metadata={"optional": True, "path": path})


def _section_to_dict(section: Any) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for f in fields(section):
        value = getattr(section, f.name)
        if value is None:
            continue
        result[f.name] = str(value) if isinstance(value, PurePath) else value
    return result


def _section_from_dict(cls: type, data: Any) -> Any:
    if not isinstance(data, dict):
        raise ConfigError(f"invalid section for {cls.__name__}")
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        value = data.get(f.name)
        if value is not None:
            kwargs[f.name] = Path(value) if f.metadata.get("path") else value
        elif f.metadata.get("optional"):
            kwargs[f.name] = None
        else:
            raise ConfigError(f"missing field `{f.name}`")
    return cls(**kwargs)


@dataclass
class StorageConfig:
    """Where and how long data is stored."""

    data_dir: Path = _path_field(Path("./data"))
    max_storage: int | None = _optional_field(10 * _GIB)
    cleanup_interval: int = 3600
    retention_days: int = 30


@dataclass
class SecurityConfig:
    """Identity key location and authentication policy."""

    key_file: Path = _path_field(Path("./keys/identity.key"))
    cert_file: Path | None = _optional_field(None, path=True)
    require_authentication: bool = True
    max_failed_attempts: int = 5
    session_timeout: int = 3600


@dataclass
class DashboardConfig:
    """Settings of the web dashboard."""

    enabled: bool = True
    bind_address: str = "127.0.0.1"
    port: int = 8080
    admin_password: str | None = _optional_field(None)
    tls_enabled: bool = False


@dataclass
class TorConfig:
    """Settings for routing traffic through Tor."""

    enabled: bool = False
    socks_port: int = 9050
    control_port: int = 9051
    data_dir: Path = _path_field(Path("./tor"))
    hidden_service: bool = False
    bridge_mode: bool = False


@dataclass
class LoggingConfig:
    """Log level and log file rotation."""

    level: str = "info"
    file: Path | None = _optional_field(Path("./logs/p2p.log"), path=True)
    max_size: int = 100 * _MIB
    max_files: int = 10


_SECTIONS: dict[str, type] = {
    "storage": StorageConfig,
    "security": SecurityConfig,
    "dashboard": DashboardConfig,
    "tor": TorConfig,
    "logging": LoggingConfig,
}


@dataclass
class AppConfig:
    """Complete application configuration."""

    network: NetworkConfig = field(default_factory=NetworkConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)
    tor: TorConfig = field(default_factory=TorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"network": self.network.to_dict()}
        for name in _SECTIONS:
            result[name] = _section_to_dict(getattr(self, name))
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppConfig":
        if not isinstance(data, dict):
            raise ConfigError("configuration must be a table")
        if "network" not in data:
            raise ConfigError("missing field `network`")
        kwargs: dict[str, Any] = {"network": NetworkConfig.from_dict(data["network"])}
        for name, section_cls in _SECTIONS.items():
            if name not in data:
                raise ConfigError(f"missing field `{name}`")
            kwargs[name] = _section_from_dict(section_cls, data[name])
        return cls(**kwargs)

    @classmethod
    def load_from_file(cls, path: str | os.PathLike) -> "AppConfig":
        """Read a configuration from a TOML file."""
        try:
            content = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigError(f"Failed to read config file: {exc}") from exc
        try:
            return cls.from_dict(tomllib.loads(content))
        except (tomllib.TOMLDecodeError, P2PError, KeyError, TypeError, ValueError) as exc:
            raise ConfigError(f"Failed to parse config: {exc}") from exc

    def save_to_file(self, path: str | os.PathLike) -> None:
        """Write the configuration as TOML, creating parent directories."""
        try:
            content = tomli_w.dumps(self.to_dict())
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Failed to serialize config: {exc}") from exc
        target = Path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IoError(str(exc)) from exc
        try:
            target.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Failed to write config file: {exc}") from exc

    def validate(self) -> None:
        """Raise ConfigError if the configuration is unusable."""
        if self.network.max_connections == 0:
            raise ConfigError("max_connections must be greater than 0")
        if not Path(self.storage.data_dir).is_absolute():
            raise ConfigError("data_dir must be an absolute path")
        if self.dashboard.enabled and self.dashboard.port == 0:
            raise ConfigError("dashboard port must be specified when enabled")