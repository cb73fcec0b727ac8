import tomllib
from pathlib import Path

import pytest

from peerlink.config import (
    AppConfig,
    DashboardConfig,
    LoggingConfig,
    SecurityConfig,
    StorageConfig,
    TorConfig,
)
from peerlink.core import AddressType, NetworkConfig, NetworkId, PeerAddress
from peerlink.errors import ConfigError


def _valid_config(tmp_path: Path) -> AppConfig:
    config = AppConfig()
    config.storage.data_dir = tmp_path / "data"
    return config


def test_section_defaults():
    config = AppConfig()
    assert config.storage.data_dir == Path("./data")
    assert config.storage.max_storage == 10 * 1024 * 1024 * 1024
    assert config.storage.cleanup_interval == 3600
    assert config.security.key_file == Path("./keys/identity.key")
    assert config.security.cert_file is None
    assert config.security.max_failed_attempts == 5
    assert config.dashboard.bind_address == "127.0.0.1"
    assert config.dashboard.port == 8080
    assert config.tor.socks_port == 9050
    assert config.tor.control_port == 9051
    assert config.tor.data_dir == Path("./tor")
    assert config.logging.level == "info"
    assert config.logging.file == Path("./logs/p2p.log")
    assert config.logging.max_size == 100 * 1024 * 1024


def test_save_and_load_round_trip(tmp_path):
    config = _valid_config(tmp_path)
    config.network = NetworkConfig(
        network_id=NetworkId("testnet"),
        bootstrap_peers=[PeerAddress("192.0.2.1", 4000, AddressType.IPV4)],
    )
    config.dashboard = DashboardConfig(port=9000, tls_enabled=True)
    path = tmp_path / "config.toml"
    config.save_to_file(path)
    loaded = AppConfig.load_from_file(path)
    assert loaded == config


def test_save_creates_parent_directories(tmp_path):
    path = tmp_path / "nested" / "deeper" / "config.toml"
    AppConfig().save_to_file(path)
    parsed = tomllib.loads(path.read_text(encoding="utf-8"))
    assert set(parsed) == {"network", "storage", "security", "dashboard", "tor", "logging"}


def test_none_values_are_omitted_and_restored(tmp_path):
    config = AppConfig(logging=LoggingConfig(file=None), storage=StorageConfig(max_storage=None))
    data = config.to_dict()
    assert "file" not in data["logging"]
    assert "max_storage" not in data["storage"]
    assert "cert_file" not in data["security"]
    path = tmp_path / "config.toml"
    config.save_to_file(path)
    loaded = AppConfig.load_from_file(path)
    assert loaded.logging.file is None
    assert loaded.storage.max_storage is None
    assert loaded.security.cert_file is None


def test_paths_serialize_as_strings():
    data = AppConfig(security=SecurityConfig(cert_file=Path("certs/node.pem"))).to_dict()
    assert data["security"]["cert_file"] == str(Path("certs/node.pem"))
    assert AppConfig.from_dict(data).security.cert_file == Path("certs/node.pem")


def test_load_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="Failed to read config file"):
        AppConfig.load_from_file(tmp_path / "absent.toml")


def test_load_invalid_toml(tmp_path):
    path = tmp_path / "broken.toml"
    path.write_text("this is = = not toml", encoding="utf-8")
    with pytest.raises(ConfigError, match="Failed to parse config"):
        AppConfig.load_from_file(path)


def test_load_missing_section(tmp_path):
    data = AppConfig().to_dict()
    del data["tor"]
    path = tmp_path / "partial.toml"
    import tomli_w

    path.write_text(tomli_w.dumps(data), encoding="utf-8")
    with pytest.raises(ConfigError, match="Failed to parse config"):
        AppConfig.load_from_file(path)


def test_from_dict_missing_field():
    data = AppConfig().to_dict()
    del data["dashboard"]["port"]
    with pytest.raises(ConfigError, match="port"):
        AppConfig.from_dict(data)


def test_default_config_fails_on_relative_data_dir():
    with pytest.raises(ConfigError, match="data_dir must be an absolute path"):
        AppConfig().validate()


def test_validate_accepts_absolute_data_dir(tmp_path):
    assert _valid_config(tmp_path).validate() is None


def test_validate_rejects_zero_connections(tmp_path):
    config = _valid_config(tmp_path)
    config.network.max_connections = 0
    with pytest.raises(ConfigError, match="max_connections"):
        config.validate()


def test_validate_dashboard_port(tmp_path):
    config = _valid_config(tmp_path)
    config.dashboard.port = 0
    with pytest.raises(ConfigError, match="dashboard port"):
        config.validate()
    config.dashboard.enabled = False
    assert config.validate() is None


def test_tor_section_round_trip():
    config = AppConfig(tor=TorConfig(enabled=True, hidden_service=True))
    restored = AppConfig.from_dict(config.to_dict())
    assert restored.tor == config.tor