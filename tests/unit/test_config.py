"""
Unit tests for configuration loading.
"""

import json
import pytest
from pathlib import Path

from master_server.utils.config import (
    ConfigLoader,
    MasterServerConfig,
    RegistryConfig,
    ServerConfig,
    DatabaseConfig,
    LoggingConfig,
    load_config,
)
from master_server.utils.errors import ConfigurationError


class TestConfigModels:

    def test_defaults(self):
        config = MasterServerConfig()

        assert config.server.host == "0.0.0.0"
        assert config.server.port == 8082
        assert config.server.trust_forwarded_for is False
        assert config.registry.liveness_window_seconds == 300
        assert config.registry.dead_entry_threshold_seconds == 86400
        assert config.registry.effective_reap_interval == 86400
        assert config.database.path.is_absolute()

    def test_explicit_reap_interval(self):
        config = RegistryConfig(reap_interval_seconds=600)
        assert config.effective_reap_interval == 600

    def test_fractional_reap_interval_kept(self):
        assert RegistryConfig(reap_interval_seconds=0.5).effective_reap_interval == 0.5

    def test_window_must_not_exceed_threshold(self):
        with pytest.raises(ValueError):
            RegistryConfig(liveness_window_seconds=7200, dead_entry_threshold_seconds=3600)

    @pytest.mark.parametrize("field", [
        "liveness_window_seconds",
        "dead_entry_threshold_seconds",
        "reap_interval_seconds",
    ])
    def test_thresholds_must_be_positive(self, field):
        with pytest.raises(ValueError):
            RegistryConfig(**{field: 0})

    def test_port_zero_allowed_for_ephemeral_binding(self):
        assert ServerConfig(port=0).port == 0

    def test_port_out_of_range(self):
        with pytest.raises(ValueError):
            ServerConfig(port=70000)

    def test_memory_database_path_kept(self):
        assert str(DatabaseConfig(path=":memory:").path) == ":memory:"

    def test_log_level_normalized(self):
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_unknown_log_level(self):
        with pytest.raises(ValueError):
            LoggingConfig(level="chatty")


class TestConfigLoader:

    def test_yaml_source(self, temp_dir: Path):
        path = temp_dir / "config.yaml"
        path.write_text(
            "server:\n"
            "  port: 9000\n"
            "registry:\n"
            "  liveness_window_seconds: 120\n"
        )
        loader = ConfigLoader(env={})
        loader.add_source(path, priority=10)

        config = loader.load()

        assert config.server.port == 9000
        assert config.registry.liveness_window_seconds == 120
        assert loader.get_config() is config

    def test_json_source(self, temp_dir: Path):
        path = temp_dir / "config.json"
        path.write_text(json.dumps({"server": {"trust_forwarded_for": True}}))
        loader = ConfigLoader(env={})
        loader.add_source(path)

        assert loader.load().server.trust_forwarded_for is True

    def test_toml_source(self, temp_dir: Path):
        path = temp_dir / "config.toml"
        path.write_text('[logging]\nlevel = "WARNING"\nformat = "json"\n')
        loader = ConfigLoader(env={})
        loader.add_source(path)

        config = loader.load()
        assert config.logging.level == "WARNING"
        assert config.logging.format == "json"

    def test_env_overrides_files(self, temp_dir: Path):
        path = temp_dir / "config.yaml"
        path.write_text("server:\n  port: 9000\n  host: 127.0.0.1\n")
        loader = ConfigLoader(env={
            "MASTER_SERVER_SERVER__PORT": "9100",
            "MASTER_SERVER_REGISTRY__LIVENESS_WINDOW_SECONDS": "60.5",
            "MASTER_SERVER_DEBUG": "true",
            "UNRELATED": "ignored",
        })
        loader.add_source(path, priority=10)

        config = loader.load()

        assert config.server.port == 9100
        assert config.server.host == "127.0.0.1"
        assert config.registry.liveness_window_seconds == 60.5
        assert config.debug is True

    def test_dict_overrides_env(self):
        loader = ConfigLoader(env={"MASTER_SERVER_SERVER__PORT": "9100"})
        loader.add_source({"server": {"port": 9200}}, priority=100)

        assert loader.load().server.port == 9200

    def test_env_string_values(self):
        loader = ConfigLoader(env={"MASTER_SERVER_SERVER__HOST": "0.0.0.0"})
        assert loader.load().server.host == "0.0.0.0"

    def test_validation_failure(self):
        loader = ConfigLoader(env={})
        loader.add_source({"registry": {
            "liveness_window_seconds": 90000,
            "dead_entry_threshold_seconds": 86400,
        }})

        with pytest.raises(ConfigurationError) as exc_info:
            loader.load()
        assert "Configuration validation failed" in str(exc_info.value)

    def test_unparseable_file(self, temp_dir: Path):
        path = temp_dir / "broken.json"
        path.write_text("{not json")
        loader = ConfigLoader(env={})
        loader.add_source(path)

        with pytest.raises(ConfigurationError):
            loader.load()

    def test_unknown_file_type(self, temp_dir: Path):
        loader = ConfigLoader(env={})
        with pytest.raises(ConfigurationError):
            loader.add_source(temp_dir / "config.ini")

    def test_get_config_before_load(self):
        with pytest.raises(ConfigurationError):
            ConfigLoader(env={}).get_config()


class TestLoadConfig:

    def test_explicit_path_and_overrides(self, temp_dir: Path):
        path = temp_dir / "master.yaml"
        path.write_text("server:\n  port: 9000\n")

        config = load_config(
            config_paths=[path],
            extra_config={"database": {"path": str(temp_dir / "registry.db")}},
            env={},
        )

        assert config.server.port == 9000
        assert config.database.path == temp_dir / "registry.db"

    def test_missing_explicit_path(self, temp_dir: Path):
        with pytest.raises(ConfigurationError):
            load_config(config_paths=[temp_dir / "missing.yaml"], env={})
