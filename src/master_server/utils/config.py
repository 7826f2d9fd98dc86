"""
Configuration loader for the master server.

This module provides configuration management with:
- Multiple configuration sources (files, dicts, env vars)
- Schema validation through pydantic
- Configuration merging by priority
"""

import os
import json
from pathlib import Path
from typing import Optional, Dict, Any, List, Union

import toml
import yaml
from pydantic import BaseModel, Field, field_validator, model_validator, ValidationError, ConfigDict

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("master-server.config")

ENV_PREFIX = "MASTER_SERVER_"
ENV_NESTING = "__"
ENV_PRIORITY = 50

DEFAULT_CONFIG_PATHS = (
    Path("/etc/master-server/config.yaml"),
    Path.home() / ".master-server" / "config.yaml",
    Path("./master-server.yaml"),
)


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"

    model_config = ConfigDict(arbitrary_types_allowed=True)


class ServerConfig(BaseModel):
    """HTTP listener configuration."""
    host: str = "0.0.0.0"
    port: int = 8082
    # When true the first X-Forwarded-For hop is the caller address
    trust_forwarded_for: bool = False
    cors_allow_origin: str = "*"
    static_dir: Optional[Path] = None

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Allow 0 so tests can bind an ephemeral port."""
        if not 0 <= v <= 65535:
            raise ValueError(f"Invalid port: {v}")
        return v


class DatabaseConfig(BaseModel):
    """Registry store configuration."""
    path: Path = Field(default_factory=lambda: Path.home() / ".master-server" / "registry.db")
    timeout: float = 30.0
    operation_timeout: float = 10.0
    journal_mode: str = "WAL"
    synchronous: str = "NORMAL"

    @field_validator('path')
    @classmethod
    def validate_path(cls, v):
        """Ensure path is absolute, keeping the in-memory sentinel."""
        if str(v) == ":memory:":
            return v
        return v.expanduser().absolute()

    @field_validator('operation_timeout', 'timeout')
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v


class RegistryConfig(BaseModel):
    """Liveness and reaping thresholds."""
    liveness_window_seconds: float = 300.0
    dead_entry_threshold_seconds: float = 86400.0
    reap_interval_seconds: Optional[float] = None
    reap_on_start: bool = True

    @model_validator(mode='after')
    def check_thresholds(self):
        if self.liveness_window_seconds <= 0:
            raise ValueError("liveness_window_seconds must be positive")
        if self.dead_entry_threshold_seconds <= 0:
            raise ValueError("dead_entry_threshold_seconds must be positive")
        if self.liveness_window_seconds > self.dead_entry_threshold_seconds:
            raise ValueError(
                "liveness_window_seconds must not exceed dead_entry_threshold_seconds"
            )
        if self.reap_interval_seconds is not None and self.reap_interval_seconds <= 0:
            raise ValueError("reap_interval_seconds must be positive")
        return self

    @property
    def effective_reap_interval(self) -> float:
        """Reap period; defaults to the dead-entry threshold."""
        if self.reap_interval_seconds is None:
            return self.dead_entry_threshold_seconds
        return self.reap_interval_seconds


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "console"
    directory: Optional[Path] = None
    max_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    enable_sentry: bool = False
    sentry_dsn: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator('format')
    @classmethod
    def validate_format(cls, v):
        if v not in ("console", "json"):
            raise ValueError(f"Invalid log format: {v}")
        return v


class MasterServerConfig(BaseModel):
    """Main master server configuration."""
    app_name: str = "master-server"
    debug: bool = False

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=True
    )


SOURCE_TYPES = {
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
}

_TRUE_WORDS = ("true", "yes", "on")
_FALSE_WORDS = ("false", "no", "off")


def _merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively overlay one settings tree on another."""
    merged = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _merge(current, value)
        else:
            merged[key] = value
    return merged


class ConfigLoader:
    """Merges config files, dicts and MASTER_SERVER_* variables by priority."""

    def __init__(self, env: Optional[Dict[str, str]] = None):
        """
        Args:
            env: Environment mapping to read overrides from (defaults to os.environ)
        """
        self._sources: List[ConfigSource] = []
        self._config: Optional[MasterServerConfig] = None
        self._env = env

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Register a settings file or an in-memory dict.

        Args:
            source: Path to a .json, .yaml/.yml or .toml file, or a dict
            priority: Higher priorities override lower ones
            source_type: Parser name; inferred from the suffix when omitted
        """
        if isinstance(source, dict):
            entry = ConfigSource(data=source, priority=priority)
        else:
            path = Path(source)
            entry = ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type or self._detect_source_type(path)
            )

        self._sources.append(entry)
        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        try:
            return SOURCE_TYPES[path.suffix.lower()]
        except KeyError:
            raise ConfigurationError(f"Unknown config file type: {path.suffix or path.name}") from None

    def load(self) -> MasterServerConfig:
        """
        Build the configuration.

        Sources apply from lowest to highest priority. Environment variables
        slot in at ENV_PRIORITY, above files and below explicit overrides.
        """
        layers = [(source.priority, self._read_source(source)) for source in self._sources]
        layers.append((ENV_PRIORITY, self._read_env()))
        layers.sort(key=lambda layer: layer[0])

        settings: Dict[str, Any] = {}
        for _, data in layers:
            settings = _merge(settings, data)

        try:
            self._config = MasterServerConfig(**settings)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in e.errors()
            )
            raise ConfigurationError(f"Configuration validation failed: {problems}") from e

        logger.info("configuration_loaded", sources=len(self._sources))
        return self._config

    def _read_source(self, source: ConfigSource) -> Dict[str, Any]:
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        parsers = {
            "json": json.loads,
            "yaml": yaml.safe_load,
            "toml": toml.loads,
        }
        parser = parsers.get(source.source_type)
        if parser is None:
            raise ConfigurationError(f"Unknown source type: {source.source_type}")

        try:
            data = parser(source.path.read_text())
        except (ValueError, yaml.YAMLError, toml.TomlDecodeError) as e:
            raise ConfigurationError(f"Failed to parse {source.path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{source.path} must contain a mapping at the top level")
        return data

    def _read_env(self) -> Dict[str, Any]:
        """MASTER_SERVER_SECTION__KEY=value becomes {"section": {"key": value}}."""
        environ = os.environ if self._env is None else self._env
        tree: Dict[str, Any] = {}

        for key, raw in environ.items():
            if not key.startswith(ENV_PREFIX):
                continue

            *sections, leaf = key[len(ENV_PREFIX):].lower().split(ENV_NESTING)
            node = tree
            for section in sections:
                node = node.setdefault(section, {})
            node[leaf] = self._convert_value(raw)

        return tree

    def _convert_value(self, value: str) -> Any:
        """Read env strings as bool, int or float when they look like one."""
        lowered = value.strip().lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False

        for cast in (int, float):
            try:
                return cast(value)
            except ValueError:
                continue
        return value

    def get_config(self) -> MasterServerConfig:
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config


def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None,
    env: Optional[Dict[str, str]] = None,
) -> MasterServerConfig:
    """
    Load configuration from the standard locations plus anything given.

    Args:
        config_paths: Explicit files; each must exist
        extra_config: Highest priority overrides (e.g. CLI flags)
        env: Environment mapping (defaults to os.environ)
    """
    loader = ConfigLoader(env=env)

    for path in DEFAULT_CONFIG_PATHS:
        if path.exists():
            loader.add_source(path, priority=10)

    for offset, path in enumerate(config_paths or []):
        if not Path(path).exists():
            raise ConfigurationError(f"Config file not found: {path}")
        loader.add_source(path, priority=20 + offset)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return loader.load()


__all__ = [
    'MasterServerConfig',
    'ServerConfig',
    'DatabaseConfig',
    'RegistryConfig',
    'LoggingConfig',
    'ConfigLoader',
    'load_config',
    'ENV_PREFIX',
    'DEFAULT_CONFIG_PATHS',
]
