"""
RDO Configuration System

Configuration sources (in order of precedence):
    1. Environment variables (RDO_*)
    2. Runtime overrides (ConfigManager.set)
    3. Config files (./rdo.yaml, ./config/rdo.yaml, ~/.rdo/config.yaml)
    4. Default values
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from rdo.observability import Layer, RDOLogger

log = RDOLogger("config", Layer.CONFIG)

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding and validation.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    secret: bool = False  # redacted by to_dict(redact=True)
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value}")
        self._value = value

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        target_type = type(self.default)
        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        return value  # type: ignore


@dataclass
class RegistryConfig:
    """Configuration for the local registry state."""
    state_dir: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default=".rdo",
        env_var="RDO_STATE_DIR",
        description="Directory holding the registry snapshot and file content store",
        validator=lambda x: bool(x),
    ))
    snapshot_file: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="registry.json",
        env_var="RDO_SNAPSHOT_FILE",
        description="Registry snapshot file name inside state_dir",
        validator=lambda x: bool(x) and "/" not in x,
    ))


@dataclass
class StorageConfig:
    """Configuration for the content store."""
    backend: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="file",
        env_var="RDO_STORAGE_BACKEND",
        description="Content store backend (memory, file, pinata)",
        validator=lambda x: x in ("memory", "file", "pinata"),
    ))
    pinata_jwt: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="RDO_PINATA_JWT",
        description="Pinata API JWT",
        secret=True,
    ))
    gateway_url: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="https://gateway.pinata.cloud/ipfs/",
        env_var="RDO_GATEWAY_URL",
        description="IPFS gateway used for content fetches",
        validator=lambda x: x.startswith(("http://", "https://")),
    ))
    timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="RDO_STORAGE_TIMEOUT",
        description="Network timeout for remote content stores",
        validator=lambda x: x > 0,
    ))


@dataclass
class ProtocolConfig:
    """Configuration for the client orchestrator."""
    origin: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="https://rdo.app/rdo",
        env_var="RDO_ORIGIN",
        description="Origin used when building capability links",
        validator=lambda x: x.startswith(("http://", "https://")),
    ))
    default_image: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="ipfs://bafkreidmvnotre7527r4jjk3v3i5h3qaqy2q2f22cbe62g3aa22a4z3w7u",
        env_var="RDO_DEFAULT_IMAGE",
        description="Placeholder image written into metadata documents",
    ))
    retry_max_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="RDO_RETRY_MAX_ATTEMPTS",
        description="Maximum content store attempts per operation",
        validator=lambda x: x >= 1,
    ))
    retry_base_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.5,
        env_var="RDO_RETRY_BASE_DELAY",
        description="Base delay for exponential backoff",
        validator=lambda x: x >= 0,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for logging."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="warning",
        env_var="RDO_LOG_LEVEL",
        description="Log level (debug, info, warning, error, critical)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="RDO_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class RDOConfig:
    """Root configuration."""
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                value = obj.get()
                if redact and obj.secret and value:
                    return "***"
                return value
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=True)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._config = RDOConfig()
        self._config_paths: List[Path] = []
        self._initialized = True

    @property
    def config(self) -> RDOConfig:
        return self._config

    def reset(self) -> None:
        """Drop all overrides and loaded files."""
        self._config = RDOConfig()
        self._config_paths = []

    def load_from_file(self, path: Union[str, Path]) -> None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration root must be a mapping: {path}")
            self._apply_dict(data)
        self._config_paths.append(path)
        log.debug("Loaded configuration", operation="load", path=str(path))

    def load_defaults(self) -> List[Path]:
        """Load default configuration files if they exist; return the ones loaded."""
        loaded: List[Path] = []
        for path in (
            Path.home() / ".rdo" / "config.yaml",
            Path("config/rdo.yaml"),
            Path("rdo.yaml"),
        ):
            if path.exists():
                self.load_from_file(path)
                loaded.append(path)
        return loaded

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {prefix}{key}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{prefix}{key}.")
                else:
                    raise ConfigError(f"Invalid config section: {prefix}{key}")

        apply_to_config(self._config, data, "")

    def _resolve(self, path: str) -> ConfigValue:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        if not isinstance(obj, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        return obj

    def set(self, path: str, value: Any) -> None:
        """Set a configuration value by dotted path, e.g. ``storage.backend``."""
        self._resolve(path).set(value)

    def get(self, path: str) -> Any:
        """Get a configuration value by dotted path."""
        return self._resolve(path).get()

    def validate(self) -> List[str]:
        """Validate all configuration values. Returns list of errors."""
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except (TypeError, ValueError) as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors


def get_config() -> RDOConfig:
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    return ConfigManager()


__all__ = [
    "ConfigError",
    "ConfigValidationError",
    "ConfigValue",
    "RegistryConfig",
    "StorageConfig",
    "ProtocolConfig",
    "ObservabilityConfig",
    "RDOConfig",
    "ConfigManager",
    "get_config",
    "get_config_manager",
]
