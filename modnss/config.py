"""
Configuration for update-mod-nss.

Configuration Sources (in order of precedence):
    1. Environment variables (MODNSS_*)
    2. Runtime overrides (ConfigManager.set, command line options)
    3. Config file (--config, or /etc/update-mod-nss.yaml if present)
    4. Default values

The core swap never reads configuration itself; the command line resolves
it into directory handles, an identity and a DatabaseFormat.

Copyright (c) 2024 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

T = TypeVar("T")

DEFAULT_CONFIG_PATH = Path("/etc/update-mod-nss.yaml")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ValidationError(ConfigError):
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
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ValidationError(f"Invalid value for config: {value!r}")
        self._value = value

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        else:
            return value  # type: ignore


def _bare_name(value: str) -> bool:
    return bool(value) and "/" not in value and value not in (".", "..")


@dataclass
class PathsConfig:
    """Filesystem layout."""
    conf_dir: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="/etc/httpd",
        env_var="MODNSS_CONF_DIR",
        description="Directory holding the alias symlink and generations",
        validator=os.path.isabs,
    ))
    state_dir: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="/var/lib/acme",
        env_var="MODNSS_STATE_DIR",
        description="Directory holding <hostname>.crt files",
        validator=os.path.isabs,
    ))
    alias_name: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="alias",
        env_var="MODNSS_ALIAS_NAME",
        description="Name of the alias symlink inside conf_dir",
        validator=_bare_name,
    ))
    temp_link_name: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="alias.new",
        env_var="MODNSS_TEMP_LINK_NAME",
        description="Temporary symlink renamed onto the alias",
        validator=_bare_name,
    ))
    generation_prefix: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="alias-",
        env_var="MODNSS_GENERATION_PREFIX",
        description="Prefix of timestamped generation directories",
        validator=_bare_name,
    ))


@dataclass
class DatabaseConfig:
    """Certificate database settings."""
    format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="dbm",
        env_var="MODNSS_DB_FORMAT",
        description="NSS database format (dbm or sql)",
        validator=lambda x: x in ("dbm", "sql"),
    ))
    certutil: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="certutil",
        env_var="MODNSS_CERTUTIL",
        description="certutil executable",
        validator=bool,
    ))
    modutil: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="modutil",
        env_var="MODNSS_MODUTIL",
        description="modutil executable",
        validator=bool,
    ))
    trust_flags: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default=",,",
        env_var="MODNSS_TRUST_FLAGS",
        description="certutil trust arguments for the inserted certificate",
        validator=lambda x: x.count(",") == 2,
    ))


@dataclass
class ObservabilityConfig:
    """Logging settings."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="notice",
        env_var="MODNSS_LOG_LEVEL",
        description="Log level (debug, info, notice, warning, error)",
        validator=lambda x: x in ("debug", "info", "notice", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="text",
        env_var="MODNSS_LOG_FORMAT",
        description="Log format for stderr (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))
    syslog_address: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="/dev/log",
        env_var="MODNSS_SYSLOG_ADDRESS",
        description="Unix socket of the system logger",
    ))


@dataclass
class SwapConfig:
    """Root configuration, aggregating all sections."""
    paths: PathsConfig = field(default_factory=PathsConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        return yaml.dump(self.to_dict(), default_flow_style=False)


class ConfigManager:
    """Configuration manager with file loading and environment binding."""

    def __init__(self, config: Optional[SwapConfig] = None):
        self._config = config or SwapConfig()
        self._config_paths: List[Path] = []

    @property
    def config(self) -> SwapConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid configuration file: {path}: {e}") from e

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file must contain a mapping: {path}")

        self._apply_dict(data)
        self._config_paths.append(path)

    def load_defaults(self) -> None:
        """Load the system config file if it exists."""
        if DEFAULT_CONFIG_PATH.exists():
            self.load_from_file(DEFAULT_CONFIG_PATH)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown configuration key: {prefix}{key}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{prefix}{key}.")
                else:
                    raise ConfigError(f"Invalid configuration section: {prefix}{key}")

        apply_to_config(self._config, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: manager.set("paths.conf_dir", "/etc/httpd")
        """
        parts = path.split(".")
        obj: Any = self._config

        try:
            for part in parts[:-1]:
                obj = getattr(obj, part)
            attr = getattr(obj, parts[-1])
        except AttributeError:
            raise ConfigError(f"Invalid config path: {path}") from None

        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: manager.get("database.format")
        """
        obj: Any = self._config
        try:
            for part in path.split("."):
                obj = getattr(obj, part)
        except AttributeError:
            raise ConfigError(f"Invalid config path: {path}") from None

        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def validate(self) -> List[str]:
        """Validate all values, including environment overrides.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value!r}")
                except Exception as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors
