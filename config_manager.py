#!/usr/bin/env python3
"""
Configuration Management System for the Hawa UDP Proxy
Handles YAML configuration loading, validation, and environment-specific overrides
"""

import os
import yaml
from copy import deepcopy
from dataclasses import dataclass, field, fields, is_dataclass
from typing import Dict, Any, Optional, Union, get_args, get_origin

from safe_logger import get_safe_logger

logger = get_safe_logger(__name__)

ENV_PREFIX = 'HAWA_PROXY_'


@dataclass
class ListenConfig:
    """Public (client-facing) socket"""
    host: str = "0.0.0.0"
    port: int = 8800


@dataclass
class BackendConfig:
    """Fixed backend every datagram is relayed to"""
    host: str = "192.168.32.195"
    port: int = 8000


@dataclass
class RelayConfig:
    """Relay engine tuning"""
    idle_timeout: Optional[float] = None  # None keeps connections for the process lifetime
    sweep_interval: float = 30.0
    stats_interval: float = 0  # 0 disables periodic stats logging


@dataclass
class FileLoggingConfig:
    """File logging configuration"""
    enabled: bool = False
    path: str = "/var/log/hawa_udp_proxy.log"
    max_size: str = "10MB"
    rotate_count: int = 5


@dataclass
class ConsoleLoggingConfig:
    """Console logging configuration"""
    enabled: bool = True


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    verbosity: int = 1
    format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    file: FileLoggingConfig = field(default_factory=FileLoggingConfig)
    console: ConsoleLoggingConfig = field(default_factory=ConsoleLoggingConfig)


@dataclass
class ServiceConfig:
    """System service registration"""
    name: str = "hawa_udp_proxy"
    display_name: str = "Hawa UDP Proxy"
    description: str = "UDP to UDP Proxy Service."
    restart: str = "on-success"
    success_exit_status: str = "1 2 8 SIGKILL"
    unit_dir: str = "/etc/systemd/system"
    user: Optional[str] = None


@dataclass
class Config:
    """Main configuration class"""
    listen: ListenConfig = field(default_factory=ListenConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)


class ConfigurationError(Exception):
    """Configuration-related error"""
    pass


class ConfigManager:
    """Configuration manager with validation and environment support"""

    # Environment variable -> (config path, converter)
    ENV_MAPPINGS = {
        'LISTEN_HOST': (['listen', 'host'], str),
        'LISTEN_PORT': (['listen', 'port'], int),
        'BACKEND_HOST': (['backend', 'host'], str),
        'BACKEND_PORT': (['backend', 'port'], int),
        'IDLE_TIMEOUT': (['relay', 'idle_timeout'], float),
        'VERBOSITY': (['logging', 'verbosity'], int),
        'LOG_LEVEL': (['logging', 'level'], str),
        'LOG_FILE': (['logging', 'file', 'path'], str),
    }

    def __init__(self):
        self.config: Optional[Config] = None
        self._config_file: Optional[str] = None

    def load_config(self, config_file: Optional[str] = None,
                    environment: Optional[str] = None) -> Config:
        """
        Load configuration with environment-specific overrides

        Args:
            config_file: Path to YAML config file; defaults apply when None
            environment: Environment name for overrides (dev/prod/test)

        Returns:
            Loaded and validated configuration
        """
        self._config_file = config_file
        config_dict: Dict[str, Any] = {}

        if config_file is not None:
            config_dict = self._load_yaml_file(config_file)

            if environment:
                env_config = self._load_environment_config(config_file, environment)
                if env_config:
                    config_dict = self._merge_configs(config_dict, env_config)

        config_dict = self._apply_env_overrides(config_dict)
        self.config = self._create_nested_config(config_dict, Config)
        self.validate(self.config)

        if config_file:
            logger.info(f"Configuration loaded from {config_file}")
        if environment:
            logger.info(f"Applied environment overrides for: {environment}")

        return self.config

    def _load_yaml_file(self, file_path: str) -> Dict[str, Any]:
        """Load YAML configuration file"""
        try:
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {file_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {file_path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Error loading {file_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Top level of {file_path} must be a mapping")
        return data

    def _load_environment_config(self, base_config_path: str,
                                 environment: str) -> Optional[Dict[str, Any]]:
        """Load <name>.<environment>.yaml next to the main config, if present"""
        base_dir = os.path.dirname(base_config_path)
        base_name = os.path.splitext(os.path.basename(base_config_path))[0]

        env_file = os.path.join(base_dir, f"{base_name}.{environment}.yaml")

        if os.path.isfile(env_file):
            logger.info(f"Loading environment config: {env_file}")
            return self._load_yaml_file(env_file)

        return None

    def _merge_configs(self, base: Dict[str, Any],
                       override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge configuration dictionaries"""
        result = deepcopy(base)

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides using the HAWA_PROXY_ prefix"""
        result = deepcopy(config)

        for suffix, (config_path, convert) in self.ENV_MAPPINGS.items():
            env_var = ENV_PREFIX + suffix
            env_value = os.environ.get(env_var)
            if env_value is None:
                continue

            current = result
            for key in config_path[:-1]:
                current = current.setdefault(key, {})

            try:
                current[config_path[-1]] = convert(env_value)
            except ValueError:
                raise ConfigurationError(f"Invalid value for {env_var}: {env_value!r}")

            logger.info(f"Applied environment override: {env_var}={env_value}")

        return result

    def _create_nested_config(self, config_dict: Dict[str, Any],
                              config_class: type) -> Any:
        """Create nested configuration objects recursively"""
        if not isinstance(config_dict, dict):
            raise ConfigurationError(
                f"Section for {config_class.__name__} must be a mapping, got {config_dict!r}")

        known = {f.name: f for f in fields(config_class)}
        unknown = set(config_dict) - set(known)
        if unknown:
            logger.warning(f"Ignoring unknown {config_class.__name__} keys: {sorted(unknown)}")

        kwargs = {}
        for name, value in config_dict.items():
            if name not in known:
                continue
            field_type = known[name].type
            # Nested dataclass sections
            if is_dataclass(field_type):
                kwargs[name] = self._create_nested_config(value, field_type)
            else:
                kwargs[name] = self._convert_value(config_class, name, value, field_type)

        return config_class(**kwargs)

    def _convert_value(self, config_class: type, name: str, value: Any, field_type: Any) -> Any:
        """Convert quoted YAML numbers to the field's declared int/float type"""
        if value is None:
            return value

        if get_origin(field_type) is Union:
            args = [arg for arg in get_args(field_type) if arg is not type(None)]
            if len(args) != 1:
                return value
            field_type = args[0]

        if field_type not in (int, float):
            return value

        error = ConfigurationError(
            f"{config_class.__name__}.{name} must be {'an integer' if field_type is int else 'a number'}, "
            f"got {value!r}")
        if isinstance(value, bool):
            raise error
        try:
            converted = field_type(value)
        except (TypeError, ValueError, OverflowError):
            raise error
        # int(8800.5) would silently lose the fraction
        if field_type is int and isinstance(value, float) and converted != value:
            raise error
        return converted

    def validate(self, config: Config):
        """Validate configuration for consistency and correctness"""
        errors = []

        if not (0 <= _as_int(config.listen.port) <= 65535):
            errors.append(f"Invalid listen port: {config.listen.port}")

        if not (1 <= _as_int(config.backend.port) <= 65535):
            errors.append(f"Invalid backend port: {config.backend.port}")

        if not config.backend.host:
            errors.append("Backend host must be specified")

        if not (0 <= _as_int(config.logging.verbosity) <= 6):
            errors.append(f"Verbosity must be 0-6: {config.logging.verbosity}")

        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if config.logging.level not in valid_levels:
            errors.append(f"Invalid log level: {config.logging.level}")

        if config.relay.idle_timeout is not None and not _positive(config.relay.idle_timeout):
            errors.append(f"Idle timeout must be positive: {config.relay.idle_timeout}")

        if not _positive(config.relay.sweep_interval):
            errors.append(f"Sweep interval must be positive: {config.relay.sweep_interval}")

        if _as_int(config.relay.stats_interval) < 0:
            errors.append(f"Stats interval must not be negative: {config.relay.stats_interval}")

        if not config.service.name:
            errors.append("Service name must be specified")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" +
                                     "\n".join(f"  - {error}" for error in errors))

    def get_config(self) -> Config:
        """Get current configuration (must be loaded first)"""
        if self.config is None:
            raise ConfigurationError("Configuration not loaded. Call load_config() first.")
        return self.config


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


def _positive(value: Any) -> bool:
    try:
        return float(value) > 0
    except (TypeError, ValueError):
        return False
