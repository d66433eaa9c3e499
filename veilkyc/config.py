"""
VeilKYC Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (VEILKYC_*)
    2. Runtime overrides
    3. User config file (~/.veilkyc/config.yaml)
    4. Project config file (./veilkyc.yaml or ./config/veilkyc.yaml)
    5. Default values

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from veilkyc.errors import ConfigError

T = TypeVar("T")

TESTNET_CHAIN_ID = 421614
MAINNET_CHAIN_ID = 42161
ZERO_ADDRESS = "0x" + "0" * 40
VERIFICATION_VALIDITY_SECONDS = 365 * 24 * 60 * 60


class ConfigValidationError(ConfigError):
    """Configuration validation error."""


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    secret: bool = False  # Don't log if True
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[Optional[T], T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: Any) -> None:
        """Set the value with validation."""
        if isinstance(value, str) and not isinstance(self.default, str):
            try:
                value = self._coerce(value)
            except ValueError as e:
                raise ConfigValidationError(f"Invalid value for config: {value}") from e
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == list:
            return [v.strip() for v in value.split(",") if v.strip()]  # type: ignore
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        self._callbacks.append(callback)


def _is_address(value: str) -> bool:
    return (
        isinstance(value, str)
        and len(value) == 42
        and value.startswith("0x")
        and all(c in "0123456789abcdefABCDEF" for c in value[2:])
    )


@dataclass
class NetworkConfig:
    """Chain selection."""
    chain_id: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=TESTNET_CHAIN_ID,
        env_var="VEILKYC_CHAIN_ID",
        description="Chain ID used to select the confidential network profile",
        validator=lambda x: x > 0,
    ))
    required_chain_id: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=TESTNET_CHAIN_ID,
        env_var="VEILKYC_REQUIRED_CHAIN_ID",
        description="Chain ID the subject's wallet must be connected to",
        validator=lambda x: x > 0,
    ))


@dataclass
class ConfidentialConfig:
    """Confidential computation backend settings."""
    app_address: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default=ZERO_ADDRESS,
        env_var="VEILKYC_APP_ADDRESS",
        description="Address of the deployed verification app",
        validator=_is_address,
    ))
    workerpool_address: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="VEILKYC_WORKERPOOL_ADDRESS",
        description="Workerpool override (empty: use the network profile)",
        validator=lambda x: x == "" or _is_address(x),
    ))


@dataclass
class VerificationConfig:
    """Verification policy."""
    mode: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="confidential",
        env_var="VEILKYC_VERIFICATION_MODE",
        description="Verification strategy (confidential, simulated)",
        validator=lambda x: x in ("confidential", "simulated"),
    ))
    minimum_age: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=18,
        env_var="VEILKYC_MINIMUM_AGE",
        description="Minimum age in years",
        validator=lambda x: 0 < x < 150,
    ))
    allowed_nationalities: ConfigValue[list] = field(default_factory=lambda: ConfigValue(
        default=[],
        env_var="VEILKYC_ALLOWED_NATIONALITIES",
        description="Allowed nationalities (empty: any)",
        validator=lambda x: isinstance(x, list),
    ))
    min_validity_days: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=30,
        env_var="VEILKYC_MIN_VALIDITY_DAYS",
        description="Days of remaining document validity required to pass the strict check",
        validator=lambda x: x >= 0,
    ))


@dataclass
class EnclaveConfig:
    """Enclave signing identity."""
    key_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="VEILKYC_ENCLAVE_KEY_PATH",
        description="Path to the enclave Ed25519 JWK (empty: ephemeral key)",
        secret=True,
    ))


@dataclass
class ProofConfig:
    """Proving backend settings."""
    backend_seed: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="VEILKYC_PROOF_SEED",
        description="Seed for deterministic circuit keys (empty: per-process keys)",
        secret=True,
    ))


@dataclass
class LedgerConfig:
    """Ledger submission settings."""
    validity_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=VERIFICATION_VALIDITY_SECONDS,
        env_var="VEILKYC_LEDGER_VALIDITY",
        description="Seconds a submitted verification stays valid",
        validator=lambda x: x > 0,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="VEILKYC_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="VEILKYC_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))
    buffer_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=100,
        env_var="VEILKYC_LOG_BUFFER_SIZE",
        description="Number of log events kept in memory (oldest dropped first)",
        validator=lambda x: x > 0,
    ))


@dataclass
class VeilKycConfig:
    """
    Root configuration.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    network: NetworkConfig = field(default_factory=NetworkConfig)
    confidential: ConfidentialConfig = field(default_factory=ConfidentialConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    enclave: EnclaveConfig = field(default_factory=EnclaveConfig)
    proof: ProofConfig = field(default_factory=ProofConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                if obj.secret and not include_secrets and obj.get():
                    return "***"
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        return yaml.dump(self.to_dict(), default_flow_style=False)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
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

        self._config = VeilKycConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[VeilKycConfig], None]] = []
        self._initialized = True

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests)."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> VeilKycConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration root must be a mapping: {path}")
            self._apply_dict(data)
            if path not in self._config_paths:
                self._config_paths.append(path)

    def load_defaults(self) -> List[Path]:
        """Load default configuration files if they exist. Returns loaded paths."""
        default_paths = [
            Path.home() / ".veilkyc" / "config.yaml",
            Path("config/veilkyc.yaml"),
            Path("veilkyc.yaml"),
        ]

        loaded: List[Path] = []
        for path in default_paths:
            if path.exists():
                self.load_from_file(path)
                loaded.append(path)
        return loaded

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
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

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("verification.minimum_age", 21)
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("network.chain_id")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def watch(self, callback: Callable[[VeilKycConfig], None]) -> None:
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
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

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = "***" if obj.secret else str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> VeilKycConfig:
    """Get the current configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
