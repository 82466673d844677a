"""Configuration loading and validation for btbridge."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from btbridge.core.errors import ConfigLoadError, ConfigValidationError

LOGGER = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 42123
    bind_retries: int = 10


@dataclass(frozen=True)
class DiscoveryConfig:
    ble_scan_ms: int = 5000


@dataclass(frozen=True)
class ClassicConfig:
    health_interval_s: float = 5.0
    rfcomm_channel: int = 1
    rfcomm_timeout_s: float = 3.0


@dataclass(frozen=True)
class BLEConfig:
    health_interval_s: float = 3.0
    health_max_failures: int = 2
    connect_timeout_s: float = 10.0


@dataclass(frozen=True)
class SendConfig:
    max_total_delay_ms: int = 30_000


@dataclass(frozen=True)
class BridgeConfig:
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    classic: ClassicConfig = field(default_factory=ClassicConfig)
    ble: BLEConfig = field(default_factory=BLEConfig)
    send: SendConfig = field(default_factory=SendConfig)
    log_level: str = "INFO"


def _load_schema_validator() -> Any:
    schema_text = resources.files("btbridge.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def default_config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "btbridge/config.yaml"


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"Config file {path} must contain a mapping at root")
    return loaded


def _build_config(doc: dict[str, Any], source: Path) -> BridgeConfig:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    return BridgeConfig(
        gateway=GatewayConfig(**doc.get("gateway", {})),
        discovery=DiscoveryConfig(**doc.get("discovery", {})),
        classic=ClassicConfig(**doc.get("classic", {})),
        ble=BLEConfig(**doc.get("ble", {})),
        send=SendConfig(**doc.get("send", {})),
        log_level=doc.get("logging", {}).get("level", "INFO"),
    )


def load_config(path: Path | None = None) -> BridgeConfig:
    """Load config from ``path`` or the XDG default location.

    A missing default file yields the built-in defaults; an explicitly given
    path must exist.
    """
    explicit = path is not None
    config_path = path if path is not None else default_config_path()

    if not config_path.exists():
        if explicit:
            raise ConfigLoadError(f"Config file {config_path} does not exist")
        LOGGER.debug("No config file at %s; using defaults", config_path)
        return BridgeConfig()

    doc = _read_yaml(config_path)
    config = _build_config(doc, config_path)
    LOGGER.info("Loaded config from %s", config_path)
    return config
