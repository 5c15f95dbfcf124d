"""Configuration loading and validation for YAML-based trainerlink settings."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from trainerlink.core.errors import ConfigLoadError, ConfigValidationError

_UUID_RE = re.compile(r"^[0-9a-f]{4}$|^[0-9a-f]{8}$|^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
LOGGER = logging.getLogger(__name__)


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
class TransportSettings:
    service_uri: str
    scan_interval_s: float
    notify_characteristics: tuple[str, ...]


@dataclass(frozen=True)
class SimulatorSettings:
    period_s: float
    power_range: tuple[float, float]
    cadence_range: tuple[float, float]
    seed: int | None = None


@dataclass(frozen=True)
class Settings:
    target_name_substring: str
    simulate: bool
    log_level: str
    transport: TransportSettings
    simulator: SimulatorSettings


@dataclass(frozen=True)
class LoadedSettings:
    settings: Settings
    warnings: tuple[str, ...]
    sources: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("trainerlink.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _packaged_config() -> Traversable:
    return resources.files("trainerlink.defaults").joinpath("trainerlink.yaml")


def user_config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "trainerlink/config.yaml"


def _read_yaml(path: Path | Traversable) -> dict[str, Any] | None:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not read configuration file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return None
    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"Configuration file {path} must contain a mapping at root")
    return loaded


def _validate(validator: Any, doc: dict[str, Any], source: Path | Traversable) -> None:
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _normalize_uuid(value: str, *, context: str) -> str:
    normalized = value.strip().lower()
    if not _UUID_RE.match(normalized):
        raise ConfigValidationError(
            f"{context} must be a 16-bit, 32-bit, or 128-bit UUID string"
        )
    return normalized


def _normalize_range(value: list[float], *, context: str) -> tuple[float, float]:
    low, high = float(value[0]), float(value[1])
    if low >= high:
        raise ConfigValidationError(f"{context} lower bound must be below upper bound")
    return low, high


def _build_settings(doc: dict[str, Any]) -> Settings:
    transport = doc["transport"]
    simulator = doc["simulator"]
    return Settings(
        target_name_substring=doc["target_name_substring"],
        simulate=doc["simulate"],
        log_level=doc["log_level"],
        transport=TransportSettings(
            service_uri=transport["service_uri"],
            scan_interval_s=float(transport["scan_interval_s"]),
            notify_characteristics=tuple(
                _normalize_uuid(u, context=f"transport.notify_characteristics[{i}]")
                for i, u in enumerate(transport["notify_characteristics"])
            ),
        ),
        simulator=SimulatorSettings(
            period_s=float(simulator["period_s"]),
            power_range=_normalize_range(simulator["power_range"], context="simulator.power_range"),
            cadence_range=_normalize_range(simulator["cadence_range"], context="simulator.cadence_range"),
            seed=simulator.get("seed"),
        ),
    )


def load_settings(path: Path | None = None) -> LoadedSettings:
    """Load packaged defaults overlaid with `path` or the user configuration file."""
    packaged = _packaged_config()
    doc = _read_yaml(packaged)
    if doc is None:
        raise ConfigLoadError(f"Packaged configuration {packaged} is empty")
    validator = _load_schema_validator()
    _validate(validator, doc, packaged)

    sources = [str(packaged)]
    warnings: list[str] = []

    user_path = path if path is not None else user_config_path()
    if path is not None and not path.is_file():
        raise ConfigLoadError(f"Configuration file {path} does not exist")

    if user_path.is_file():
        user_doc = _read_yaml(user_path)
        if user_doc is None:
            warning = f"Configuration file {user_path} is empty; using defaults"
            LOGGER.warning(warning)
            warnings.append(warning)
        else:
            _validate(validator, user_doc, user_path)
            if "target_name_substring" in user_doc:
                LOGGER.info("Target name filter overridden to %r", user_doc["target_name_substring"])
            doc = _merge(doc, user_doc)
            sources.append(str(user_path))

    return LoadedSettings(settings=_build_settings(doc), warnings=tuple(warnings), sources=tuple(sources))
